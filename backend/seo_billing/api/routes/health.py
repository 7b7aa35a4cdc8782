"""
Health check endpoint (no authentication).
"""

import logging

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from seo_billing.database.session import get_engine
from seo_billing.services.billing_cache import RedisClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Liveness plus database and cache backend status."""
    database = "ok"
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, ValueError) as e:
        logger.warning("Health check database probe failed", extra={"error": str(e)})
        database = "unavailable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "cache": "redis" if RedisClient().available else "memory",
    }
