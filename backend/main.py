"""
FastAPI application entry point for the SEO AI billing service.

Shop identity comes from the embedded-app session layer in front of this
service (X-Shopify-Shop-Domain header); webhook HMAC verification is done
by the ingress.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from seo_billing.api.routes import billing
from seo_billing.api.routes import health
from seo_billing.api.routes import webhooks_shopify
from seo_billing.config.billing_plans import get_plan_catalog
from seo_billing.platform.secrets import SecretRedactingFilter

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(SecretRedactingFilter())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting SEO AI billing API")

    catalog = get_plan_catalog()
    logger.info("Plan catalog loaded", extra={
        "plans": [plan.key for plan in catalog.list_plans()],
        "trial_days": catalog.trial_days,
    })

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Billing endpoints will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else "(no @ found)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    if not os.getenv("OPENROUTER_API_KEY"):
        logger.warning("OPENROUTER_API_KEY not set; token purchases use the fallback rate")

    yield

    logger.info("Shutting down SEO AI billing API")


app = FastAPI(
    title="SEO AI Billing API",
    description="Subscription billing and AI token ledger for the SEO AI Shopify app",
    version="1.0.0",
    lifespan=lifespan
)

# Include Shopify Admin in CORS origins for embedding
cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
if "https://admin.shopify.com" not in cors_origins:
    cors_origins.append("https://admin.shopify.com")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(billing.router)
app.include_router(billing.callback_router)
app.include_router(webhooks_shopify.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "shop_domain": request.headers.get("X-Shopify-Shop-Domain", "unknown"),
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
