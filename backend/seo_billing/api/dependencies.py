"""
Shared FastAPI dependencies for billing routes.

The shop is identified by the X-Shopify-Shop-Domain header set by the
embedded-app session layer, or by the `shop` query parameter on Shopify
redirects.
"""

import logging
import re
from typing import Optional

from fastapi import Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from seo_billing.database.session import get_db_session
from seo_billing.services.billing_errors import BillingServiceError
from seo_billing.services.billing_service import BillingService
from seo_billing.services.feature_access import FeatureAccessService

logger = logging.getLogger(__name__)

SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$")


def normalize_shop_domain(shop: Optional[str]) -> Optional[str]:
    """Lowercase and validate a *.myshopify.com domain; None if invalid."""
    if not shop:
        return None
    shop = shop.strip().lower()
    return shop if SHOP_DOMAIN_PATTERN.match(shop) else None


def get_shop_domain(
    request: Request,
    shop: Optional[str] = Query(None, description="Shop domain"),
) -> str:
    raw = request.headers.get("X-Shopify-Shop-Domain") or shop
    shop_domain = normalize_shop_domain(raw)
    if shop_domain is None:
        logger.warning("Missing or invalid shop domain", extra={"shop_domain": raw})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_shop", "message": "A valid *.myshopify.com shop domain is required"},
        )
    return shop_domain


def get_billing_service(
    shop_domain: str = Depends(get_shop_domain),
    db_session: Session = Depends(get_db_session),
) -> BillingService:
    return BillingService(db_session, shop_domain)


def get_feature_access_service(
    shop_domain: str = Depends(get_shop_domain),
    db_session: Session = Depends(get_db_session),
) -> FeatureAccessService:
    return FeatureAccessService(db_session, shop_domain)


def to_http_exception(error: BillingServiceError) -> HTTPException:
    """Convert a billing error to an HTTPException carrying its payload."""
    return HTTPException(status_code=error.http_status, detail=error.to_dict())
