"""
Shopify webhook routes for billing events.

HMAC verification is performed by the ingress layer before requests reach
these routes. Every delivery is acknowledged with HTTP 200 (Shopify retries
on 4xx/5xx); processing failures are reported in the response body.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from seo_billing.api.dependencies import normalize_shop_domain
from seo_billing.database.session import get_db_session
from seo_billing.services.billing_webhook_handler import get_webhook_handler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/shopify", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    processed: bool = False
    message: str = "Webhook processed"
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


@router.post("", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    x_shopify_topic: Optional[str] = Header(None, alias="X-Shopify-Topic"),
    x_shopify_webhook_id: Optional[str] = Header(None, alias="X-Shopify-Webhook-Id"),
    x_shopify_shop_domain: Optional[str] = Header(None, alias="X-Shopify-Shop-Domain"),
    db_session: Session = Depends(get_db_session),
):
    """
    Receive a billing webhook and dispatch it by X-Shopify-Topic.

    Handled topics: app_subscriptions/update,
    subscription_billing_attempts/success, app/uninstalled.
    """
    shop_domain = normalize_shop_domain(x_shopify_shop_domain)
    if not shop_domain or not x_shopify_topic or not x_shopify_webhook_id:
        logger.warning("Webhook missing required headers", extra={
            "shop_domain": x_shopify_shop_domain,
            "topic": x_shopify_topic,
        })
        return WebhookResponse(message="Missing webhook headers", error="missing_headers")

    body = await request.body()
    try:
        payload = json.loads(body) if body else {}
    except json.JSONDecodeError:
        logger.error("Invalid JSON in webhook body", extra={"shop_domain": shop_domain})
        return WebhookResponse(message="Invalid JSON body", error="invalid_json")

    logger.info("Webhook received", extra={
        "shop_domain": shop_domain,
        "topic": x_shopify_topic,
        "shopify_event_id": x_shopify_webhook_id,
    })

    result = await get_webhook_handler(db_session).handle(
        x_shopify_topic,
        x_shopify_webhook_id,
        shop_domain,
        payload if isinstance(payload, dict) else {},
    )
    return WebhookResponse(**result.to_dict())
