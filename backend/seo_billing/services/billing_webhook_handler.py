"""
Billing webhook handler with idempotency support.

Processes Shopify webhooks with:
- Event deduplication using the Shopify webhook ID
- app_subscriptions/update status transitions
- subscription_billing_attempts/success monthly token refresh
- app/uninstalled cleanup of every per-shop billing record

Signature verification happens before requests reach this handler.
Shopify retries on non-2xx, so failures are reported in the result and
the caller still acknowledges the delivery.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from seo_billing.config.billing_plans import PlanCatalog, get_plan_catalog
from seo_billing.models.base import utcnow
from seo_billing.models.subscription import SubscriptionStatus
from seo_billing.models.webhook_event import WebhookEvent
from seo_billing.repositories.shop_repository import ShopRepository
from seo_billing.repositories.subscription_repository import SubscriptionRepository
from seo_billing.repositories.token_balance_repository import TokenBalanceRepository
from seo_billing.services.billing_cache import BillingCache, get_billing_cache
from seo_billing.services.billing_gateway import normalize_subscription_id
from seo_billing.services.token_ledger import TokenLedger

logger = logging.getLogger(__name__)

TOPIC_SUBSCRIPTION_UPDATE = "app_subscriptions/update"
TOPIC_BILLING_ATTEMPT_SUCCESS = "subscription_billing_attempts/success"
TOPIC_APP_UNINSTALLED = "app/uninstalled"


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {"received": True, "processed": self.processed, "message": self.message}
        if self.skipped_reason:
            payload["skipped_reason"] = self.skipped_reason
        if self.error:
            payload["error"] = self.error
        return payload


class BillingWebhookHandler:
    """
    Handler for Shopify billing webhooks with idempotency.

    Each delivery is processed at most once, keyed by the
    X-Shopify-Webhook-Id header.
    """

    def __init__(
        self,
        db_session: Session,
        cache: Optional[BillingCache] = None,
        plan_catalog: Optional[PlanCatalog] = None,
    ):
        self.db = db_session
        self.cache = cache or get_billing_cache()
        self.plans = plan_catalog or get_plan_catalog()
        self.subscriptions = SubscriptionRepository(db_session)

    def _is_duplicate(self, shopify_event_id: str) -> bool:
        existing = self.db.query(WebhookEvent).filter(
            WebhookEvent.shopify_event_id == shopify_event_id
        ).first()

        return existing is not None

    def _record_event(
        self,
        shopify_event_id: str,
        topic: str,
        shop_domain: str,
        payload: Dict[str, Any]
    ) -> None:
        """Record a processed webhook event for deduplication."""
        payload_str = json.dumps(payload, sort_keys=True, default=str)
        payload_hash = hashlib.sha256(payload_str.encode()).hexdigest()

        event = WebhookEvent(
            shopify_event_id=shopify_event_id,
            topic=topic,
            shop_domain=shop_domain,
            payload_hash=payload_hash,
            processed_at=utcnow()
        )
        self.db.add(event)

    def _mark_processed(self, shopify_event_id: str, topic: str, shop_domain: str, payload: Dict[str, Any]) -> None:
        self._record_event(shopify_event_id, topic, shop_domain, payload)
        self.db.commit()

    async def handle(
        self,
        topic: str,
        shopify_event_id: str,
        shop_domain: str,
        payload: Dict[str, Any],
    ) -> WebhookProcessingResult:
        """
        Dispatch a webhook delivery by topic.

        Returns:
            WebhookProcessingResult (never raises for processing errors)
        """
        handlers = {
            TOPIC_SUBSCRIPTION_UPDATE: self._handle_subscription_update,
            TOPIC_BILLING_ATTEMPT_SUCCESS: self._handle_billing_attempt_success,
            TOPIC_APP_UNINSTALLED: self._handle_app_uninstalled,
        }
        handler = handlers.get(topic)
        if handler is None:
            logger.info("Unhandled webhook topic", extra={"topic": topic, "shop_domain": shop_domain})
            return WebhookProcessingResult(
                processed=False,
                message=f"Unhandled topic: {topic}",
                skipped_reason="unhandled_topic",
            )

        if self._is_duplicate(shopify_event_id):
            logger.info("Duplicate webhook skipped", extra={
                "shopify_event_id": shopify_event_id,
                "shop_domain": shop_domain,
                "topic": topic,
            })
            return WebhookProcessingResult(
                processed=False,
                message="Duplicate webhook - already processed",
                skipped_reason="duplicate"
            )

        try:
            result = handler(shop_domain, payload)
            self._mark_processed(shopify_event_id, topic, shop_domain, payload)
        except Exception as e:
            logger.exception("Error processing webhook", extra={
                "shopify_event_id": shopify_event_id,
                "shop_domain": shop_domain,
                "topic": topic,
            })
            self.db.rollback()
            return WebhookProcessingResult(
                processed=False,
                message=f"Processing error: {e}",
                error="processing_error"
            )

        self.cache.invalidate_shop(shop_domain, reason=f"webhook:{topic}")
        logger.info("Webhook processed", extra={
            "shopify_event_id": shopify_event_id,
            "shop_domain": shop_domain,
            "topic": topic,
            "processed": result.processed,
        })
        return result

    def _handle_subscription_update(self, shop_domain: str, payload: Dict[str, Any]) -> WebhookProcessingResult:
        app_subscription = payload.get("app_subscription") or payload
        subscription_gid = normalize_subscription_id(app_subscription.get("admin_graphql_api_id"))
        shopify_status = (app_subscription.get("status") or "").upper()

        if not subscription_gid:
            logger.warning("Webhook missing subscription ID", extra={
                "shop_domain": shop_domain,
                "payload_keys": list(payload.keys())
            })
            return WebhookProcessingResult(
                processed=False,
                message="Missing subscription ID",
                error="missing_subscription_id"
            )

        subscription = self.subscriptions.get(shop_domain)
        if subscription is None or subscription.shopify_subscription_id != subscription_gid:
            logger.warning("Subscription not found for webhook", extra={
                "shop_domain": shop_domain,
                "shopify_subscription_id": subscription_gid,
            })
            return WebhookProcessingResult(
                processed=False,
                message="Subscription not found",
                skipped_reason="subscription_not_found"
            )

        previous_status = subscription.status
        now = utcnow()
        if shopify_status == "ACTIVE":
            if subscription.status == SubscriptionStatus.ACTIVE and not subscription.pending_activation:
                return WebhookProcessingResult(processed=True, message="Subscription already active")

            # activated_at stays under the explicit activation path only
            self.subscriptions.update(shop_domain, {
                "status": SubscriptionStatus.ACTIVE,
                "pending_activation": False,
            })
            self.db.commit()

            included = self.plans.get_included_tokens(subscription.plan)
            if included > 0:
                TokenLedger(self.db, shop_domain, self.plans).set_included_tokens(
                    included, subscription.plan, subscription_gid
                )
            message = "Subscription activated"

        elif shopify_status == "CANCELLED":
            self.subscriptions.update(shop_domain, {
                "status": SubscriptionStatus.CANCELLED,
                "cancelled_at": now,
                "pending_plan": None,
            })
            message = "Subscription cancelled"

        elif shopify_status == "EXPIRED":
            self.subscriptions.update(shop_domain, {
                "status": SubscriptionStatus.EXPIRED,
                "expired_at": now,
            })
            message = "Subscription expired"

        elif shopify_status == "PENDING":
            self.subscriptions.update(shop_domain, {"status": SubscriptionStatus.PENDING})
            message = "Subscription pending"

        else:
            logger.warning("Unknown Shopify status", extra={
                "shopify_status": shopify_status,
                "shopify_subscription_id": subscription_gid,
            })
            return WebhookProcessingResult(
                processed=False,
                message=f"Unknown status: {shopify_status}",
                error="unknown_status"
            )

        logger.info("Subscription status updated from webhook", extra={
            "shop_domain": shop_domain,
            "plan": subscription.plan,
            "from_status": previous_status,
            "shopify_status": shopify_status,
        })
        return WebhookProcessingResult(processed=True, message=message)

    def _handle_billing_attempt_success(self, shop_domain: str, payload: Dict[str, Any]) -> WebhookProcessingResult:
        subscription = self.subscriptions.get(shop_domain)
        if subscription is None:
            logger.warning("No subscription for billing attempt", extra={"shop_domain": shop_domain})
            return WebhookProcessingResult(
                processed=False,
                message="Subscription not found",
                skipped_reason="subscription_not_found"
            )

        refreshed = TokenLedger(self.db, shop_domain, self.plans).monthly_refresh(
            subscription.plan,
            subscription.shopify_subscription_id,
        )
        if refreshed is None:
            return WebhookProcessingResult(
                processed=True,
                message="Plan has no included tokens, refresh skipped",
            )
        return WebhookProcessingResult(processed=True, message="Monthly tokens refreshed")

    def _handle_app_uninstalled(self, shop_domain: str, payload: Dict[str, Any]) -> WebhookProcessingResult:
        subscriptions_deleted = self.subscriptions.delete(shop_domain)
        ledger_rows_deleted = TokenBalanceRepository(self.db).delete(shop_domain)
        shops_deleted = ShopRepository(self.db).delete(shop_domain)

        logger.info("Shop billing data removed on uninstall", extra={
            "shop_domain": shop_domain,
            "subscriptions_deleted": subscriptions_deleted,
            "ledger_rows_deleted": ledger_rows_deleted,
            "shops_deleted": shops_deleted,
        })
        return WebhookProcessingResult(processed=True, message="App uninstalled processed")


def get_webhook_handler(db_session: Session) -> BillingWebhookHandler:
    """Factory function to create a BillingWebhookHandler."""
    return BillingWebhookHandler(db_session)
