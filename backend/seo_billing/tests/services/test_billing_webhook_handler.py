"""
Tests for BillingWebhookHandler.

Tests cover:
- Deduplication by webhook id
- app_subscriptions/update status transitions
- subscription_billing_attempts/success monthly refresh
- app/uninstalled cleanup
- Processing errors are reported, not raised
"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from seo_billing.models import Shop, Subscription, SubscriptionStatus, TokenBalance, WebhookEvent
from seo_billing.repositories.subscription_repository import SubscriptionRepository
from seo_billing.services.billing_webhook_handler import (
    TOPIC_APP_UNINSTALLED,
    TOPIC_BILLING_ATTEMPT_SUCCESS,
    TOPIC_SUBSCRIPTION_UPDATE,
    BillingWebhookHandler,
    WebhookProcessingResult,
)
from seo_billing.services.token_ledger import TokenLedger

SUBSCRIPTION_GID = "gid://shopify/AppSubscription/4242"


@pytest.fixture
def handler(db_session, billing_cache):
    return BillingWebhookHandler(db_session, cache=billing_cache)


def update_payload(status: str, subscription_id: str = SUBSCRIPTION_GID) -> dict:
    return {
        "app_subscription": {
            "admin_graphql_api_id": subscription_id,
            "name": "Enterprise",
            "status": status,
        }
    }


def reload(db_session, shop_domain) -> Subscription:
    return SubscriptionRepository(db_session).get(shop_domain)


class TestDeduplication:

    @pytest.mark.asyncio
    async def test_duplicate_delivery_skipped(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(shopify_subscription_id=SUBSCRIPTION_GID, status=SubscriptionStatus.PENDING)

        first = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-1", shop_domain, update_payload("CANCELLED"))
        second = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-1", shop_domain, update_payload("CANCELLED"))

        assert first.processed
        assert not second.processed
        assert second.skipped_reason == "duplicate"
        assert db_session.query(WebhookEvent).count() == 1

    @pytest.mark.asyncio
    async def test_unhandled_topic(self, handler, db_session, shop_domain):
        result = await handler.handle("orders/create", "evt-2", shop_domain, {})

        assert not result.processed
        assert result.skipped_reason == "unhandled_topic"
        assert db_session.query(WebhookEvent).count() == 0


class TestSubscriptionUpdate:

    @pytest.mark.asyncio
    async def test_active_sets_included_tokens(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(
            plan="enterprise",
            status=SubscriptionStatus.PENDING,
            pending_activation=True,
            shopify_subscription_id=SUBSCRIPTION_GID,
        )

        result = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-3", shop_domain, update_payload("ACTIVE"))

        assert result.processed
        assert result.message == "Subscription activated"
        subscription = reload(db_session, shop_domain)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.pending_activation is False
        assert subscription.activated_at is None
        assert TokenLedger(db_session, shop_domain).get_or_create().balance == 300_000_000

    @pytest.mark.asyncio
    async def test_active_is_noop_when_already_active(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(plan="enterprise", shopify_subscription_id=SUBSCRIPTION_GID)

        result = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-4", shop_domain, update_payload("ACTIVE"))

        assert result.message == "Subscription already active"
        assert TokenLedger(db_session, shop_domain).get_or_create().balance == 0

    @pytest.mark.asyncio
    async def test_cancelled(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(plan="growth", pending_plan="enterprise", shopify_subscription_id=SUBSCRIPTION_GID)

        result = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-5", shop_domain, update_payload("CANCELLED"))

        assert result.processed
        subscription = reload(db_session, shop_domain)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.cancelled_at is not None
        assert subscription.pending_plan is None

    @pytest.mark.asyncio
    async def test_expired(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(shopify_subscription_id=SUBSCRIPTION_GID)

        await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-6", shop_domain, update_payload("expired"))

        subscription = reload(db_session, shop_domain)
        assert subscription.status == SubscriptionStatus.EXPIRED
        assert subscription.expired_at is not None

    @pytest.mark.asyncio
    async def test_pending(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(shopify_subscription_id=SUBSCRIPTION_GID)

        await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-7", shop_domain, update_payload("PENDING"))

        assert reload(db_session, shop_domain).status == SubscriptionStatus.PENDING

    @pytest.mark.asyncio
    async def test_numeric_id_matches_stored_gid(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(shopify_subscription_id=SUBSCRIPTION_GID)

        result = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-8", shop_domain, update_payload("CANCELLED", "4242"))

        assert result.processed

    @pytest.mark.asyncio
    async def test_other_subscription_skipped(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(shopify_subscription_id=SUBSCRIPTION_GID)

        result = await handler.handle(
            TOPIC_SUBSCRIPTION_UPDATE, "evt-9", shop_domain,
            update_payload("CANCELLED", "gid://shopify/AppSubscription/1"),
        )

        assert not result.processed
        assert result.skipped_reason == "subscription_not_found"
        assert reload(db_session, shop_domain).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_missing_subscription_id(self, handler, shop_domain):
        result = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-10", shop_domain, {"app_subscription": {}})

        assert result.error == "missing_subscription_id"

    @pytest.mark.asyncio
    async def test_unknown_status(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(shopify_subscription_id=SUBSCRIPTION_GID)

        result = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-11", shop_domain, update_payload("FROZEN"))

        assert result.error == "unknown_status"
        assert reload(db_session, shop_domain).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_processing_invalidates_cache(self, handler, billing_cache, shop_domain, make_subscription):
        make_subscription(shopify_subscription_id=SUBSCRIPTION_GID)
        billing_cache.set(shop_domain, "info", {"plan": "starter"})

        await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-12", shop_domain, update_payload("CANCELLED"))

        assert billing_cache.get(shop_domain, "info") is None


class TestBillingAttemptSuccess:

    @pytest.mark.asyncio
    async def test_monthly_refresh(self, handler, db_session, shop_domain, make_subscription):
        make_subscription(plan="growth extra", shopify_subscription_id=SUBSCRIPTION_GID)
        ledger = TokenLedger(db_session, shop_domain)
        ledger.confirm_purchase(Decimal("10"), 5_000_000, "1")
        ledger.debit(2_000_000, "ai-seo-collection")

        result = await handler.handle(TOPIC_BILLING_ATTEMPT_SUCCESS, "evt-13", shop_domain, {})

        assert result.message == "Monthly tokens refreshed"
        token_balance = ledger.get_or_create()
        assert token_balance.balance == 105_000_000
        assert token_balance.total_used == 0
        assert ledger.replay_balance() == token_balance.balance

    @pytest.mark.asyncio
    async def test_plan_without_tokens_skipped(self, handler, shop_domain, make_subscription):
        make_subscription(plan="growth")

        result = await handler.handle(TOPIC_BILLING_ATTEMPT_SUCCESS, "evt-14", shop_domain, {})

        assert result.processed
        assert result.message == "Plan has no included tokens, refresh skipped"

    @pytest.mark.asyncio
    async def test_no_subscription(self, handler, shop_domain):
        result = await handler.handle(TOPIC_BILLING_ATTEMPT_SUCCESS, "evt-15", shop_domain, {})

        assert result.skipped_reason == "subscription_not_found"


class TestAppUninstalled:

    @pytest.mark.asyncio
    async def test_removes_all_shop_rows(
        self, handler, db_session, shop_domain, installed_shop, make_subscription
    ):
        make_subscription(plan="enterprise")
        ledger = TokenLedger(db_session, shop_domain)
        ledger.confirm_purchase(Decimal("10"), 30_000_000, "1")
        ledger.debit(100, "ai-seo-collection")

        result = await handler.handle(TOPIC_APP_UNINSTALLED, "evt-16", shop_domain, {})

        assert result.processed
        assert db_session.query(Subscription).count() == 0
        assert db_session.query(TokenBalance).count() == 0
        assert db_session.query(Shop).count() == 0
        assert db_session.query(WebhookEvent).count() == 1


class TestProcessingErrors:

    @pytest.mark.asyncio
    async def test_error_reported_and_event_not_recorded(self, handler, db_session, shop_domain):
        with patch.object(
            BillingWebhookHandler,
            "_handle_subscription_update",
            side_effect=RuntimeError("boom"),
        ):
            result = await handler.handle(TOPIC_SUBSCRIPTION_UPDATE, "evt-17", shop_domain, update_payload("ACTIVE"))

        assert not result.processed
        assert result.error == "processing_error"
        assert "boom" in result.message
        assert db_session.query(WebhookEvent).count() == 0

    def test_result_to_dict(self):
        payload = WebhookProcessingResult(processed=False, message="x", skipped_reason="duplicate").to_dict()

        assert payload == {"received": True, "processed": False, "message": "x", "skipped_reason": "duplicate"}
