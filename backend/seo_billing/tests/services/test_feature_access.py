"""
Tests for FeatureAccessService.

Tests cover:
- Unknown features are rejected
- Token-requiring features are blocked during the trial
- Free features pass with an empty balance
- Balance checks and reservations
"""

from decimal import Decimal

import pytest

from seo_billing.services.billing_errors import (
    InsufficientBalanceError,
    TrialRestrictionError,
    UnknownFeatureError,
)
from seo_billing.services.feature_access import FeatureAccessService
from seo_billing.services.token_ledger import TokenLedger


@pytest.fixture
def access(db_session, shop_domain, billing_cache):
    return FeatureAccessService(db_session, shop_domain, cache=billing_cache)


@pytest.fixture
def funded(db_session, shop_domain):
    def _fund(tokens: int) -> None:
        TokenLedger(db_session, shop_domain).confirm_purchase(Decimal("10"), tokens, "77")
    return _fund


class TestCheck:

    def test_unknown_feature(self, access):
        with pytest.raises(UnknownFeatureError) as exc_info:
            access.check("ai-unknown")

        assert exc_info.value.to_dict()["feature"] == "ai-unknown"

    def test_trial_blocks_token_features(self, access, make_subscription, funded):
        make_subscription(plan="growth", trial_days_left=3)
        funded(1_000_000)

        with pytest.raises(TrialRestrictionError) as exc_info:
            access.check("ai-seo-collection")

        assert exc_info.value.plan == "growth"
        assert exc_info.value.trial_ends_at is not None
        assert exc_info.value.http_status == 402

    def test_basic_feature_allowed_in_trial_with_empty_balance(self, access, make_subscription):
        make_subscription(plan="starter", trial_days_left=3)

        result = access.check("ai-seo-product-basic")

        assert result.allowed
        assert result.tokens_required == 0

    def test_insufficient_balance(self, access, funded):
        funded(1000)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            access.check("ai-seo-collection")

        assert exc_info.value.tokens_required == 1500
        assert exc_info.value.tokens_available == 1000
        assert exc_info.value.tokens_needed == 500

    def test_allowed_after_trial(self, access, make_subscription, funded):
        make_subscription(plan="growth", trial_days_left=-1)
        funded(10_000)

        result = access.check("ai-seo-collection", languages=2)

        assert result.to_dict() == {
            "allowed": True,
            "feature": "ai-seo-collection",
            "tokens_required": 2700,
            "tokens_available": 10_000,
        }

    def test_requires_shop_domain(self, db_session):
        with pytest.raises(ValueError):
            FeatureAccessService(db_session, "")


class TestReserve:

    def test_reserve_holds_cost_plus_margin(self, access, funded, billing_cache, shop_domain):
        funded(10_000)
        billing_cache.set(shop_domain, "balance", {"balance": 10_000})

        reservation = access.reserve_for_feature("ai-seo-collection", metadata={"collection_id": "c1"})

        assert reservation.reserved == 1650
        assert reservation.balance == 8350
        assert billing_cache.get(shop_domain, "balance") is None

    def test_free_feature_reserves_nothing(self, access):
        assert access.reserve_for_feature("ai-seo-product-basic") is None

    def test_finalize_refunds_and_invalidates(self, access, funded, billing_cache, shop_domain):
        funded(10_000)
        reservation = access.reserve_for_feature("ai-seo-collection")
        billing_cache.set(shop_domain, "balance", {"balance": 8350})

        result = access.finalize(reservation.reservation_id, 1200)

        assert result.balance == 8800
        assert billing_cache.get(shop_domain, "balance") is None

    def test_second_finalize_keeps_cache(self, access, funded, billing_cache, shop_domain):
        funded(10_000)
        reservation = access.reserve_for_feature("ai-seo-collection")
        access.finalize(reservation.reservation_id, 1200)
        billing_cache.set(shop_domain, "balance", {"balance": 8800})

        result = access.finalize(reservation.reservation_id, 1200)

        assert result.already_finalized
        assert billing_cache.get(shop_domain, "balance") == {"balance": 8800}
