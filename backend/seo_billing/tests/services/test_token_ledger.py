"""
Tests for the token ledger.

Tests cover:
- Debit rejection leaves the balance untouched
- Concurrent debits cannot overdraw
- Purchase confirmation idempotency
- Included tokens: replace (plan change) vs add (activation)
- Monthly refresh
- Reservations
- Ledger replay reproduces the balance
"""

from decimal import Decimal

import pytest

from seo_billing.config.token_pricing import quote_purchase
from seo_billing.models.token_balance import PurchaseStatus, TokenPurchase, UsageEntryType
from seo_billing.services.billing_errors import InsufficientBalanceError, ReservationNotFoundError
from seo_billing.services.token_ledger import TokenLedger, normalize_purchase_charge_id


@pytest.fixture
def ledger(db_session, shop_domain):
    return TokenLedger(db_session, shop_domain)


def fund(ledger: TokenLedger, tokens: int, charge_number: int = 1) -> None:
    """Credit purchased tokens through a completed purchase."""
    ledger.confirm_purchase(Decimal("5"), tokens, str(charge_number))


class TestGetOrCreate:

    def test_creates_zeroed_balance(self, ledger, shop_domain):
        token_balance = ledger.get_or_create()

        assert token_balance.shop_domain == shop_domain
        assert token_balance.balance == 0
        assert token_balance.total_purchased == 0
        assert token_balance.total_used == 0

    def test_returns_existing_row(self, ledger):
        first = ledger.get_or_create()
        second = ledger.get_or_create()

        assert first.id == second.id

    def test_requires_shop_domain(self, db_session):
        with pytest.raises(ValueError):
            TokenLedger(db_session, "")


class TestDebit:

    def test_debit_decrements_and_records_usage(self, ledger):
        fund(ledger, 1000)

        token_balance = ledger.debit(400, "ai-seo-collection", {"collection_id": "123"})

        assert token_balance.balance == 600
        assert token_balance.total_used == 400
        usage = ledger.recent_usage(1)[0]
        assert usage.feature == "ai-seo-collection"
        assert usage.tokens_used == 400
        assert usage.entry_type == UsageEntryType.DEBIT
        assert usage.collection_id == "123"

    def test_insufficient_balance_leaves_balance_unchanged(self, ledger):
        fund(ledger, 100)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.debit(150, "feature-x")

        assert exc_info.value.tokens_needed == 50
        assert exc_info.value.to_dict()["tokens_needed"] == 50
        token_balance = ledger.get_or_create()
        assert token_balance.balance == 100
        assert token_balance.total_used == 0
        assert all(u.entry_type != UsageEntryType.DEBIT for u in ledger.recent_usage(10))

    def test_debit_exact_balance_reaches_zero(self, ledger):
        fund(ledger, 100)

        assert ledger.debit(100, "feature-x").balance == 0

    def test_negative_amount_rejected(self, ledger):
        with pytest.raises(ValueError):
            ledger.debit(-5, "feature-x")

    def test_stale_reader_cannot_overdraw(self, session_factory, shop_domain):
        """Two sessions see balance=100; only the first 60-token debit applies."""
        first = TokenLedger(session_factory(), shop_domain)
        second = TokenLedger(session_factory(), shop_domain)
        fund(first, 100)

        assert second.get_or_create().balance == 100

        first.debit(60, "feature-x")
        with pytest.raises(InsufficientBalanceError):
            second.debit(60, "feature-x")

        assert second.get_or_create().balance == 40

    def test_has_balance(self, ledger):
        assert ledger.has_balance(0)
        assert not ledger.has_balance(1)

        fund(ledger, 10)

        assert ledger.has_balance(10)
        assert not ledger.has_balance(11)


class TestPurchases:

    def test_pending_purchase_does_not_change_balance(self, ledger):
        quote = quote_purchase(Decimal("10"), Decimal("0.10"))

        purchase = ledger.create_pending_purchase(quote, "gid://shopify/AppPurchaseOneTime/77")

        assert purchase.status == PurchaseStatus.PENDING
        assert purchase.tokens_received == 30_000_000
        assert ledger.get_or_create().balance == 0

    def test_confirm_completes_pending_purchase_once(self, ledger, db_session):
        quote = quote_purchase(Decimal("10"), Decimal("0.10"))
        ledger.create_pending_purchase(quote, "gid://shopify/AppPurchaseOneTime/77")

        first = ledger.confirm_purchase(Decimal("10"), quote.tokens, "77")
        second = ledger.confirm_purchase(Decimal("10"), quote.tokens, "77")

        assert first.credited is True
        assert second.credited is False
        token_balance = ledger.get_or_create()
        assert token_balance.balance == 30_000_000
        assert token_balance.total_purchased == 30_000_000
        assert token_balance.last_purchase_at is not None
        purchases = db_session.query(TokenPurchase).all()
        assert len(purchases) == 1
        assert purchases[0].status == PurchaseStatus.COMPLETED

    def test_confirm_unknown_charge_appends_completed_purchase(self, ledger):
        confirmation = ledger.confirm_purchase(Decimal("20"), 60_000_000, "gid://shopify/AppPurchaseOneTime/5")

        assert confirmation.credited is True
        assert [p.status for p in ledger.purchases()] == [PurchaseStatus.COMPLETED]
        assert ledger.get_or_create().balance == 60_000_000

    def test_normalize_purchase_charge_id(self):
        assert normalize_purchase_charge_id("123") == "gid://shopify/AppPurchaseOneTime/123"
        assert normalize_purchase_charge_id("gid://shopify/AppPurchaseOneTime/9") == "gid://shopify/AppPurchaseOneTime/9"
        assert normalize_purchase_charge_id(None) is None


class TestIncludedTokens:

    def test_set_included_replaces_included_portion(self, ledger):
        fund(ledger, 5_000)

        assert ledger.set_included_tokens(100_000_000, "growth extra", "gid://shopify/AppSubscription/1")
        assert ledger.get_or_create().balance == 100_005_000

        assert ledger.set_included_tokens(300_000_000, "enterprise", "gid://shopify/AppSubscription/2")
        assert ledger.get_or_create().balance == 300_005_000

    def test_set_included_is_idempotent_per_plan_and_subscription(self, ledger):
        ledger.set_included_tokens(100_000_000, "growth extra", "gid://shopify/AppSubscription/1")
        ledger.debit(1_000, "ai-seo-collection")

        repeated = ledger.set_included_tokens(100_000_000, "growth extra", "gid://shopify/AppSubscription/1")

        assert repeated is False
        assert ledger.get_or_create().balance == 99_999_000

    def test_add_included_stacks(self, ledger):
        ledger.set_included_tokens(100_000_000, "growth extra", "gid://shopify/AppSubscription/1")

        token_balance = ledger.add_included_tokens(100_000_000, "growth extra")

        assert token_balance.balance == 200_000_000
        assert token_balance.total_purchased == 0


class TestMonthlyRefresh:

    def test_refresh_resets_to_included_plus_purchased(self, ledger):
        fund(ledger, 5_000_000)
        ledger.set_included_tokens(100_000_000, "growth extra", "gid://shopify/AppSubscription/1")
        ledger.debit(40_000_000, "ai-sitemap-optimized")

        token_balance = ledger.monthly_refresh("growth extra", "gid://shopify/AppSubscription/1")

        assert token_balance.balance == 105_000_000
        assert token_balance.total_used == 0
        assert token_balance.total_purchased == 5_000_000
        refresh = ledger.recent_usage(1)[0]
        assert refresh.entry_type == UsageEntryType.MONTHLY_REFRESH
        assert refresh.extra_metadata["previous_total_used"] == 40_000_000

    def test_refresh_skipped_for_plan_without_included_tokens(self, ledger):
        fund(ledger, 1_000)

        assert ledger.monthly_refresh("starter") is None
        assert ledger.get_or_create().balance == 1_000


class TestReservations:

    def test_finalize_refunds_unused_tokens(self, ledger):
        fund(ledger, 10_000)
        reservation = ledger.reserve(1_100, "ai-seo-collection")

        assert reservation.balance == 8_900

        result = ledger.finalize_reservation(reservation.reservation_id, 800)

        assert result.adjustment == 300
        assert result.balance == 9_200
        assert ledger.get_or_create().total_used == 800

    def test_finalize_overrun_is_clamped_at_zero(self, ledger):
        fund(ledger, 1_200)
        reservation = ledger.reserve(1_100, "ai-seo-collection")

        result = ledger.finalize_reservation(reservation.reservation_id, 5_000)

        assert result.balance == 0
        assert result.adjustment == -100

    def test_finalize_twice_returns_first_result(self, ledger):
        fund(ledger, 10_000)
        reservation = ledger.reserve(1_000, "ai-seo-collection")
        ledger.finalize_reservation(reservation.reservation_id, 500)

        again = ledger.finalize_reservation(reservation.reservation_id, 100)

        assert again.already_finalized is True
        assert again.balance == 9_500

    def test_reserve_rejected_when_balance_too_low(self, ledger):
        fund(ledger, 100)

        with pytest.raises(InsufficientBalanceError):
            ledger.reserve(1_100, "ai-seo-collection")
        assert ledger.get_or_create().balance == 100

    def test_unknown_reservation(self, ledger):
        ledger.get_or_create()

        with pytest.raises(ReservationNotFoundError):
            ledger.finalize_reservation("missing", 10)


def test_replay_reproduces_balance(ledger):
    """Mixed operations: replaying purchases and usage gives the stored balance."""
    fund(ledger, 2_000_000, charge_number=1)
    ledger.debit(300_000, "ai-seo-collection")
    ledger.set_included_tokens(100_000_000, "growth extra", "gid://shopify/AppSubscription/1")
    reservation = ledger.reserve(1_100, "ai-schema-advanced")
    ledger.finalize_reservation(reservation.reservation_id, 900)
    fund(ledger, 1_000_000, charge_number=2)
    ledger.debit(50_000_000, "ai-sitemap-optimized")
    ledger.monthly_refresh("growth extra", "gid://shopify/AppSubscription/1")
    ledger.add_included_tokens(100_000_000, "growth extra")
    ledger.debit(12_345, "ai-testing-validation")

    assert ledger.replay_balance() == ledger.get_or_create().balance
    assert ledger.get_or_create().balance >= 0
