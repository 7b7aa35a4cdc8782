"""
Token ledger for a single shop.

Owns the materialized balance and the append-only purchase/usage ledgers.

Accounting rule: every usage entry stores the negated balance delta it
caused, so at any point

    balance == sum(completed purchase tokens) - sum(usage.tokens_used)

and the balance can be reconstructed by replaying the ledger in id order
(monthly refresh and included-token entries carry their reset as a delta).

Each public operation commits its own transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from seo_billing.config.billing_plans import PlanCatalog, get_plan_catalog
from seo_billing.config.token_pricing import PurchaseQuote
from seo_billing.models.base import utcnow
from seo_billing.models.token_balance import (
    TokenBalance,
    TokenPurchase,
    TokenUsage,
    PurchaseStatus,
    UsageEntryType,
)
from seo_billing.repositories.token_balance_repository import TokenBalanceRepository
from seo_billing.services.billing_errors import (
    InsufficientBalanceError,
    ReservationNotFoundError,
)

logger = logging.getLogger(__name__)

INCLUDED_TOKENS_FEATURE = "plan-included-tokens"
MONTHLY_REFRESH_FEATURE = "monthly-refresh"

ONE_TIME_PURCHASE_GID_PREFIX = "gid://shopify/AppPurchaseOneTime/"


def normalize_purchase_charge_id(charge_id: Optional[str]) -> Optional[str]:
    """Shopify returns numeric charge ids on the return URL; store GIDs."""
    if not charge_id:
        return None
    charge_id = str(charge_id).strip()
    if charge_id.isdigit():
        return f"{ONE_TIME_PURCHASE_GID_PREFIX}{charge_id}"
    return charge_id


@dataclass
class PurchaseConfirmation:
    """Outcome of confirm_purchase."""
    credited: bool
    tokens: int
    charge_id: Optional[str]
    balance: int


@dataclass
class ReservationResult:
    reservation_id: str
    reserved: int
    balance: int


@dataclass
class FinalizeResult:
    reservation_id: str
    reserved: int
    actual: int
    adjustment: int  # positive: refunded, negative: extra deducted
    balance: int
    already_finalized: bool = False


class TokenLedger:
    """
    Token ledger operations for one shop.

    Usage:
        ledger = TokenLedger(db, "mystore.myshopify.com")
        ledger.debit(1500, "ai-seo-collection", {"collection_id": "123"})
    """

    def __init__(
        self,
        db_session: Session,
        shop_domain: str,
        plan_catalog: Optional[PlanCatalog] = None,
    ):
        if not shop_domain:
            raise ValueError("shop_domain is required")

        self.db = db_session
        self.shop_domain = shop_domain
        self.repository = TokenBalanceRepository(db_session)
        self.plans = plan_catalog or get_plan_catalog()

    def get_or_create(self) -> TokenBalance:
        return self.repository.get_or_create(self.shop_domain)

    def has_balance(self, amount: int) -> bool:
        token_balance = self.repository.get(self.shop_domain)
        current = token_balance.balance if token_balance else 0
        return current >= amount

    def _current(self) -> TokenBalance:
        return self.repository.get(self.shop_domain)

    def debit(
        self,
        amount: int,
        feature: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TokenBalance:
        """
        Consume tokens.

        Raises:
            InsufficientBalanceError: amount exceeds the balance; nothing changes
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")

        token_balance = self.get_or_create()
        metadata = metadata or {}

        if not self.repository.debit_if_available(self.shop_domain, amount):
            self.db.rollback()
            available = self._current().balance
            logger.info("Token debit rejected", extra={
                "shop_domain": self.shop_domain,
                "feature": feature,
                "tokens_required": amount,
                "tokens_available": available,
            })
            raise InsufficientBalanceError(self.shop_domain, amount, available, feature)

        self.repository.add_usage(
            token_balance,
            feature=feature,
            tokens_used=amount,
            entry_type=UsageEntryType.DEBIT,
            product_id=metadata.get("product_id"),
            collection_id=metadata.get("collection_id"),
            extra_metadata=metadata,
        )
        self.db.commit()

        token_balance = self._current()
        logger.info("Tokens debited", extra={
            "shop_domain": self.shop_domain,
            "feature": feature,
            "tokens": amount,
            "balance": token_balance.balance,
        })
        return token_balance

    def reserve(
        self,
        estimated_amount: int,
        feature: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReservationResult:
        """
        Hold an estimated amount before a long-running operation.

        The hold is deducted from the balance but not counted as used until
        finalize_reservation() records the actual amount.
        """
        token_balance = self.get_or_create()
        metadata = metadata or {}

        if not self.repository.debit_if_available(self.shop_domain, estimated_amount, count_as_used=False):
            self.db.rollback()
            available = self._current().balance
            raise InsufficientBalanceError(self.shop_domain, estimated_amount, available, feature)

        reservation_id = str(uuid.uuid4())
        self.repository.add_usage(
            token_balance,
            feature=feature,
            tokens_used=estimated_amount,
            entry_type=UsageEntryType.RESERVATION,
            reservation_id=reservation_id,
            product_id=metadata.get("product_id"),
            collection_id=metadata.get("collection_id"),
            extra_metadata={**metadata, "status": "reserved"},
        )
        self.db.commit()

        balance = self._current().balance
        logger.info("Tokens reserved", extra={
            "shop_domain": self.shop_domain,
            "feature": feature,
            "reservation_id": reservation_id,
            "tokens": estimated_amount,
        })
        return ReservationResult(reservation_id, estimated_amount, balance)

    def finalize_reservation(self, reservation_id: str, actual_tokens: int) -> FinalizeResult:
        """
        Settle a reservation against the actual usage.

        Refunds the unused part, or deducts the overrun clamped to the
        current balance. A reservation is settled at most once.

        Raises:
            ReservationNotFoundError: unknown reservation id
        """
        token_balance = self.repository.lock(self.shop_domain)
        reservations = self.repository.find_usage(
            self.shop_domain, UsageEntryType.RESERVATION, reservation_id
        ) if token_balance else []
        if not reservations:
            self.db.rollback()
            raise ReservationNotFoundError(self.shop_domain, reservation_id)

        reservation = reservations[0]
        reserved = reservation.tokens_used

        adjustments = self.repository.find_usage(
            self.shop_domain, UsageEntryType.RESERVATION_ADJUSTMENT, reservation_id
        )
        if adjustments:
            self.db.rollback()
            previous = adjustments[0]
            return FinalizeResult(
                reservation_id=reservation_id,
                reserved=reserved,
                actual=(previous.extra_metadata or {}).get("actual_tokens", reserved),
                adjustment=-previous.tokens_used,
                balance=self._current().balance,
                already_finalized=True,
            )

        difference = reserved - actual_tokens
        if difference >= 0:
            balance_delta = difference
        else:
            # Overrun: charge what is left, never below zero
            balance_delta = -min(-difference, token_balance.balance)

        self.repository.apply(self.shop_domain, balance=balance_delta, total_used=actual_tokens)
        self.repository.add_usage(
            token_balance,
            feature=reservation.feature,
            tokens_used=-balance_delta,
            entry_type=UsageEntryType.RESERVATION_ADJUSTMENT,
            reservation_id=reservation_id,
            product_id=reservation.product_id,
            collection_id=reservation.collection_id,
            extra_metadata={
                "reserved_tokens": reserved,
                "actual_tokens": actual_tokens,
                "uncharged_overrun": max(0, -difference + balance_delta),
            },
        )
        self.db.commit()

        balance = self._current().balance
        logger.info("Token reservation finalized", extra={
            "shop_domain": self.shop_domain,
            "reservation_id": reservation_id,
            "reserved": reserved,
            "actual": actual_tokens,
            "adjustment": balance_delta,
        })
        return FinalizeResult(reservation_id, reserved, actual_tokens, balance_delta, balance)

    def create_pending_purchase(self, quote: PurchaseQuote, charge_id: Optional[str]) -> TokenPurchase:
        """Record a purchase awaiting merchant approval. Balance is unchanged."""
        token_balance = self.get_or_create()
        purchase = self.repository.add_purchase(
            token_balance,
            usd_amount=quote.usd_amount,
            app_revenue=quote.app_revenue,
            token_budget=quote.token_budget,
            tokens_received=quote.tokens,
            shopify_charge_id=normalize_purchase_charge_id(charge_id),
            status=PurchaseStatus.PENDING,
        )
        self.db.commit()

        logger.info("Pending token purchase recorded", extra={
            "shop_domain": self.shop_domain,
            "usd_amount": str(quote.usd_amount),
            "tokens": quote.tokens,
            "charge_id": purchase.shopify_charge_id,
        })
        return purchase

    def confirm_purchase(
        self,
        usd_amount: Decimal,
        tokens: int,
        charge_id: Optional[str],
    ) -> PurchaseConfirmation:
        """
        Credit an approved purchase.

        Idempotent per charge id: a completed charge is never credited again,
        a pending row is completed in place, an unknown charge is appended
        as a completed purchase.
        """
        self.get_or_create()
        token_balance = self.repository.lock(self.shop_domain)
        charge_id = normalize_purchase_charge_id(charge_id)
        now = utcnow()

        existing = self.repository.find_purchase(self.shop_domain, charge_id) if charge_id else None

        if existing and existing.status == PurchaseStatus.COMPLETED:
            self.db.rollback()
            logger.info("Token purchase already credited", extra={
                "shop_domain": self.shop_domain,
                "charge_id": charge_id,
            })
            return PurchaseConfirmation(False, existing.tokens_received, charge_id, self._current().balance)

        if existing:
            credited_tokens = existing.tokens_received
            if not self.repository.update_purchase_status(
                existing.id,
                PurchaseStatus.PENDING,
                {"status": PurchaseStatus.COMPLETED, "completed_at": now},
            ):
                self.db.rollback()
                return PurchaseConfirmation(False, credited_tokens, charge_id, self._current().balance)
        else:
            credited_tokens = tokens
            self.repository.add_purchase(
                token_balance,
                usd_amount=usd_amount,
                tokens_received=tokens,
                shopify_charge_id=charge_id,
                status=PurchaseStatus.COMPLETED,
                completed_at=now,
            )

        self.repository.apply(
            self.shop_domain,
            balance=credited_tokens,
            total_purchased=credited_tokens,
        )
        self.repository.set_values(self.shop_domain, last_purchase_at=now)
        self.db.commit()

        balance = self._current().balance
        logger.info("Token purchase credited", extra={
            "shop_domain": self.shop_domain,
            "charge_id": charge_id,
            "tokens": credited_tokens,
            "balance": balance,
        })
        return PurchaseConfirmation(True, credited_tokens, charge_id, balance)

    def set_included_tokens(
        self,
        tokens: int,
        plan: str,
        subscription_id: Optional[str] = None,
    ) -> bool:
        """
        Replace the included portion of the balance for a plan change.

        balance becomes tokens + total_purchased. Repeating the grant for the
        same (plan, subscription_id) is a no-op.

        Returns:
            True if the balance was reset
        """
        self.get_or_create()
        token_balance = self.repository.lock(self.shop_domain)

        last_grant = self.repository.last_usage_of_type(self.shop_domain, UsageEntryType.INCLUDED_SET)
        if last_grant:
            tag = last_grant.extra_metadata or {}
            if tag.get("plan") == plan and tag.get("subscription_id") == subscription_id:
                self.db.rollback()
                logger.info("Included tokens already set for plan", extra={
                    "shop_domain": self.shop_domain,
                    "plan": plan,
                    "subscription_id": subscription_id,
                })
                return False

        new_balance = tokens + token_balance.total_purchased
        delta = new_balance - token_balance.balance

        self.repository.set_values(self.shop_domain, balance=new_balance)
        self.repository.add_usage(
            token_balance,
            feature=INCLUDED_TOKENS_FEATURE,
            tokens_used=-delta,
            entry_type=UsageEntryType.INCLUDED_SET,
            extra_metadata={
                "plan": plan,
                "subscription_id": subscription_id,
                "included_tokens": tokens,
                "previous_balance": token_balance.balance,
            },
        )
        self.db.commit()

        logger.info("Included tokens set", extra={
            "shop_domain": self.shop_domain,
            "plan": plan,
            "included_tokens": tokens,
            "balance": new_balance,
        })
        return True

    def add_included_tokens(self, tokens: int, plan: str) -> TokenBalance:
        """Add included tokens on top of the current balance (explicit activation)."""
        token_balance = self.get_or_create()

        self.repository.apply(self.shop_domain, balance=tokens)
        self.repository.add_usage(
            token_balance,
            feature=INCLUDED_TOKENS_FEATURE,
            tokens_used=-tokens,
            entry_type=UsageEntryType.INCLUDED_GRANT,
            extra_metadata={"plan": plan, "included_tokens": tokens},
        )
        self.db.commit()

        token_balance = self._current()
        logger.info("Included tokens added", extra={
            "shop_domain": self.shop_domain,
            "plan": plan,
            "included_tokens": tokens,
            "balance": token_balance.balance,
        })
        return token_balance

    def monthly_refresh(self, plan: str, subscription_id: Optional[str] = None) -> Optional[TokenBalance]:
        """
        Reset the balance for a new billing cycle.

        balance = included tokens for the plan + total_purchased, total_used = 0.
        Plans without included tokens are skipped (returns None).
        """
        included = self.plans.get_included_tokens(plan)
        if included <= 0:
            logger.info("Monthly refresh skipped, plan has no included tokens", extra={
                "shop_domain": self.shop_domain,
                "plan": plan,
            })
            return None

        self.get_or_create()
        token_balance = self.repository.lock(self.shop_domain)

        previous_balance = token_balance.balance
        previous_total_used = token_balance.total_used
        new_balance = included + token_balance.total_purchased

        self.repository.set_values(self.shop_domain, balance=new_balance, total_used=0)
        self.repository.add_usage(
            token_balance,
            feature=MONTHLY_REFRESH_FEATURE,
            tokens_used=previous_balance - new_balance,
            entry_type=UsageEntryType.MONTHLY_REFRESH,
            extra_metadata={
                "plan": plan,
                "subscription_id": subscription_id,
                "included_tokens": included,
                "previous_balance": previous_balance,
                "previous_total_used": previous_total_used,
            },
        )
        self.db.commit()

        logger.info("Monthly token refresh applied", extra={
            "shop_domain": self.shop_domain,
            "plan": plan,
            "included_tokens": included,
            "previous_total_used": previous_total_used,
            "balance": new_balance,
        })
        return self._current()

    def replay_balance(self) -> int:
        """Reconstruct the balance from the ledgers."""
        purchased = self.db.query(func.coalesce(func.sum(TokenPurchase.tokens_received), 0)).filter(
            TokenPurchase.shop_domain == self.shop_domain,
            TokenPurchase.status == PurchaseStatus.COMPLETED,
        ).scalar()
        used = self.db.query(func.coalesce(func.sum(TokenUsage.tokens_used), 0)).filter(
            TokenUsage.shop_domain == self.shop_domain,
        ).scalar()
        return int(purchased) - int(used)

    def recent_usage(self, limit: int) -> List[TokenUsage]:
        return self.repository.list_usage(self.shop_domain, limit=limit)

    def purchases(self) -> List[TokenPurchase]:
        return self.repository.list_purchases(self.shop_domain)
