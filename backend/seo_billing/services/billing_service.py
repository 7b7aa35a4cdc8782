"""
Billing service - the subscription state machine for one shop.

Single entry point for every billing read and mutation, so all of them
share one reconciliation path:

    none -> first-pending -> active -> plan-change-pending -> active
                                    -> cancelled

Orchestrates:
- Subscribe / plan change (confirmation URL from Shopify)
- Approval callback finalization (the only place a row is inserted)
- Explicit activation (end trial)
- Cancellation
- Token purchases and the billing info view

Cache invalidation always happens after the mutation commits.
"""

import logging
import math
import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from seo_billing.config.billing_plans import PlanCatalog, PlanDefinition, get_plan_catalog
from seo_billing.config.token_pricing import quote_purchase, to_decimal, validate_purchase_amount
from seo_billing.integrations.openrouter.pricing_client import TokenRateProvider, get_token_rate_provider
from seo_billing.models.base import ensure_utc, utcnow
from seo_billing.models.subscription import Subscription, SubscriptionStatus
from seo_billing.models.token_balance import TokenPurchase, TokenUsage
from seo_billing.repositories.subscription_repository import SubscriptionRepository
from seo_billing.services.billing_cache import VIEW_INFO, BillingCache, get_billing_cache
from seo_billing.services.billing_errors import (
    BillingServiceError,
    GatewayRejectedError,
    GatewayUnreachableError,
    InvalidAmountError,
    InvalidPlanError,
    NoActiveSubscriptionError,
    ShopNotFoundError,
    SubscriptionNotFoundError,
)
from seo_billing.services.billing_gateway import BillingGateway, normalize_subscription_id
from seo_billing.services.billing_reconciliation import ReconciliationGuard, ReconciliationResult
from seo_billing.services.token_ledger import PurchaseConfirmation, TokenLedger

logger = logging.getLogger(__name__)

DEFAULT_RETURN_TO = "/billing"
RECENT_USAGE_LIMIT = 10
HISTORY_USAGE_LIMIT = 50

GatewayFactory = Callable[[], BillingGateway]


class SubscriptionFinalization(str, Enum):
    """
    How an approval callback finalizes the shop's subscription.

    FIRST_INSTALL is the only kind allowed to insert a row.
    """
    FIRST_INSTALL = "first_install"
    PLAN_CHANGE = "plan_change"
    ACTIVATION = "activation"
    RECONFIRM = "reconfirm"


@dataclass
class SubscribeResult:
    """Result of requesting a subscription or plan change."""
    confirmation_url: str
    shopify_subscription_id: Optional[str]
    plan: str
    trial_days: int
    plan_change: bool


@dataclass
class CallbackResult:
    """Result of finalizing an approval callback."""
    kind: SubscriptionFinalization
    subscription: Subscription
    included_tokens_set: bool = False


@dataclass
class ActivationResult:
    """Result of an explicit activation."""
    plan: str
    activated_at: Any
    trial_ended: bool
    requires_approval: bool = False
    confirmation_url: Optional[str] = None
    tokens_added: int = 0
    gateway_error: Optional[BillingServiceError] = None


@dataclass
class TokenPurchaseResult:
    """Result of starting a token purchase."""
    confirmation_url: str
    charge_id: Optional[str]
    tokens: int
    usd_amount: Decimal


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def serialize_usage(entry: TokenUsage) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "feature": entry.feature,
        "tokens_used": entry.tokens_used,
        "entry_type": entry.entry_type,
        "reservation_id": entry.reservation_id,
        "product_id": entry.product_id,
        "collection_id": entry.collection_id,
        "metadata": entry.extra_metadata or {},
        "created_at": _iso(entry.created_at),
    }


def serialize_purchase(purchase: TokenPurchase) -> Dict[str, Any]:
    return {
        "id": purchase.id,
        "usd_amount": float(purchase.usd_amount),
        "tokens_received": purchase.tokens_received,
        "shopify_charge_id": purchase.shopify_charge_id,
        "status": purchase.status,
        "created_at": _iso(purchase.created_at),
        "completed_at": _iso(purchase.completed_at),
    }


class BillingService:
    """
    Subscription state machine and billing facade for one shop.

    Usage:
        service = BillingService(db, "mystore.myshopify.com")
        result = await service.request_subscribe("growth", end_trial=False)
        # redirect the merchant to result.confirmation_url
    """

    def __init__(
        self,
        db_session: Session,
        shop_domain: str,
        gateway_factory: Optional[GatewayFactory] = None,
        cache: Optional[BillingCache] = None,
        plan_catalog: Optional[PlanCatalog] = None,
        rate_provider: Optional[TokenRateProvider] = None,
    ):
        """
        Initialize billing service.

        Args:
            db_session: Database session
            shop_domain: Shop the service acts for
            gateway_factory: Builds the shop's BillingGateway (default: from the stored credential)
            cache: Billing view cache
            plan_catalog: Plan catalog
            rate_provider: Token rate lookup for purchases
        """
        if not shop_domain:
            raise ValueError("shop_domain is required")

        self.db = db_session
        self.shop_domain = shop_domain
        self.subscriptions = SubscriptionRepository(db_session)
        self.plans = plan_catalog or get_plan_catalog()
        self.cache = cache or get_billing_cache()
        self.rate_provider = rate_provider or get_token_rate_provider()
        self.ledger = TokenLedger(db_session, shop_domain, self.plans)
        self._gateway_factory = gateway_factory or (
            lambda: BillingGateway.for_shop(db_session, shop_domain)
        )
        self._gateway: Optional[BillingGateway] = None

    def _get_gateway(self) -> BillingGateway:
        if self._gateway is None:
            self._gateway = self._gateway_factory()
        return self._gateway

    def _require_plan(self, plan: Optional[str]) -> PlanDefinition:
        definition = self.plans.get_plan(plan)
        if definition is None:
            raise InvalidPlanError(plan, self.shop_domain)
        return definition

    def _invalidate(self, reason: str) -> None:
        self.cache.invalidate_shop(self.shop_domain, reason=reason)

    def _app_url(self) -> str:
        return os.getenv("APP_URL", f"https://{self.shop_domain}").rstrip("/")

    def _subscription_return_url(self, plan_key: str, return_to: Optional[str]) -> str:
        query = urlencode({
            "shop": self.shop_domain,
            "plan": plan_key,
            "returnTo": return_to or DEFAULT_RETURN_TO,
        })
        return f"{self._app_url()}/billing/callback?{query}"

    def _token_return_url(self, usd_amount: Decimal, return_to: Optional[str]) -> str:
        query = urlencode({
            "shop": self.shop_domain,
            "amount": str(usd_amount),
            "returnTo": return_to or DEFAULT_RETURN_TO,
        })
        return f"{self._app_url()}/billing/tokens/callback?{query}"

    async def reconcile(self) -> ReconciliationResult:
        """Run the reconciliation guard for this shop."""
        guard = ReconciliationGuard(self.db, self.shop_domain, self._get_gateway, self.cache)
        return await guard.run()

    def get_subscription(self) -> Optional[Subscription]:
        return self.subscriptions.get(self.shop_domain)

    def _trial_days_for(self, subscription: Optional[Subscription], end_trial: bool) -> int:
        if end_trial:
            return 0
        if subscription is None:
            return self.plans.trial_days

        trial_ends_at = ensure_utc(subscription.trial_ends_at)
        now = utcnow()
        if trial_ends_at and now < trial_ends_at:
            return math.ceil((trial_ends_at - now).total_seconds() / 86400)
        return 0

    # ------------------------------------------------------------------
    # Subscribe / plan change
    # ------------------------------------------------------------------

    async def request_subscribe(
        self,
        plan: str,
        end_trial: bool = False,
        return_to: Optional[str] = None,
    ) -> SubscribeResult:
        """
        Request a subscription (first install) or a plan change.

        A first subscription writes nothing locally; the row is created by
        the approval callback. A plan change marks pending_plan and keeps
        trial_ends_at exactly as it was.

        Raises:
            InvalidPlanError: plan not in the catalog (before any provider call)
            ShopNotFoundError: no stored credential
            GatewayUnreachableError / GatewayRejectedError: provider failure
        """
        definition = self._require_plan(plan)
        self._get_gateway()

        subscription = (await self.reconcile()).subscription
        trial_days = self._trial_days_for(subscription, end_trial)

        charge = await self._get_gateway().create_recurring_charge(
            definition,
            self._subscription_return_url(definition.key, return_to),
            trial_days=trial_days,
        )
        charge_id = normalize_subscription_id(charge.charge_id)

        if subscription is not None:
            self.subscriptions.update(self.shop_domain, {
                "pending_plan": definition.key,
                "shopify_subscription_id": charge_id,
                "pending_activation": True,
            })
            self.db.commit()
            self._invalidate("plan_change_requested")

        logger.info("Subscription requested", extra={
            "shop_domain": self.shop_domain,
            "plan": definition.key,
            "trial_days": trial_days,
            "plan_change": subscription is not None,
            "shopify_subscription_id": charge_id,
        })

        return SubscribeResult(
            confirmation_url=charge.confirmation_url,
            shopify_subscription_id=charge_id,
            plan=definition.key,
            trial_days=trial_days,
            plan_change=subscription is not None,
        )

    # ------------------------------------------------------------------
    # Approval callback
    # ------------------------------------------------------------------

    @staticmethod
    def classify_callback(subscription: Optional[Subscription]) -> SubscriptionFinalization:
        if subscription is None:
            return SubscriptionFinalization.FIRST_INSTALL
        if subscription.pending_plan:
            return SubscriptionFinalization.PLAN_CHANGE
        if subscription.activated_at is not None:
            return SubscriptionFinalization.ACTIVATION
        return SubscriptionFinalization.RECONFIRM

    def _finalize_first_install(
        self,
        plan_key: Optional[str],
        charge_id: Optional[str],
    ) -> Optional[Subscription]:
        if plan_key is None:
            raise InvalidPlanError(plan_key, self.shop_domain)

        now = utcnow()
        return self.subscriptions.insert(
            shop_domain=self.shop_domain,
            plan=plan_key,
            status=SubscriptionStatus.ACTIVE,
            pending_activation=False,
            shopify_subscription_id=charge_id,
            started_at=now,
            trial_ends_at=now + timedelta(days=self.plans.trial_days),
        )

    def _finalize_plan_change(self, subscription: Subscription, charge_id: Optional[str]) -> None:
        trial_ends_at = ensure_utc(subscription.trial_ends_at)
        values = {
            "plan": subscription.pending_plan,
            "pending_plan": None,
            "pending_activation": False,
            "status": SubscriptionStatus.ACTIVE,
            "trial_ends_at": trial_ends_at if trial_ends_at and utcnow() < trial_ends_at else None,
        }
        if charge_id:
            values["shopify_subscription_id"] = charge_id

        self.subscriptions.update(
            self.shop_domain,
            values,
            expected={"pending_plan": subscription.pending_plan},
        )

    def _finalize_existing(
        self,
        subscription: Subscription,
        plan_key: Optional[str],
        charge_id: Optional[str],
    ) -> None:
        # Activation and reconfirm: change only what differs, never
        # activated_at or trial_ends_at
        values = {}
        if plan_key and subscription.plan != plan_key:
            values["plan"] = plan_key
        if subscription.status != SubscriptionStatus.ACTIVE:
            values["status"] = SubscriptionStatus.ACTIVE
        if subscription.pending_activation:
            values["pending_activation"] = False
        if charge_id and subscription.shopify_subscription_id is None:
            values["shopify_subscription_id"] = charge_id

        if values:
            self.subscriptions.update(self.shop_domain, values)

    async def handle_approval_callback(
        self,
        plan: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> CallbackResult:
        """
        Finalize state after the merchant approved a charge.

        Idempotent: a repeated callback leaves the subscription unchanged
        and does not credit included tokens twice.

        Raises:
            InvalidPlanError: first install with no valid plan
        """
        plan_key = self.plans.resolve_plan_key(plan) if plan else None
        if plan and plan_key is None:
            raise InvalidPlanError(plan, self.shop_domain)

        charge_id = normalize_subscription_id(charge_id)
        subscription = self.subscriptions.get(self.shop_domain, for_update=True)
        kind = self.classify_callback(subscription)

        if kind == SubscriptionFinalization.FIRST_INSTALL:
            if self._finalize_first_install(plan_key, charge_id) is None:
                # A concurrent callback inserted first; treat as a repeat
                subscription = self.subscriptions.get(self.shop_domain, for_update=True)
                kind = self.classify_callback(subscription)
                self._finalize_existing(subscription, plan_key, charge_id)
        elif kind == SubscriptionFinalization.PLAN_CHANGE:
            self._finalize_plan_change(subscription, charge_id)
        else:
            self._finalize_existing(subscription, plan_key, charge_id)

        self.db.commit()
        subscription = self.subscriptions.get(self.shop_domain)

        included_tokens_set = False
        included = self.plans.get_included_tokens(subscription.plan)
        if included > 0:
            included_tokens_set = self.ledger.set_included_tokens(
                included,
                subscription.plan,
                subscription.shopify_subscription_id,
            )

        self._invalidate("approval_callback")

        logger.info("Approval callback finalized", extra={
            "shop_domain": self.shop_domain,
            "kind": kind.value,
            "plan": subscription.plan,
            "shopify_subscription_id": subscription.shopify_subscription_id,
            "included_tokens_set": included_tokens_set,
        })
        return CallbackResult(kind, subscription, included_tokens_set)

    # ------------------------------------------------------------------
    # Activation / cancellation
    # ------------------------------------------------------------------

    def _activation_superseded(self) -> ActivationResult:
        """A concurrent activation already moved activated_at; report its state, grant nothing."""
        self.db.rollback()
        current = self.subscriptions.get(self.shop_domain)
        if current is None:
            raise SubscriptionNotFoundError(self.shop_domain)

        logger.info("Activation skipped, already applied concurrently", extra={
            "shop_domain": self.shop_domain,
            "plan": current.plan,
        })
        return ActivationResult(
            plan=current.plan,
            activated_at=ensure_utc(current.activated_at),
            trial_ended=current.trial_ends_at is None,
        )

    async def activate(self, end_trial: bool = False, return_to: Optional[str] = None) -> ActivationResult:
        """
        Explicitly activate the current plan.

        With end_trial a new charge with no trial is created at the provider;
        activated_at, trial_ends_at=None and the new charge id are persisted
        before the confirmation URL is returned. If the provider call fails
        the local trial end is still persisted and the error is returned in
        ActivationResult.gateway_error.

        Raises:
            SubscriptionNotFoundError: no subscription row
        """
        subscription = self.subscriptions.get(self.shop_domain)
        if subscription is None:
            raise SubscriptionNotFoundError(self.shop_domain)

        subscription = (await self.reconcile()).subscription
        if subscription is None:
            raise SubscriptionNotFoundError(self.shop_domain)

        # Applies only if no concurrent activation moved activated_at since the guard read it
        expected = {"activated_at": subscription.activated_at}
        now = utcnow()
        values = {"activated_at": now, "pending_activation": False}
        gateway_error = None

        if end_trial:
            values["trial_ends_at"] = None
            try:
                charge = await self._get_gateway().create_recurring_charge(
                    self._require_plan(subscription.plan),
                    self._subscription_return_url(subscription.plan, return_to),
                    trial_days=0,
                )
            except (GatewayUnreachableError, GatewayRejectedError, ShopNotFoundError) as e:
                gateway_error = e
                logger.error("Failed to end trial at the billing provider", extra={
                    "shop_domain": self.shop_domain,
                    "plan": subscription.plan,
                    "error": e.code,
                })
            else:
                values["shopify_subscription_id"] = normalize_subscription_id(charge.charge_id)
                if not self.subscriptions.update(self.shop_domain, values, expected=expected):
                    return self._activation_superseded()
                self.db.commit()
                self._invalidate("activation_pending_approval")

                logger.info("Activation awaiting approval", extra={
                    "shop_domain": self.shop_domain,
                    "plan": subscription.plan,
                    "shopify_subscription_id": values["shopify_subscription_id"],
                })
                return ActivationResult(
                    plan=subscription.plan,
                    activated_at=now,
                    trial_ended=True,
                    requires_approval=True,
                    confirmation_url=charge.confirmation_url,
                )

        if not self.subscriptions.update(self.shop_domain, values, expected=expected):
            return self._activation_superseded()
        self.db.commit()

        tokens_added = self.plans.get_included_tokens(subscription.plan)
        if tokens_added > 0:
            self.ledger.add_included_tokens(tokens_added, subscription.plan)

        self._invalidate("activation")

        logger.info("Plan activated", extra={
            "shop_domain": self.shop_domain,
            "plan": subscription.plan,
            "trial_ended": end_trial,
            "tokens_added": tokens_added,
        })
        return ActivationResult(
            plan=subscription.plan,
            activated_at=now,
            trial_ended=end_trial,
            tokens_added=tokens_added,
            gateway_error=gateway_error,
        )

    async def cancel(self) -> Subscription:
        """
        Cancel the shop's subscription at the provider, then locally.

        Granted tokens and the balance are left untouched.

        Raises:
            NoActiveSubscriptionError: nothing to cancel
            GatewayUnreachableError / GatewayRejectedError: provider failure
        """
        subscription = self.subscriptions.get(self.shop_domain)
        if subscription is None or not subscription.shopify_subscription_id:
            raise NoActiveSubscriptionError(self.shop_domain)

        await self._get_gateway().cancel_subscription(subscription.shopify_subscription_id)

        self.subscriptions.update(self.shop_domain, {
            "status": SubscriptionStatus.CANCELLED,
            "cancelled_at": utcnow(),
        })
        self.db.commit()
        self._invalidate("cancelled")

        logger.info("Subscription cancelled", extra={
            "shop_domain": self.shop_domain,
            "plan": subscription.plan,
            "shopify_subscription_id": subscription.shopify_subscription_id,
        })
        return self.subscriptions.get(self.shop_domain)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _parse_amount(self, amount: Any) -> Decimal:
        reason = validate_purchase_amount(amount)
        if reason:
            raise InvalidAmountError(amount, reason, self.shop_domain)
        return to_decimal(amount)

    async def purchase_tokens(self, amount: Any, return_to: Optional[str] = None) -> TokenPurchaseResult:
        """
        Start a token purchase (one-time charge) and record it as pending.

        Raises:
            InvalidAmountError: amount outside $5-$1000 or not a multiple of $5
            ShopNotFoundError, GatewayUnreachableError, GatewayRejectedError
        """
        usd = self._parse_amount(amount)
        gateway = self._get_gateway()

        quote = quote_purchase(usd, await self.rate_provider.get_rate_per_1m())
        charge = await gateway.create_one_time_charge(
            name=f"AI Tokens Purchase ({quote.tokens:,} tokens)",
            amount=usd,
            return_url=self._token_return_url(usd, return_to),
        )

        purchase = self.ledger.create_pending_purchase(quote, charge.charge_id)
        self._invalidate("token_purchase_requested")

        return TokenPurchaseResult(
            confirmation_url=charge.confirmation_url,
            charge_id=purchase.shopify_charge_id,
            tokens=quote.tokens,
            usd_amount=usd,
        )

    async def handle_token_purchase_callback(
        self,
        amount: Any,
        charge_id: Optional[str] = None,
    ) -> PurchaseConfirmation:
        """Credit an approved token purchase (idempotent per charge id)."""
        usd = self._parse_amount(amount)
        quote = quote_purchase(usd, await self.rate_provider.get_rate_per_1m())

        confirmation = self.ledger.confirm_purchase(usd, quote.tokens, charge_id)
        self._invalidate("token_purchase_confirmed")
        return confirmation

    def get_token_balance(self) -> Dict[str, Any]:
        token_balance = self.ledger.get_or_create()
        return {
            "balance": token_balance.balance,
            "total_purchased": token_balance.total_purchased,
            "total_used": token_balance.total_used,
            "last_purchase_at": _iso(token_balance.last_purchase_at),
            "recent_usage": [serialize_usage(u) for u in self.ledger.recent_usage(RECENT_USAGE_LIMIT)],
        }

    def get_history(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "purchases": [serialize_purchase(p) for p in self.ledger.purchases()],
            "usage": [serialize_usage(u) for u in self.ledger.recent_usage(HISTORY_USAGE_LIMIT)],
        }

    # ------------------------------------------------------------------
    # Billing info view
    # ------------------------------------------------------------------

    def _subscription_view(self, subscription: Optional[Subscription]) -> Optional[Dict[str, Any]]:
        if subscription is None:
            return None
        definition = self.plans.get_plan(subscription.plan)
        return {
            "plan": subscription.plan,
            "status": subscription.status,
            "price": definition.price if definition else None,
            "trial_ends_at": _iso(subscription.trial_ends_at),
            "in_trial": subscription.is_in_trial,
            "pending_plan": subscription.pending_plan,
            "pending_activation": bool(subscription.pending_activation),
            "activated_at": _iso(subscription.activated_at),
            "cancelled_at": _iso(subscription.cancelled_at),
            "shopify_subscription_id": subscription.shopify_subscription_id,
        }

    async def get_billing_info(self) -> Dict[str, Any]:
        """
        Billing info view (read-through cached).

        Runs the reconciliation guard first; if the provider cannot be
        reached the local state is served as-is.
        """
        try:
            await self.reconcile()
        except (GatewayUnreachableError, ShopNotFoundError) as e:
            logger.warning("Reconciliation skipped for billing info", extra={
                "shop_domain": self.shop_domain,
                "error": e.code,
            })

        cached = self.cache.get(self.shop_domain, VIEW_INFO)
        if cached is not None:
            return cached

        token_balance = self.ledger.get_or_create()
        info = {
            "subscription": self._subscription_view(self.subscriptions.get(self.shop_domain)),
            "tokens": {
                "balance": token_balance.balance,
                "total_purchased": token_balance.total_purchased,
                "total_used": token_balance.total_used,
                "last_purchase_at": _iso(token_balance.last_purchase_at),
            },
            "plans": [plan.to_dict() for plan in self.plans.list_plans()],
            "trial_days": self.plans.trial_days,
        }
        self.cache.set(self.shop_domain, VIEW_INFO, info)
        return info
