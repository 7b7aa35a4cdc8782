"""
Reconciliation guard (read-repair of subscription state).

The merchant approves charges on a Shopify-hosted page and may navigate
back without approving. That leaves local markers (pending_plan,
activated_at) pointing at charges Shopify never activated. Before any
operation that depends on those markers, the guard compares them with the
provider's active subscription and clears the stale ones.

- Activation marker: activated_at with no shopify_subscription_id is stale
  without asking the provider. Otherwise it is stale unless the stored id
  is the provider's active subscription.
- Pending plan: stale unless its charge is the provider's active subscription.

Every clear is a conditional UPDATE on the values the guard observed, so
a concurrent approval callback that already rewrote the row wins. The row
is re-read after every clear. Running the guard on consistent state is a
no-op. Provider failures propagate to the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from seo_billing.integrations.shopify.billing_client import ShopifySubscription
from seo_billing.models.subscription import Subscription
from seo_billing.repositories.subscription_repository import SubscriptionRepository
from seo_billing.services.billing_cache import BillingCache, get_billing_cache
from seo_billing.services.billing_gateway import BillingGateway, normalize_subscription_id

logger = logging.getLogger(__name__)

STALE_ACTIVATION = "stale_activation"
STALE_PENDING_PLAN = "stale_pending_plan"

_NOT_FETCHED = object()


@dataclass
class ReconciliationResult:
    """What the guard repaired."""
    subscription: Optional[Subscription]
    repairs: List[str] = field(default_factory=list)
    gateway_queried: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.repairs)


class ReconciliationGuard:
    """
    Detects and clears stale pending/activation markers for one shop.

    The gateway is built lazily and queried at most once per run, so a
    consistent row costs no provider call.
    """

    def __init__(
        self,
        db_session: Session,
        shop_domain: str,
        gateway_provider: Callable[[], BillingGateway],
        cache: Optional[BillingCache] = None,
    ):
        self.db = db_session
        self.shop_domain = shop_domain
        self.repository = SubscriptionRepository(db_session)
        self._gateway_provider = gateway_provider
        self._cache = cache or get_billing_cache()
        self._active = _NOT_FETCHED

    async def _active_subscription_id(self) -> Optional[str]:
        if self._active is _NOT_FETCHED:
            active: Optional[ShopifySubscription] = await self._gateway_provider().get_active_subscription()
            self._active = normalize_subscription_id(active.id) if active else None
        return self._active

    def _clear(self, subscription: Subscription, values: dict, expected: dict, repair: str) -> bool:
        applied = self.repository.update(self.shop_domain, values, expected=expected)
        if applied:
            self.db.commit()
            logger.warning("Cleared stale subscription state", extra={
                "shop_domain": self.shop_domain,
                "repair": repair,
                "plan": subscription.plan,
                "pending_plan": subscription.pending_plan,
                "shopify_subscription_id": subscription.shopify_subscription_id,
            })
        else:
            # Row changed underneath us; the concurrent writer wins
            self.db.rollback()
            logger.info("Stale state clear skipped, row changed concurrently", extra={
                "shop_domain": self.shop_domain,
                "repair": repair,
            })
        return applied

    async def _check_activation(self, subscription: Subscription, result: ReconciliationResult) -> None:
        if subscription.activated_at is None or subscription.pending_plan is not None:
            return

        stored_id = subscription.shopify_subscription_id
        if stored_id is None:
            stale = True
        else:
            result.gateway_queried = True
            stale = await self._active_subscription_id() != normalize_subscription_id(stored_id)

        if not stale:
            return

        values = {"activated_at": None, "trial_ends_at": None}
        if stored_id is not None:
            values["shopify_subscription_id"] = None

        if self._clear(
            subscription,
            values,
            expected={"activated_at": subscription.activated_at, "shopify_subscription_id": stored_id},
            repair=STALE_ACTIVATION,
        ):
            result.repairs.append(STALE_ACTIVATION)

    async def _check_pending_plan(self, subscription: Subscription, result: ReconciliationResult) -> None:
        if subscription.pending_plan is None:
            return

        stored_id = subscription.shopify_subscription_id
        if stored_id is None:
            active_id = None
            stale = True
        else:
            result.gateway_queried = True
            active_id = await self._active_subscription_id()
            stale = active_id != normalize_subscription_id(stored_id)

        if not stale:
            return

        if self._clear(
            subscription,
            {
                "pending_plan": None,
                "pending_activation": False,
                "shopify_subscription_id": active_id,
            },
            expected={"pending_plan": subscription.pending_plan, "shopify_subscription_id": stored_id},
            repair=STALE_PENDING_PLAN,
        ):
            result.repairs.append(STALE_PENDING_PLAN)

    async def run(self) -> ReconciliationResult:
        """
        Repair stale markers and return the freshly re-read subscription.

        Raises:
            GatewayUnreachableError: the provider could not be queried
            ShopNotFoundError: no credential to query the provider with
        """
        subscription = self.repository.get(self.shop_domain)
        result = ReconciliationResult(subscription=subscription)
        if subscription is None:
            return result

        # A pending-plan clear can expose a stale activation marker, so repeat
        # until a pass repairs nothing. Each repair clears a marker, so this ends.
        while subscription is not None:
            repairs_before = len(result.repairs)

            await self._check_activation(subscription, result)
            subscription = self.repository.get(self.shop_domain)

            if subscription is not None:
                await self._check_pending_plan(subscription, result)
                subscription = self.repository.get(self.shop_domain)

            if len(result.repairs) == repairs_before:
                break

        result.subscription = subscription

        if result.changed:
            self._cache.invalidate_shop(self.shop_domain, reason="reconciliation")

        return result
