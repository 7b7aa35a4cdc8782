"""
Billing gateway adapter.

The only path from billing services to Shopify. Translates client
results and failures into the billing error taxonomy:

- ShopifyAPIError (transport, non-2xx, GraphQL errors, timeout)
    -> GatewayUnreachableError
- provider userErrors / a cancel that did not take effect
    -> GatewayRejectedError

Nothing is persisted here.
"""

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from seo_billing.config.billing_plans import PlanDefinition
from seo_billing.integrations.shopify.billing_client import (
    ShopifyAPIError,
    ShopifyBillingClient,
    ShopifySubscription,
    get_billing_client,
)
from seo_billing.platform.secrets import EncryptionError, decrypt_secret
from seo_billing.repositories.shop_repository import ShopRepository
from seo_billing.services.billing_errors import (
    GatewayRejectedError,
    GatewayUnreachableError,
    ShopNotFoundError,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str, str], ShopifyBillingClient]


def billing_test_mode() -> bool:
    """Whether charges are created as Shopify test charges."""
    return os.getenv("SHOPIFY_BILLING_TEST_MODE", "false").lower() in ("1", "true", "yes")


@dataclass
class GatewayCharge:
    """A charge created at the provider, awaiting merchant approval."""
    confirmation_url: str
    charge_id: Optional[str]


class BillingGateway:
    """
    Billing gateway for one shop.

    Usage:
        gateway = BillingGateway.for_shop(db, shop_domain)
        charge = await gateway.create_recurring_charge(plan, return_url, trial_days=5)
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.shop_domain = shop_domain
        self._access_token = access_token
        self._client_factory = client_factory or get_billing_client

    @classmethod
    def for_shop(
        cls,
        db_session: Session,
        shop_domain: str,
        client_factory: Optional[ClientFactory] = None,
    ) -> "BillingGateway":
        """
        Build a gateway using the shop's stored credential.

        Raises:
            ShopNotFoundError: shop not installed or credential unusable
        """
        shop = ShopRepository(db_session).get(shop_domain)
        if not shop or not shop.access_token_encrypted:
            raise ShopNotFoundError(shop_domain)

        try:
            access_token = decrypt_secret(shop.access_token_encrypted)
        except EncryptionError as e:
            logger.error("Failed to decrypt shop access token", extra={
                "shop_domain": shop_domain,
                "error": str(e),
            })
            raise ShopNotFoundError(shop_domain)

        return cls(shop_domain, access_token, client_factory)

    def _client(self) -> ShopifyBillingClient:
        return self._client_factory(self.shop_domain, self._access_token)

    def _unreachable(self, operation: str, error: ShopifyAPIError) -> GatewayUnreachableError:
        logger.error("Billing gateway call failed", extra={
            "shop_domain": self.shop_domain,
            "operation": operation,
            "status_code": error.status_code,
            "error": str(error),
        })
        return GatewayUnreachableError(
            f"Billing provider unavailable during {operation}: {error}",
            shop_domain=self.shop_domain,
            status_code=error.status_code,
        )

    def _rejected(self, operation: str, user_errors: list) -> GatewayRejectedError:
        message = user_errors[0].get("message") if user_errors else f"{operation} was not accepted"
        return GatewayRejectedError(message, shop_domain=self.shop_domain, user_errors=user_errors)

    async def create_recurring_charge(
        self,
        plan: PlanDefinition,
        return_url: str,
        trial_days: int,
    ) -> GatewayCharge:
        """Create a monthly plan charge; returns the merchant confirmation URL."""
        try:
            async with self._client() as client:
                result = await client.create_subscription(
                    name=f"{plan.name} Plan",
                    price_amount=plan.price,
                    currency_code=plan.currency,
                    return_url=return_url,
                    trial_days=trial_days,
                    test=billing_test_mode(),
                )
        except ShopifyAPIError as e:
            raise self._unreachable("create_recurring_charge", e)

        if not result.success:
            raise self._rejected("create_recurring_charge", result.user_errors)

        charge_id = result.app_subscription.id if result.app_subscription else None
        return GatewayCharge(result.confirmation_url, charge_id)

    async def create_one_time_charge(
        self,
        name: str,
        amount: Decimal,
        return_url: str,
        currency_code: str = "USD",
    ) -> GatewayCharge:
        """Create a one-time charge (token purchase)."""
        try:
            async with self._client() as client:
                result = await client.create_one_time_purchase(
                    name=name,
                    price_amount=float(amount),
                    currency_code=currency_code,
                    return_url=return_url,
                    test=billing_test_mode(),
                )
        except ShopifyAPIError as e:
            raise self._unreachable("create_one_time_charge", e)

        if not result.success:
            raise self._rejected("create_one_time_charge", result.user_errors)

        return GatewayCharge(result.confirmation_url, result.purchase_id)

    async def get_active_subscription(self) -> Optional[ShopifySubscription]:
        """
        The subscription the provider currently considers approved, if any.

        Absence of a match is the only signal that a charge was not approved.
        """
        try:
            async with self._client() as client:
                subscriptions = await client.get_active_subscriptions()
        except ShopifyAPIError as e:
            raise self._unreachable("get_active_subscription", e)

        return subscriptions[0] if subscriptions else None

    async def cancel_subscription(self, subscription_id: str) -> None:
        try:
            async with self._client() as client:
                result = await client.cancel_subscription(subscription_id)
        except ShopifyAPIError as e:
            raise self._unreachable("cancel_subscription", e)

        if not result.success:
            raise self._rejected("cancel_subscription", result.user_errors)


SUBSCRIPTION_GID_PREFIX = "gid://shopify/AppSubscription/"


def normalize_subscription_id(subscription_id: Optional[str]) -> Optional[str]:
    """Shopify sends numeric ids on return URLs and some webhooks; store GIDs."""
    if not subscription_id:
        return None
    subscription_id = str(subscription_id).strip()
    if subscription_id.isdigit():
        return f"{SUBSCRIPTION_GID_PREFIX}{subscription_id}"
    return subscription_id
