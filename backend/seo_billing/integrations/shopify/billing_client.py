"""
Shopify Billing API client for app subscriptions and one-time purchases.

Uses the Shopify GraphQL Admin API:
- appSubscriptionCreate: recurring plan charges (with optional trial)
- appPurchaseOneTimeCreate: token top-ups
- currentAppInstallation.activeSubscriptions: the authoritative approval state
- appSubscriptionCancel

Documentation: https://shopify.dev/docs/apps/billing
"""

import os
import logging
from typing import Optional, Any, Dict, List
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

DEFAULT_SHOPIFY_API_VERSION = "2025-01"


class BillingInterval(str, Enum):
    """Billing interval for recurring charges."""
    EVERY_30_DAYS = "EVERY_30_DAYS"
    ANNUAL = "ANNUAL"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class ShopifySubscription:
    """Represents a Shopify AppSubscription from the API."""
    id: str  # GraphQL GID
    name: str
    status: str
    created_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_days: int = 0
    test: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ShopifySubscription":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            status=data.get("status", ""),
            created_at=_parse_datetime(data.get("createdAt")),
            current_period_end=_parse_datetime(data.get("currentPeriodEnd")),
            trial_days=data.get("trialDays") or 0,
            test=bool(data.get("test", False)),
        )


@dataclass
class CreateSubscriptionResult:
    """Result of appSubscriptionCreate."""
    confirmation_url: str
    app_subscription: Optional[ShopifySubscription] = None
    user_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.confirmation_url) and not self.user_errors


@dataclass
class CreatePurchaseResult:
    """Result of appPurchaseOneTimeCreate."""
    confirmation_url: str
    purchase_id: Optional[str] = None
    status: Optional[str] = None
    user_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.confirmation_url) and not self.user_errors


@dataclass
class CancelSubscriptionResult:
    """Result of appSubscriptionCancel."""
    status: Optional[str] = None
    user_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.user_errors and self.status == "CANCELLED"


class ShopifyBillingError(Exception):
    """Base exception for Shopify Billing API errors."""
    pass


class ShopifyAPIError(ShopifyBillingError):
    """Error communicating with Shopify API."""
    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


_SUBSCRIPTION_FIELDS = """
    id
    name
    status
    createdAt
    currentPeriodEnd
    trialDays
    test
"""


class ShopifyBillingClient:
    """
    Client for Shopify Billing API operations.

    Every call either returns a parsed result or raises ShopifyAPIError;
    no call blocks past the configured timeout.

    SECURITY: the access token is only held in memory for the lifetime of
    the client and never logged.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize billing client for a specific shop.

        Args:
            shop_domain: Shopify store domain (e.g., 'mystore.myshopify.com')
            access_token: Shopify Admin API access token
            api_version: Admin API version (default: SHOPIFY_API_VERSION env or 2025-01)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not shop_domain:
            raise ValueError("shop_domain is required")
        if not access_token:
            raise ValueError("access_token is required")

        self.shop_domain = shop_domain.replace("https://", "").replace("http://", "").rstrip("/")
        self.api_version = api_version or os.getenv("SHOPIFY_API_VERSION", DEFAULT_SHOPIFY_API_VERSION)
        self.graphql_url = f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            headers={
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": access_token
            },
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _execute_graphql(self, query: str, variables: Optional[dict] = None) -> dict:
        """
        Execute a GraphQL query against Shopify Admin API.

        Raises:
            ShopifyAPIError: on transport failure, timeout, non-2xx status
                or top-level GraphQL errors
        """
        payload = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = await self._client.post(self.graphql_url, json=payload)
        except httpx.TimeoutException as e:
            logger.error("Shopify API timeout", extra={
                "shop_domain": self.shop_domain,
                "error": str(e)
            })
            raise ShopifyAPIError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Shopify API request error", extra={
                "shop_domain": self.shop_domain,
                "error": str(e)
            })
            raise ShopifyAPIError(f"Request error: {e}")

        if response.status_code == 401:
            logger.error("Shopify API authentication failed", extra={
                "shop_domain": self.shop_domain,
                "status_code": response.status_code
            })
            raise ShopifyAPIError(
                "Authentication failed - access token may be invalid or expired",
                status_code=401
            )

        if response.status_code == 402:
            logger.error("Shopify store frozen or payment required", extra={
                "shop_domain": self.shop_domain
            })
            raise ShopifyAPIError("Store is frozen or payment required", status_code=402)

        if response.status_code == 429:
            logger.warning("Shopify API rate limited", extra={
                "shop_domain": self.shop_domain
            })
            raise ShopifyAPIError("Rate limited - please retry after a delay", status_code=429)

        if response.status_code >= 400:
            logger.error("Shopify API error", extra={
                "shop_domain": self.shop_domain,
                "status_code": response.status_code,
                "response_text": response.text[:500]
            })
            raise ShopifyAPIError(
                f"Shopify API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError:
            raise ShopifyAPIError("Invalid JSON in Shopify API response", status_code=response.status_code)

        if result.get("errors"):
            logger.error("GraphQL errors", extra={
                "shop_domain": self.shop_domain,
                "errors": result["errors"]
            })
            raise ShopifyAPIError(f"GraphQL errors: {result['errors']}", response=result)

        return result.get("data") or {}

    async def create_subscription(
        self,
        name: str,
        price_amount: float,
        return_url: str,
        currency_code: str = "USD",
        interval: BillingInterval = BillingInterval.EVERY_30_DAYS,
        trial_days: int = 0,
        test: bool = False,
        replacement_behavior: str = "APPLY_IMMEDIATELY"
    ) -> CreateSubscriptionResult:
        """
        Create a recurring app subscription awaiting merchant approval.

        Args:
            name: Subscription name shown to the merchant
            price_amount: Price in currency units (e.g., 9.99)
            return_url: Where Shopify redirects after approval/decline
            currency_code: ISO 4217 currency code
            interval: Billing interval
            trial_days: Trial days (0 for none)
            test: Create a test charge
            replacement_behavior: How Shopify treats the existing subscription

        Returns:
            CreateSubscriptionResult; provider user errors are returned, not raised
        """
        mutation = """
        mutation appSubscriptionCreate($name: String!, $returnUrl: URL!, $lineItems: [AppSubscriptionLineItemInput!]!, $trialDays: Int, $test: Boolean, $replacementBehavior: AppSubscriptionReplacementBehavior) {
            appSubscriptionCreate(
                name: $name
                returnUrl: $returnUrl
                lineItems: $lineItems
                trialDays: $trialDays
                test: $test
                replacementBehavior: $replacementBehavior
            ) {
                appSubscription {%s}
                confirmationUrl
                userErrors {
                    field
                    message
                }
            }
        }
        """ % _SUBSCRIPTION_FIELDS

        variables = {
            "name": name,
            "returnUrl": return_url,
            "lineItems": [
                {
                    "plan": {
                        "appRecurringPricingDetails": {
                            "price": {
                                "amount": price_amount,
                                "currencyCode": currency_code
                            },
                            "interval": interval.value
                        }
                    }
                }
            ],
            "trialDays": trial_days,
            "test": test,
            "replacementBehavior": replacement_behavior
        }

        logger.info("Creating Shopify subscription", extra={
            "shop_domain": self.shop_domain,
            "subscription_name": name,
            "price_amount": price_amount,
            "trial_days": trial_days,
            "test": test
        })

        data = await self._execute_graphql(mutation, variables)
        result = data.get("appSubscriptionCreate") or {}

        user_errors = result.get("userErrors") or []
        if user_errors:
            logger.warning("Subscription creation had user errors", extra={
                "shop_domain": self.shop_domain,
                "user_errors": user_errors
            })

        app_subscription = None
        if result.get("appSubscription"):
            app_subscription = ShopifySubscription.from_api(result["appSubscription"])

        return CreateSubscriptionResult(
            confirmation_url=result.get("confirmationUrl") or "",
            app_subscription=app_subscription,
            user_errors=user_errors
        )

    async def create_one_time_purchase(
        self,
        name: str,
        price_amount: float,
        return_url: str,
        currency_code: str = "USD",
        test: bool = False,
    ) -> CreatePurchaseResult:
        """
        Create a one-time app charge awaiting merchant approval.

        Returns:
            CreatePurchaseResult; provider user errors are returned, not raised
        """
        mutation = """
        mutation appPurchaseOneTimeCreate($name: String!, $price: MoneyInput!, $returnUrl: URL!, $test: Boolean) {
            appPurchaseOneTimeCreate(name: $name, price: $price, returnUrl: $returnUrl, test: $test) {
                appPurchaseOneTime {
                    id
                    status
                }
                confirmationUrl
                userErrors {
                    field
                    message
                }
            }
        }
        """

        variables = {
            "name": name,
            "price": {"amount": price_amount, "currencyCode": currency_code},
            "returnUrl": return_url,
            "test": test,
        }

        logger.info("Creating Shopify one-time purchase", extra={
            "shop_domain": self.shop_domain,
            "purchase_name": name,
            "price_amount": price_amount,
            "test": test
        })

        data = await self._execute_graphql(mutation, variables)
        result = data.get("appPurchaseOneTimeCreate") or {}

        user_errors = result.get("userErrors") or []
        if user_errors:
            logger.warning("One-time purchase creation had user errors", extra={
                "shop_domain": self.shop_domain,
                "user_errors": user_errors
            })

        purchase = result.get("appPurchaseOneTime") or {}
        return CreatePurchaseResult(
            confirmation_url=result.get("confirmationUrl") or "",
            purchase_id=purchase.get("id"),
            status=purchase.get("status"),
            user_errors=user_errors,
        )

    async def get_active_subscriptions(self) -> List[ShopifySubscription]:
        """
        Get the subscriptions Shopify currently considers active.

        Only approved charges appear here; a pending or declined charge does not.
        """
        query = """
        query getActiveSubscriptions {
            currentAppInstallation {
                activeSubscriptions {%s}
            }
        }
        """ % _SUBSCRIPTION_FIELDS

        data = await self._execute_graphql(query)
        installation = data.get("currentAppInstallation") or {}
        return [
            ShopifySubscription.from_api(sub_data)
            for sub_data in installation.get("activeSubscriptions") or []
        ]

    async def cancel_subscription(self, subscription_gid: str) -> CancelSubscriptionResult:
        """
        Cancel an app subscription.

        Args:
            subscription_gid: Shopify GraphQL ID of the subscription
        """
        mutation = """
        mutation appSubscriptionCancel($id: ID!) {
            appSubscriptionCancel(id: $id) {
                appSubscription {
                    id
                    status
                }
                userErrors {
                    field
                    message
                }
            }
        }
        """

        logger.info("Cancelling Shopify subscription", extra={
            "shop_domain": self.shop_domain,
            "subscription_gid": subscription_gid
        })

        data = await self._execute_graphql(mutation, {"id": subscription_gid})
        result = data.get("appSubscriptionCancel") or {}

        user_errors = result.get("userErrors") or []
        if user_errors:
            logger.warning("Subscription cancellation had user errors", extra={
                "shop_domain": self.shop_domain,
                "subscription_gid": subscription_gid,
                "user_errors": user_errors
            })

        app_subscription = result.get("appSubscription") or {}
        return CancelSubscriptionResult(
            status=app_subscription.get("status"),
            user_errors=user_errors,
        )


def get_billing_client(shop_domain: str, access_token: str) -> ShopifyBillingClient:
    """
    Factory function to create a ShopifyBillingClient.

    Args:
        shop_domain: Shopify store domain
        access_token: Shopify Admin API access token

    Returns:
        Configured ShopifyBillingClient instance
    """
    return ShopifyBillingClient(shop_domain, access_token)
