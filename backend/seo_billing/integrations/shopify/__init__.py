"""
Shopify Admin GraphQL billing integration.
"""

from seo_billing.integrations.shopify.billing_client import (
    ShopifyBillingClient,
    ShopifyAPIError,
    ShopifySubscription,
    CreateSubscriptionResult,
    CreatePurchaseResult,
    CancelSubscriptionResult,
    get_billing_client,
)

__all__ = [
    "ShopifyBillingClient",
    "ShopifyAPIError",
    "ShopifySubscription",
    "CreateSubscriptionResult",
    "CreatePurchaseResult",
    "CancelSubscriptionResult",
    "get_billing_client",
]
