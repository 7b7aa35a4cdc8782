"""
Database models for shops, subscriptions and the token ledger.

All per-shop state is keyed by shop_domain.
"""

from seo_billing.models.base import Base, TimestampMixin
from seo_billing.models.shop import Shop, ShopStatus
from seo_billing.models.subscription import Subscription, SubscriptionStatus
from seo_billing.models.token_balance import (
    TokenBalance,
    TokenPurchase,
    TokenUsage,
    PurchaseStatus,
    UsageEntryType,
)
from seo_billing.models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "Shop",
    "ShopStatus",
    "Subscription",
    "SubscriptionStatus",
    "TokenBalance",
    "TokenPurchase",
    "TokenUsage",
    "PurchaseStatus",
    "UsageEntryType",
    "WebhookEvent",
]
