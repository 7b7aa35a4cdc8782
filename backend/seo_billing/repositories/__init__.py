"""
Per-shop data access.

Repositories issue atomic conditional updates keyed by shop_domain and
leave transaction boundaries (commit/rollback) to the calling service.
"""

from seo_billing.repositories.shop_repository import ShopRepository
from seo_billing.repositories.subscription_repository import SubscriptionRepository
from seo_billing.repositories.token_balance_repository import TokenBalanceRepository

__all__ = ["ShopRepository", "SubscriptionRepository", "TokenBalanceRepository"]
