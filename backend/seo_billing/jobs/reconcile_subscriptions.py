"""
Subscription reconciliation job.

Runs the reconciliation guard for every shop carrying a pending plan or an
activation marker, so stale state is repaired even for shops that never
open the billing page again.

Usage:
    python -m seo_billing.jobs.reconcile_subscriptions

Deployed as an hourly cron job.
"""

import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from seo_billing.database.session import get_session_factory
from seo_billing.platform.secrets import SecretRedactingFilter
from seo_billing.repositories.subscription_repository import SubscriptionRepository
from seo_billing.services.billing_cache import BillingCache, get_billing_cache
from seo_billing.services.billing_errors import BillingServiceError
from seo_billing.services.billing_gateway import BillingGateway
from seo_billing.services.billing_reconciliation import ReconciliationGuard

logger = logging.getLogger(__name__)

# Maximum shops to process per run (provider rate limits)
MAX_SHOPS_PER_RUN = int(os.getenv("RECONCILE_MAX_SHOPS", "100"))

# Pause between shops
SHOP_DELAY_SECONDS = 0.5

GatewayProviderFactory = Callable[[Session, str], Callable[[], BillingGateway]]


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self):
        self.shops_checked = 0
        self.shops_repaired = 0
        self.gateway_queries = 0
        self.errors = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "shops_checked": self.shops_checked,
            "shops_repaired": self.shops_repaired,
            "gateway_queries": self.gateway_queries,
            "errors": self.errors,
            "duration_seconds": duration
        }


def _default_gateway_provider(session: Session, shop_domain: str) -> Callable[[], BillingGateway]:
    return lambda: BillingGateway.for_shop(session, shop_domain)


async def reconcile_shop(
    session: Session,
    shop_domain: str,
    stats: ReconciliationStats,
    gateway_provider: Callable[[], BillingGateway],
    cache: BillingCache,
) -> None:
    """Run the guard for one shop; errors are counted, not raised."""
    stats.shops_checked += 1
    guard = ReconciliationGuard(session, shop_domain, gateway_provider, cache)

    try:
        result = await guard.run()
    except BillingServiceError as e:
        session.rollback()
        logger.error("Error reconciling shop", extra={
            "shop_domain": shop_domain,
            "error": e.code,
        })
        stats.errors += 1
        return

    if result.gateway_queried:
        stats.gateway_queries += 1
    if result.changed:
        stats.shops_repaired += 1
        logger.info("Shop subscription state repaired", extra={
            "shop_domain": shop_domain,
            "repairs": result.repairs,
        })


async def run_reconciliation(
    session_factory: Optional[Callable[[], Session]] = None,
    gateway_provider_factory: Optional[GatewayProviderFactory] = None,
    cache: Optional[BillingCache] = None,
    limit: int = MAX_SHOPS_PER_RUN,
    delay_seconds: float = SHOP_DELAY_SECONDS,
) -> dict:
    """
    Run the subscription reconciliation job.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting subscription reconciliation job")

    stats = ReconciliationStats()
    session = (session_factory or get_session_factory())()
    provider_factory = gateway_provider_factory or _default_gateway_provider
    cache = cache or get_billing_cache()

    try:
        shop_domains = [
            s.shop_domain
            for s in SubscriptionRepository(session).list_needing_reconciliation(limit=limit)
        ]
        logger.info("Found shops to reconcile", extra={"shop_count": len(shop_domains)})

        for index, shop_domain in enumerate(shop_domains):
            if index and delay_seconds:
                await asyncio.sleep(delay_seconds)
            await reconcile_shop(
                session,
                shop_domain,
                stats,
                provider_factory(session, shop_domain),
                cache,
            )

        result = stats.to_dict()
        logger.info("Reconciliation job completed", extra=result)
        return result
    finally:
        session.close()


def main():
    """Entry point for running reconciliation job from command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(SecretRedactingFilter())
    try:
        result = asyncio.run(run_reconciliation())
    except Exception:
        logger.exception("Reconciliation job failed")
        sys.exit(1)

    logger.info("Reconciliation completed: %s", result)
    sys.exit(0)


if __name__ == "__main__":
    main()
