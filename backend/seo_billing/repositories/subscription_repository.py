"""
Subscription repository for data access operations.

Encapsulates all database operations for subscriptions with:
- Conditional updates (the UPDATE itself is the concurrency boundary)
- A single insert path, used only by the approval callback
- Lookups for the reconciliation job
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from seo_billing.models.subscription import Subscription

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository for subscription data access.

    One row per shop; every method is keyed by shop_domain.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get(self, shop_domain: str, for_update: bool = False) -> Optional[Subscription]:
        """
        Load the shop's subscription, always refreshing from the database.

        Args:
            shop_domain: Shop domain
            for_update: Take a row lock (ignored by SQLite)
        """
        query = self.db.query(Subscription).filter(
            Subscription.shop_domain == shop_domain
        ).execution_options(populate_existing=True)

        if for_update:
            query = query.with_for_update()

        return query.first()

    def update(
        self,
        shop_domain: str,
        values: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Atomically update the shop's row.

        Args:
            shop_domain: Shop domain
            values: Column -> new value
            expected: Column -> value the row must still hold for the update
                to apply (None means IS NULL)

        Returns:
            True if a row was updated, False if the row is gone or the
            expected values no longer match
        """
        stmt = update(Subscription).where(Subscription.shop_domain == shop_domain)

        for column, value in (expected or {}).items():
            attr = getattr(Subscription, column)
            stmt = stmt.where(attr.is_(None) if value is None else attr == value)

        result = self.db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def insert(self, **values: Any) -> Optional[Subscription]:
        """
        Insert the shop's first subscription row.

        Returns:
            The new row, or None if a row for the shop already exists (a
            concurrent callback won the insert). The session is rolled
            back in that case.
        """
        subscription = Subscription(**values)
        self.db.add(subscription)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                "Subscription row already exists, insert skipped",
                extra={"shop_domain": values.get("shop_domain")}
            )
            return None
        return subscription

    def list_needing_reconciliation(self, limit: Optional[int] = None) -> List[Subscription]:
        """Rows carrying a pending plan or an activation marker."""
        query = self.db.query(Subscription).filter(
            or_(
                Subscription.pending_plan.isnot(None),
                Subscription.activated_at.isnot(None),
            )
        ).order_by(Subscription.shop_domain)

        if limit:
            query = query.limit(limit)

        return query.all()

    def delete(self, shop_domain: str) -> int:
        return self.db.query(Subscription).filter(
            Subscription.shop_domain == shop_domain
        ).delete(synchronize_session=False)
