"""
Token balance repository.

Balance arithmetic is expressed as SQL column expressions
(balance = balance - :n WHERE balance >= :n) so concurrent writers for
the same shop can never drive the balance negative or lose an update.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from seo_billing.models.token_balance import (
    TokenBalance,
    TokenPurchase,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class TokenBalanceRepository:
    """Data access for token balances and their append-only ledgers."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, shop_domain: str) -> Optional[TokenBalance]:
        return self.db.query(TokenBalance).filter(
            TokenBalance.shop_domain == shop_domain
        ).execution_options(populate_existing=True).first()

    def get_or_create(self, shop_domain: str) -> TokenBalance:
        """
        Return the shop's balance row, creating a zeroed one if needed.

        Commits when a row is created so it is visible to concurrent callers.
        """
        token_balance = self.get(shop_domain)
        if token_balance:
            return token_balance

        token_balance = TokenBalance(
            shop_domain=shop_domain,
            balance=0,
            total_purchased=0,
            total_used=0,
        )
        self.db.add(token_balance)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race to a concurrent creator
            self.db.rollback()
            return self.get(shop_domain)

        logger.info("Token balance created", extra={"shop_domain": shop_domain})
        return token_balance

    def debit_if_available(self, shop_domain: str, amount: int, count_as_used: bool = True) -> bool:
        """
        Conditionally subtract amount from the balance.

        Returns:
            False (and changes nothing) if the balance is below amount
        """
        values = {"balance": TokenBalance.balance - amount}
        if count_as_used:
            values["total_used"] = TokenBalance.total_used + amount

        result = self.db.execute(
            update(TokenBalance)
            .where(TokenBalance.shop_domain == shop_domain)
            .where(TokenBalance.balance >= amount)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def apply(self, shop_domain: str, **deltas: int) -> bool:
        """
        Add signed deltas to counter columns (balance, total_purchased, total_used).

        Negative balance deltas only apply while the balance stays >= 0.
        """
        values = {
            column: getattr(TokenBalance, column) + delta
            for column, delta in deltas.items()
        }
        stmt = update(TokenBalance).where(TokenBalance.shop_domain == shop_domain)
        if deltas.get("balance", 0) < 0:
            stmt = stmt.where(TokenBalance.balance >= -deltas["balance"])

        result = self.db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def set_values(self, shop_domain: str, **values: Any) -> bool:
        result = self.db.execute(
            update(TokenBalance)
            .where(TokenBalance.shop_domain == shop_domain)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def lock(self, shop_domain: str) -> Optional[TokenBalance]:
        """Re-read the row under a row lock (ignored by SQLite)."""
        return self.db.query(TokenBalance).filter(
            TokenBalance.shop_domain == shop_domain
        ).with_for_update().execution_options(populate_existing=True).first()

    def add_usage(self, token_balance: TokenBalance, **values: Any) -> TokenUsage:
        usage = TokenUsage(
            token_balance_id=token_balance.id,
            shop_domain=token_balance.shop_domain,
            **values,
        )
        self.db.add(usage)
        return usage

    def add_purchase(self, token_balance: TokenBalance, **values: Any) -> TokenPurchase:
        purchase = TokenPurchase(
            token_balance_id=token_balance.id,
            shop_domain=token_balance.shop_domain,
            **values,
        )
        self.db.add(purchase)
        return purchase

    def find_purchase(self, shop_domain: str, charge_id: str) -> Optional[TokenPurchase]:
        return self.db.query(TokenPurchase).filter(
            TokenPurchase.shop_domain == shop_domain,
            TokenPurchase.shopify_charge_id == charge_id,
        ).order_by(TokenPurchase.id).first()

    def update_purchase_status(
        self,
        purchase_id: int,
        from_status: str,
        values: Dict[str, Any],
    ) -> bool:
        result = self.db.execute(
            update(TokenPurchase)
            .where(TokenPurchase.id == purchase_id)
            .where(TokenPurchase.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def find_usage(
        self,
        shop_domain: str,
        entry_type: str,
        reservation_id: Optional[str] = None,
    ) -> List[TokenUsage]:
        query = self.db.query(TokenUsage).filter(
            TokenUsage.shop_domain == shop_domain,
            TokenUsage.entry_type == entry_type,
        )
        if reservation_id is not None:
            query = query.filter(TokenUsage.reservation_id == reservation_id)
        return query.order_by(TokenUsage.id).all()

    def last_usage_of_type(self, shop_domain: str, entry_type: str) -> Optional[TokenUsage]:
        return self.db.query(TokenUsage).filter(
            TokenUsage.shop_domain == shop_domain,
            TokenUsage.entry_type == entry_type,
        ).order_by(TokenUsage.id.desc()).first()

    def list_usage(self, shop_domain: str, limit: Optional[int] = None) -> List[TokenUsage]:
        """Most recent usage entries first."""
        query = self.db.query(TokenUsage).filter(
            TokenUsage.shop_domain == shop_domain
        ).order_by(TokenUsage.id.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def list_purchases(self, shop_domain: str) -> List[TokenPurchase]:
        """Purchases newest first."""
        return self.db.query(TokenPurchase).filter(
            TokenPurchase.shop_domain == shop_domain
        ).order_by(TokenPurchase.id.desc()).all()

    def delete(self, shop_domain: str) -> int:
        self.db.query(TokenUsage).filter(
            TokenUsage.shop_domain == shop_domain
        ).delete(synchronize_session=False)
        self.db.query(TokenPurchase).filter(
            TokenPurchase.shop_domain == shop_domain
        ).delete(synchronize_session=False)
        return self.db.query(TokenBalance).filter(
            TokenBalance.shop_domain == shop_domain
        ).delete(synchronize_session=False)
