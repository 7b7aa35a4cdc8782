"""
Token ledger models.

TokenBalance is the materialized per-shop balance. TokenPurchase and
TokenUsage are APPEND-ONLY ledgers: autoincrement primary keys preserve
insertion order so the balance can be reconstructed by replay.

Ledger rule: every usage row records the NEGATED balance delta it caused
in tokens_used (debits positive, credits negative), so

    balance == sum(completed purchases) - sum(usage.tokens_used)
"""

from sqlalchemy import (
    Column, String, Integer, BigInteger, Numeric, DateTime, JSON,
    ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import relationship

from seo_billing.models.base import Base, TimestampMixin, generate_uuid, utcnow


class PurchaseStatus:
    """Token purchase status values."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class UsageEntryType:
    """Ledger entry kinds recorded in token_usage."""
    DEBIT = "debit"
    RESERVATION = "reservation"
    RESERVATION_ADJUSTMENT = "reservation_adjustment"
    INCLUDED_GRANT = "included_grant"
    INCLUDED_SET = "included_set"
    MONTHLY_REFRESH = "monthly_refresh"


class TokenBalance(Base, TimestampMixin):
    """
    Current token balance for one shop.

    CRITICAL:
    - balance is never negative (enforced by conditional updates and a CHECK)
    - total_purchased only grows
    - total_used is reset to 0 by the monthly refresh
    """

    __tablename__ = "token_balances"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    shop_domain = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="One balance per shop"
    )

    balance = Column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Currently usable tokens"
    )
    total_purchased = Column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Lifetime purchased tokens"
    )
    total_used = Column(
        BigInteger,
        nullable=False,
        default=0,
        comment="Tokens consumed since the last monthly refresh"
    )

    last_purchase_at = Column(DateTime(timezone=True), nullable=True)

    purchases = relationship(
        "TokenPurchase",
        back_populates="token_balance",
        order_by="TokenPurchase.id",
        cascade="all, delete-orphan",
    )
    usage_entries = relationship(
        "TokenUsage",
        back_populates="token_balance",
        order_by="TokenUsage.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_token_balances_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<TokenBalance(shop_domain={self.shop_domain}, balance={self.balance})>"


class TokenPurchase(Base):
    """A one-time token purchase. Status moves pending -> completed at most once."""

    __tablename__ = "token_purchases"

    id = Column(Integer, primary_key=True, autoincrement=True)

    token_balance_id = Column(
        String(36),
        ForeignKey("token_balances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shop_domain = Column(String(255), nullable=False, index=True)

    usd_amount = Column(Numeric(10, 2), nullable=False)
    app_revenue = Column(Numeric(10, 2), nullable=False, default=0)
    token_budget = Column(Numeric(10, 2), nullable=False, default=0)
    tokens_received = Column(BigInteger, nullable=False)

    shopify_charge_id = Column(
        String(100),
        nullable=True,
        index=True,
        comment="Shopify AppPurchaseOneTime GID"
    )
    status = Column(String(20), nullable=False, default=PurchaseStatus.PENDING)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    token_balance = relationship("TokenBalance", back_populates="purchases")

    def __repr__(self) -> str:
        return (
            f"<TokenPurchase(shop_domain={self.shop_domain}, usd={self.usd_amount}, "
            f"tokens={self.tokens_received}, status={self.status})>"
        )


class TokenUsage(Base):
    """
    Append-only usage ledger entry.

    tokens_used is signed: positive for consumption, negative for credits
    (refunds, included grants, refresh top-ups).
    """

    __tablename__ = "token_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)

    token_balance_id = Column(
        String(36),
        ForeignKey("token_balances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shop_domain = Column(String(255), nullable=False, index=True)

    feature = Column(String(100), nullable=False)
    tokens_used = Column(BigInteger, nullable=False)
    entry_type = Column(String(40), nullable=False, default=UsageEntryType.DEBIT)

    reservation_id = Column(String(36), nullable=True, index=True)
    product_id = Column(String(100), nullable=True)
    collection_id = Column(String(100), nullable=True)

    # "metadata" is reserved on declarative classes
    extra_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    token_balance = relationship("TokenBalance", back_populates="usage_entries")

    __table_args__ = (
        Index("ix_token_usage_shop_entry_type", "shop_domain", "entry_type"),
    )

    def __repr__(self) -> str:
        return f"<TokenUsage(feature={self.feature}, tokens_used={self.tokens_used}, type={self.entry_type})>"
