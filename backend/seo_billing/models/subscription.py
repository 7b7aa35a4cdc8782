"""
Subscription model for tracking a shop's plan subscription.

CRITICAL: One subscription row per shop (unique shop_domain).
Rows are materialized only by a confirmed approval callback; every other
writer updates an existing row.
"""

from datetime import timedelta

from sqlalchemy import Column, String, Boolean, DateTime, Index

from seo_billing.models.base import Base, TimestampMixin, generate_uuid, utcnow, ensure_utc


class SubscriptionStatus:
    """Subscription status values."""
    PENDING = "pending"          # Charge created, awaiting merchant approval
    ACTIVE = "active"            # Merchant approved, subscription active
    CANCELLED = "cancelled"      # Merchant cancelled
    EXPIRED = "expired"          # Provider expired the charge

    ALL = (PENDING, ACTIVE, CANCELLED, EXPIRED)


class Subscription(Base, TimestampMixin):
    """
    Plan subscription for a single shop.

    CRITICAL DESIGN:
    - pending_plan non-null means shopify_subscription_id points at a charge
      still awaiting merchant approval
    - trial_ends_at is preserved verbatim across plan changes
    - activated_at is set only by the explicit activation action
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    shop_domain = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="One subscription per shop"
    )

    plan = Column(
        String(50),
        nullable=False,
        comment="Plan catalog key (starter, professional, ...)"
    )
    pending_plan = Column(
        String(50),
        nullable=True,
        comment="Plan change awaiting merchant approval"
    )

    shopify_subscription_id = Column(
        String(100),
        nullable=True,
        comment="Shopify AppSubscription GID"
    )

    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
        comment="Current subscription status"
    )
    pending_activation = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="A charge for this row is awaiting approval"
    )

    started_at = Column(
        DateTime(timezone=True),
        nullable=True,
        default=utcnow,
        comment="When the subscription row was first confirmed"
    )
    activated_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the merchant explicitly activated the plan"
    )
    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Trial expiration date"
    )
    cancelled_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the subscription was cancelled"
    )
    expired_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the provider expired the subscription"
    )

    __table_args__ = (
        Index("ix_subscriptions_pending_plan", "pending_plan"),
        Index("ix_subscriptions_activated_at", "activated_at"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(shop_domain={self.shop_domain}, plan={self.plan}, status={self.status})>"

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_in_trial(self) -> bool:
        """Check if subscription is in trial period."""
        trial_ends_at = ensure_utc(self.trial_ends_at)
        if not trial_ends_at:
            return False
        return utcnow() < trial_ends_at

    @property
    def trial_time_remaining(self) -> timedelta:
        if not self.is_in_trial:
            return timedelta(0)
        return ensure_utc(self.trial_ends_at) - utcnow()
