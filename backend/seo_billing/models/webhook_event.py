"""
WebhookEvent model for tracking processed Shopify webhooks.

Used for idempotency - ensures webhooks are processed exactly once.
"""

import uuid

from sqlalchemy import Column, String, DateTime, Index

from seo_billing.models.base import Base, utcnow


class WebhookEvent(Base):
    """
    Tracks processed Shopify webhook events for deduplication.

    Shopify may deliver webhooks multiple times. This table ensures
    each unique event is processed exactly once.
    """

    __tablename__ = "webhook_events"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    shopify_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Shopify webhook event ID (X-Shopify-Webhook-Id header)"
    )

    topic = Column(
        String(255),
        nullable=False,
        comment="Webhook topic (e.g., app_subscriptions/update)"
    )

    shop_domain = Column(
        String(255),
        nullable=False,
        comment="Shop domain from webhook"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        comment="When the webhook was processed"
    )

    __table_args__ = (
        Index("idx_webhook_events_shop_topic", "shop_domain", "topic"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(event_id={self.shopify_event_id}, topic={self.topic})>"
