"""
Shop model for installed Shopify stores.

CRITICAL DESIGN DECISIONS:
- shop_domain is the canonical Shopify identifier (mystore.myshopify.com)
- access_token is encrypted at rest and only read when calling the Admin API
- Rows are created on install and deleted on uninstall
"""

from sqlalchemy import Column, String, Text

from seo_billing.models.base import Base, TimestampMixin, generate_uuid


class ShopStatus:
    """Shop installation status values."""
    ACTIVE = "active"
    UNINSTALLED = "uninstalled"


class Shop(Base, TimestampMixin):
    """
    An installed Shopify store.

    SECURITY:
    - access_token_encrypted must be decrypted only when making API calls
    - shop_domain is unique (one app install per store)
    """

    __tablename__ = "shops"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="UUID primary key"
    )

    shop_domain = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Shopify store domain (mystore.myshopify.com)"
    )

    access_token_encrypted = Column(
        Text,
        nullable=True,
        comment="Encrypted Shopify Admin API access token"
    )

    scopes = Column(
        Text,
        nullable=True,
        comment="Comma-separated granted OAuth scopes"
    )

    status = Column(
        String(20),
        nullable=False,
        default=ShopStatus.ACTIVE,
        comment="Installation status"
    )

    def __repr__(self) -> str:
        return f"<Shop(id={self.id}, shop_domain={self.shop_domain}, status={self.status})>"
