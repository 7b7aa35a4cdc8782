"""
Shop repository.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from seo_billing.models.shop import Shop

logger = logging.getLogger(__name__)


class ShopRepository:
    """Lookup and removal of installed shops."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get(self, shop_domain: str) -> Optional[Shop]:
        return self.db.query(Shop).filter(Shop.shop_domain == shop_domain).first()

    def delete(self, shop_domain: str) -> int:
        return self.db.query(Shop).filter(
            Shop.shop_domain == shop_domain
        ).delete(synchronize_session=False)
