"""
Feature Access Service - trial restrictions and token checks for AI features.

Gatekeeper in front of the AI pipeline:
- Token-requiring features are blocked while the shop's trial is running
- Features that need no tokens are always allowed
- Otherwise the feature cost must be covered by the balance

reserve_for_feature() performs the check and holds cost + safety margin;
the pipeline settles the hold with finalize() once the actual usage is known.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from seo_billing.config.token_pricing import (
    calculate_feature_cost,
    estimate_with_margin,
    is_blocked_in_trial,
    is_known_feature,
    requires_tokens,
)
from seo_billing.models.base import ensure_utc
from seo_billing.repositories.subscription_repository import SubscriptionRepository
from seo_billing.services.billing_cache import BillingCache, get_billing_cache
from seo_billing.services.billing_errors import (
    InsufficientBalanceError,
    TrialRestrictionError,
    UnknownFeatureError,
)
from seo_billing.services.token_ledger import FinalizeResult, ReservationResult, TokenLedger

logger = logging.getLogger(__name__)


@dataclass
class FeatureAccessResult:
    """Result of a feature access check."""
    allowed: bool
    feature: str
    tokens_required: int = 0
    tokens_available: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "feature": self.feature,
            "tokens_required": self.tokens_required,
            "tokens_available": self.tokens_available,
        }


class FeatureAccessService:
    """Checks and reserves token-backed AI features for one shop."""

    def __init__(
        self,
        db_session: Session,
        shop_domain: str,
        cache: Optional[BillingCache] = None,
    ):
        if not shop_domain:
            raise ValueError("shop_domain is required")

        self.db = db_session
        self.shop_domain = shop_domain
        self.subscriptions = SubscriptionRepository(db_session)
        self.ledger = TokenLedger(db_session, shop_domain)
        self.cache = cache or get_billing_cache()

    def _check_trial(self, feature: str) -> None:
        if not is_blocked_in_trial(feature):
            return

        subscription = self.subscriptions.get(self.shop_domain)
        if subscription is not None and subscription.is_in_trial:
            logger.info("Feature blocked during trial", extra={
                "shop_domain": self.shop_domain,
                "feature": feature,
                "plan": subscription.plan,
            })
            raise TrialRestrictionError(
                self.shop_domain,
                feature,
                subscription.plan,
                ensure_utc(subscription.trial_ends_at),
            )

    def check(self, feature: str, languages: int = 1, product_count: int = 0) -> FeatureAccessResult:
        """
        Check whether the shop may run a feature now.

        Raises:
            UnknownFeatureError: feature has no cost entry
            TrialRestrictionError: feature is blocked during the running trial
            InsufficientBalanceError: balance does not cover the cost
        """
        if not is_known_feature(feature):
            raise UnknownFeatureError(feature)

        self._check_trial(feature)

        if not requires_tokens(feature):
            return FeatureAccessResult(allowed=True, feature=feature)

        cost = calculate_feature_cost(feature, languages=languages, product_count=product_count)
        available = self.ledger.get_or_create().balance
        if available < cost:
            raise InsufficientBalanceError(self.shop_domain, cost, available, feature)

        return FeatureAccessResult(
            allowed=True,
            feature=feature,
            tokens_required=cost,
            tokens_available=available,
        )

    def reserve_for_feature(
        self,
        feature: str,
        languages: int = 1,
        product_count: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ReservationResult]:
        """
        Check access and hold the estimated cost plus the safety margin.

        Returns None for features that need no tokens.
        """
        access = self.check(feature, languages=languages, product_count=product_count)
        if access.tokens_required == 0:
            return None

        reservation = self.ledger.reserve(
            estimate_with_margin(access.tokens_required),
            feature,
            metadata={**(metadata or {}), "languages": languages, "product_count": product_count},
        )
        self.cache.invalidate_shop(self.shop_domain, reason="tokens_reserved")
        return reservation

    def finalize(self, reservation_id: str, actual_tokens: int) -> FinalizeResult:
        result = self.ledger.finalize_reservation(reservation_id, actual_tokens)
        if not result.already_finalized:
            self.cache.invalidate_shop(self.shop_domain, reason="reservation_finalized")
        return result
