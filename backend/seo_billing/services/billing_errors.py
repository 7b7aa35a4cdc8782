"""
Structured error classes for billing and the token ledger.

Every error carries a machine-readable code and an HTTP status so the API
layer can branch without string matching.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import status


class BillingServiceError(Exception):
    """Base exception for billing service errors."""

    code = "billing_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, shop_domain: Optional[str] = None):
        self.message = message
        self.shop_domain = shop_domain
        super().__init__(message)

    def context(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        payload = {
            "error": self.code,
            "message": self.message,
        }
        payload.update(self.context())
        return payload


class InvalidPlanError(BillingServiceError):
    """Requested plan is not in the catalog."""

    code = "invalid_plan"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, plan: Optional[str], shop_domain: Optional[str] = None):
        self.plan = plan
        super().__init__(f"Invalid plan: {plan!r}", shop_domain)

    def context(self) -> Dict[str, Any]:
        return {"plan": self.plan}


class InvalidAmountError(BillingServiceError):
    """Token purchase amount is outside the allowed range or increment."""

    code = "invalid_amount"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, amount: Any, reason: str, shop_domain: Optional[str] = None):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}", shop_domain)

    def context(self) -> Dict[str, Any]:
        return {"amount": None if self.amount is None else str(self.amount), "reason": self.reason}


class UnknownFeatureError(BillingServiceError):
    """Feature key has no token cost entry."""

    code = "unknown_feature"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Unknown feature: {feature}")

    def context(self) -> Dict[str, Any]:
        return {"feature": self.feature}


class ShopNotFoundError(BillingServiceError):
    """No installed shop (or no access token) on file. Reinstalling the app fixes it."""

    code = "shop_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, shop_domain: str):
        super().__init__(f"Shop not found: {shop_domain}", shop_domain)


class SubscriptionNotFoundError(BillingServiceError):
    """Operation requires an existing subscription row."""

    code = "subscription_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, shop_domain: str):
        super().__init__(f"No subscription found for {shop_domain}", shop_domain)


class NoActiveSubscriptionError(BillingServiceError):
    """Cancel attempted with no gateway subscription to cancel."""

    code = "no_active_subscription"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, shop_domain: str):
        super().__init__(f"No active subscription to cancel for {shop_domain}", shop_domain)


class GatewayUnreachableError(BillingServiceError):
    """The billing provider call failed at the transport or HTTP layer."""

    code = "gateway_unreachable"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str,
        shop_domain: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.status_code = status_code
        super().__init__(message, shop_domain)

    def context(self) -> Dict[str, Any]:
        return {"provider_status": self.status_code}


class GatewayRejectedError(BillingServiceError):
    """The billing provider returned business-level user errors."""

    code = "gateway_rejected"
    http_status = 422  # Unprocessable Content

    def __init__(
        self,
        message: str,
        shop_domain: Optional[str] = None,
        user_errors: Optional[List[Dict[str, Any]]] = None,
    ):
        self.user_errors = user_errors or []
        super().__init__(message, shop_domain)

    def context(self) -> Dict[str, Any]:
        return {"user_errors": self.user_errors}


class InsufficientBalanceError(BillingServiceError):
    """Debit rejected because it would take the balance below zero."""

    code = "insufficient_balance"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        shop_domain: str,
        tokens_required: int,
        tokens_available: int,
        feature: Optional[str] = None,
    ):
        self.tokens_required = tokens_required
        self.tokens_available = tokens_available
        self.feature = feature
        super().__init__(
            f"Insufficient token balance: need {tokens_required}, have {tokens_available}",
            shop_domain,
        )

    @property
    def tokens_needed(self) -> int:
        return max(0, self.tokens_required - self.tokens_available)

    def context(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "tokens_required": self.tokens_required,
            "tokens_available": self.tokens_available,
            "tokens_needed": self.tokens_needed,
        }


class TrialRestrictionError(BillingServiceError):
    """Feature is blocked while the shop's trial is running."""

    code = "trial_restriction"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        shop_domain: str,
        feature: str,
        plan: Optional[str],
        trial_ends_at: Optional[datetime],
    ):
        self.feature = feature
        self.plan = plan
        self.trial_ends_at = trial_ends_at
        super().__init__(
            f"Feature '{feature}' is not available during the trial period",
            shop_domain,
        )

    def context(self) -> Dict[str, Any]:
        return {
            "feature": self.feature,
            "plan": self.plan,
            "trial_ends_at": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
        }


class ReservationNotFoundError(BillingServiceError):
    """Finalize called with an unknown reservation id."""

    code = "reservation_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, shop_domain: str, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"Reservation not found: {reservation_id}", shop_domain)

    def context(self) -> Dict[str, Any]:
        return {"reservation_id": self.reservation_id}
