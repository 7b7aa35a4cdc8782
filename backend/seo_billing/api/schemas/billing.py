"""
Pydantic schemas for the Billing API.

Request bodies accept both the snake_case field names and the camelCase
names sent by the embedded admin frontend (endTrial, returnTo, ...).
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class _ReturnToCommand(_Command):
    return_to: Optional[str] = Field(None, alias="returnTo", max_length=512)

    @field_validator("return_to")
    @classmethod
    def return_to_is_app_path(cls, v: Optional[str]) -> Optional[str]:
        """Only relative in-app paths are accepted."""
        if v is None:
            return v
        if not v.startswith("/") or v.startswith("//"):
            raise ValueError("returnTo must be an in-app path starting with '/'")
        return v


class SubscribeRequest(_ReturnToCommand):
    """Request a subscription or a plan change."""

    plan: str = Field(..., min_length=1, max_length=64, description="Plan key (e.g. 'growth')")
    end_trial: bool = Field(False, alias="endTrial", description="Subscribe without the remaining trial")


class ActivateRequest(_ReturnToCommand):
    """Explicit activation of the current plan."""

    end_trial: bool = Field(False, alias="endTrial")


class TokenPurchaseRequest(_ReturnToCommand):
    """Start a token purchase."""

    amount: Decimal = Field(..., description="USD amount ($5-$1000 in $5 steps)")


class FeatureOptions(_Command):
    languages: int = Field(1, ge=1, le=50)
    product_count: int = Field(0, ge=0, alias="productCount")


class FeatureAccessRequest(_Command):
    """Check whether a feature may run now."""

    feature: str = Field(..., min_length=1, max_length=64)
    options: FeatureOptions = Field(default_factory=FeatureOptions)


class SubscribeResponse(BaseModel):
    confirmation_url: str
    plan: str
    trial_days: int
    plan_change: bool


class ActivateResponse(BaseModel):
    success: bool = True
    plan: str
    activated_at: Optional[str] = None
    trial_ended: bool
    requires_approval: bool = False
    confirmation_url: Optional[str] = None
    tokens_added: int = 0
    gateway_error: Optional[Dict[str, Any]] = None


class CancelResponse(BaseModel):
    success: bool = True
    message: str
    plan: str
    cancelled_at: Optional[str] = None


class TokenPurchaseResponse(BaseModel):
    confirmation_url: str
    tokens: int
    usd_amount: float


class PlanResponse(BaseModel):
    key: str
    name: str
    price: float
    currency: str
    product_limit: int
    collection_limit: int
    query_limit: int
    language_limit: int
    included_tokens: int


class PlansListResponse(BaseModel):
    plans: List[PlanResponse]
    trial_days: int
