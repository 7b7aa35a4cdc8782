"""
Billing API routes for subscriptions and AI tokens.

/api/billing/*   - embedded admin calls (shop from the session header)
/billing/*       - merchant return URLs after Shopify charge approval

Approval callbacks always redirect back into the app; failures are logged
and reported with success=false in the redirect query.
"""

import logging
import os
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from seo_billing.api.dependencies import (
    get_billing_service,
    get_feature_access_service,
    get_shop_domain,
    to_http_exception,
)
from seo_billing.api.schemas.billing import (
    ActivateRequest,
    ActivateResponse,
    CancelResponse,
    FeatureAccessRequest,
    PlanResponse,
    PlansListResponse,
    SubscribeRequest,
    SubscribeResponse,
    TokenPurchaseRequest,
    TokenPurchaseResponse,
)
from seo_billing.config.billing_plans import get_plan_catalog
from seo_billing.database.session import get_db_session
from seo_billing.services.billing_errors import BillingServiceError
from seo_billing.services.billing_service import DEFAULT_RETURN_TO, BillingService
from seo_billing.services.feature_access import FeatureAccessService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])
callback_router = APIRouter(prefix="/billing", tags=["billing-callbacks"])

CANCEL_MESSAGE = "Subscription cancelled. Access remains until end of billing period."


def _app_redirect(return_to: Optional[str], **params) -> RedirectResponse:
    handle = os.getenv("SHOPIFY_APP_HANDLE", "seo-ai")
    path = return_to if return_to and return_to.startswith("/") and not return_to.startswith("//") else DEFAULT_RETURN_TO
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(f"/apps/{handle}{path}?{query}", status_code=status.HTTP_302_FOUND)


# ----------------------------------------------------------------------
# Embedded admin API
# ----------------------------------------------------------------------

@router.get("/info")
async def get_billing_info(billing_service: BillingService = Depends(get_billing_service)):
    """Subscription, token summary and plan catalog for the billing page."""
    try:
        return await billing_service.get_billing_info()
    except BillingServiceError as e:
        raise to_http_exception(e)


@router.get("/plans", response_model=PlansListResponse)
async def list_plans():
    catalog = get_plan_catalog()
    return PlansListResponse(
        plans=[PlanResponse(**plan.to_dict()) for plan in catalog.list_plans()],
        trial_days=catalog.trial_days,
    )


@router.post("/subscribe", response_model=SubscribeResponse)
async def subscribe(
    body: SubscribeRequest,
    billing_service: BillingService = Depends(get_billing_service),
):
    """
    Create a subscription or plan-change charge.

    The merchant must be redirected to confirmation_url to approve it.
    """
    logger.info("Subscribe requested", extra={
        "shop_domain": billing_service.shop_domain,
        "plan": body.plan,
        "end_trial": body.end_trial,
    })
    try:
        result = await billing_service.request_subscribe(
            body.plan,
            end_trial=body.end_trial,
            return_to=body.return_to,
        )
    except BillingServiceError as e:
        logger.warning("Subscribe failed", extra={
            "shop_domain": billing_service.shop_domain,
            "error": e.code,
        })
        raise to_http_exception(e)

    return SubscribeResponse(
        confirmation_url=result.confirmation_url,
        plan=result.plan,
        trial_days=result.trial_days,
        plan_change=result.plan_change,
    )


@router.post("/activate", response_model=ActivateResponse)
async def activate(
    body: ActivateRequest,
    billing_service: BillingService = Depends(get_billing_service),
):
    """Explicit activation; with endTrial the trial ends and a new charge is created."""
    try:
        result = await billing_service.activate(end_trial=body.end_trial, return_to=body.return_to)
    except BillingServiceError as e:
        raise to_http_exception(e)

    return ActivateResponse(
        plan=result.plan,
        activated_at=result.activated_at.isoformat() if result.activated_at else None,
        trial_ended=result.trial_ended,
        requires_approval=result.requires_approval,
        confirmation_url=result.confirmation_url,
        tokens_added=result.tokens_added,
        gateway_error=result.gateway_error.to_dict() if result.gateway_error else None,
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel(billing_service: BillingService = Depends(get_billing_service)):
    try:
        subscription = await billing_service.cancel()
    except BillingServiceError as e:
        logger.warning("Cancel failed", extra={
            "shop_domain": billing_service.shop_domain,
            "error": e.code,
        })
        raise to_http_exception(e)

    return CancelResponse(
        message=CANCEL_MESSAGE,
        plan=subscription.plan,
        cancelled_at=subscription.cancelled_at.isoformat() if subscription.cancelled_at else None,
    )


@router.post("/tokens/purchase", response_model=TokenPurchaseResponse)
async def purchase_tokens(
    body: TokenPurchaseRequest,
    billing_service: BillingService = Depends(get_billing_service),
):
    try:
        result = await billing_service.purchase_tokens(body.amount, return_to=body.return_to)
    except BillingServiceError as e:
        raise to_http_exception(e)

    return TokenPurchaseResponse(
        confirmation_url=result.confirmation_url,
        tokens=result.tokens,
        usd_amount=float(result.usd_amount),
    )


@router.get("/tokens/balance")
async def get_token_balance(billing_service: BillingService = Depends(get_billing_service)):
    return billing_service.get_token_balance()


@router.get("/history")
async def get_history(billing_service: BillingService = Depends(get_billing_service)):
    return billing_service.get_history()


@router.post("/check-feature-access")
async def check_feature_access(
    body: FeatureAccessRequest,
    feature_access: FeatureAccessService = Depends(get_feature_access_service),
):
    """
    Check a feature before running it.

    402 with trial_restriction or insufficient_balance when blocked.
    """
    try:
        result = feature_access.check(
            body.feature,
            languages=body.options.languages,
            product_count=body.options.product_count,
        )
    except BillingServiceError as e:
        raise to_http_exception(e)
    return result.to_dict()


# ----------------------------------------------------------------------
# Shopify approval return URLs
# ----------------------------------------------------------------------

@callback_router.get("/callback")
async def subscription_callback(
    plan: Optional[str] = Query(None),
    charge_id: Optional[str] = Query(None),
    return_to: Optional[str] = Query(None, alias="returnTo"),
    shop_domain: str = Depends(get_shop_domain),
    db_session: Session = Depends(get_db_session),
):
    """Merchant returns here after approving a subscription charge."""
    service = BillingService(db_session, shop_domain)
    try:
        result = await service.handle_approval_callback(plan=plan, charge_id=charge_id)
    except BillingServiceError as e:
        logger.error("Subscription callback failed", extra={
            "shop_domain": shop_domain,
            "plan": plan,
            "error": e.code,
        })
        return _app_redirect(return_to, shop=shop_domain, success="false", error=e.code)

    return _app_redirect(return_to, shop=shop_domain, success="true", plan=result.subscription.plan)


@callback_router.get("/tokens/callback")
async def token_purchase_callback(
    amount: str = Query(...),
    charge_id: Optional[str] = Query(None),
    return_to: Optional[str] = Query(None, alias="returnTo"),
    shop_domain: str = Depends(get_shop_domain),
    db_session: Session = Depends(get_db_session),
):
    """Merchant returns here after approving a token purchase."""
    service = BillingService(db_session, shop_domain)
    try:
        confirmation = await service.handle_token_purchase_callback(amount, charge_id=charge_id)
    except BillingServiceError as e:
        logger.error("Token purchase callback failed", extra={
            "shop_domain": shop_domain,
            "amount": amount,
            "error": e.code,
        })
        return _app_redirect(return_to, shop=shop_domain, success="false", error=e.code)

    return _app_redirect(
        return_to,
        shop=shop_domain,
        tokens_purchased="true",
        amount=confirmation.tokens,
    )
