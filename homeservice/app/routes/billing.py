"""API routes for plan changes and billing periods."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..billing import CommittedPlanChange, PlanChangeService
from ..schemas.billing import (
    BillingPeriodResponse,
    CompletePlanChangeRequest,
    PlanChangeRequest,
    PlanChangeResponse,
)
from ..services.billing import get_plan_change_service

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post(
    "/change-subscription",
    response_model=PlanChangeResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
def change_subscription(
    payload: PlanChangeRequest,
    service: PlanChangeService = Depends(get_plan_change_service),
) -> PlanChangeResponse:
    result = service.request_plan_change(
        payload.customer_id,
        payload.new_plan_id,
        subscription_ref=payload.current_subscription_ref,
    )
    if isinstance(result, CommittedPlanChange):
        return PlanChangeResponse.from_committed(result)
    return PlanChangeResponse.from_payment_required(result)


@router.post(
    "/complete-subscription-change",
    response_model=PlanChangeResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
def complete_subscription_change(
    payload: CompletePlanChangeRequest,
    service: PlanChangeService = Depends(get_plan_change_service),
) -> PlanChangeResponse:
    result = service.commit_pending_change(
        payload.checkout_session_id,
        customer_id=payload.customer_id,
        new_plan_id=payload.new_plan_id,
        subscription_ref=payload.subscription_ref,
    )
    return PlanChangeResponse.from_committed(result)


@router.get(
    "/subscriptions/{subscription_ref}/billing-period",
    response_model=BillingPeriodResponse,
    response_model_by_alias=True,
)
def get_billing_period(
    subscription_ref: str,
    service: PlanChangeService = Depends(get_plan_change_service),
) -> BillingPeriodResponse:
    return BillingPeriodResponse.from_period(service.get_billing_period(subscription_ref))
