"""API schemas for plan change, billing period and partner endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    BillingPeriod,
    CommittedPlanChange,
    ConnectStatus,
    PaymentRequiredPlanChange,
    ProrationQuote,
)


class PlanChangeRequest(BaseModel):
    customer_id: str = Field(alias="customerId", min_length=1)
    new_plan_id: str = Field(alias="newPlanId", min_length=1)
    current_subscription_ref: Optional[str] = Field(alias="currentSubscriptionRef", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CompletePlanChangeRequest(BaseModel):
    checkout_session_id: str = Field(alias="checkoutSessionId", min_length=1)
    customer_id: Optional[str] = Field(alias="customerId", default=None)
    new_plan_id: Optional[str] = Field(alias="newPlanId", default=None)
    subscription_ref: Optional[str] = Field(alias="subscriptionRef", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ProrationSummary(BaseModel):
    days_remaining: int = Field(alias="daysRemaining")
    total_days: int = Field(alias="totalDays")
    prorated_amount_owed: int = Field(alias="proratedAmountOwed")
    prorated_credit: int = Field(alias="proratedCredit")
    is_upgrade: bool = Field(alias="isUpgrade")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_quote(cls, quote: ProrationQuote) -> "ProrationSummary":
        return cls(
            days_remaining=quote.days_remaining,
            total_days=quote.total_days_in_period,
            prorated_amount_owed=quote.prorated_amount_owed,
            prorated_credit=quote.prorated_credit,
            is_upgrade=quote.is_upgrade,
        )


class PlanChangeResponse(BaseModel):
    committed: bool = False
    payment_required: bool = Field(alias="paymentRequired", default=False)
    subscription_ref: Optional[str] = Field(alias="subscriptionRef", default=None)
    plan_id: Optional[str] = Field(alias="planId", default=None)
    converted_from_one_time: Optional[bool] = Field(alias="convertedFromOneTime", default=None)
    checkout_ref: Optional[str] = Field(alias="checkoutRef", default=None)
    checkout_url: Optional[str] = Field(alias="checkoutUrl", default=None)
    amount_due_cents: Optional[int] = Field(alias="amountDueCents", default=None)
    proration: Optional[ProrationSummary] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_committed(cls, result: CommittedPlanChange) -> "PlanChangeResponse":
        return cls(
            committed=True,
            subscription_ref=result.subscription_ref,
            plan_id=result.plan_id.value,
            converted_from_one_time=result.converted or None,
            proration=ProrationSummary.from_quote(result.quote) if result.quote else None,
        )

    @classmethod
    def from_payment_required(cls, result: PaymentRequiredPlanChange) -> "PlanChangeResponse":
        return cls(
            payment_required=True,
            checkout_ref=result.checkout_ref,
            checkout_url=result.checkout_url,
            amount_due_cents=result.amount_due_cents,
            proration=ProrationSummary.from_quote(result.quote),
        )


class BillingPeriodResponse(BaseModel):
    subscription_ref: str = Field(alias="subscriptionRef")
    billing_period_start: Optional[datetime] = Field(alias="billingPeriodStart", default=None)
    billing_period_end: Optional[datetime] = Field(alias="billingPeriodEnd", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_period(cls, period: BillingPeriod) -> "BillingPeriodResponse":
        return cls(
            subscription_ref=period.subscription_ref,
            billing_period_start=period.start,
            billing_period_end=period.end,
        )


class WebhookAck(BaseModel):
    received: bool = True


class ConnectStatusRequest(BaseModel):
    partner_id: str = Field(alias="partnerId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class ConnectStatusResponse(BaseModel):
    connected: bool
    status: str
    charges_enabled: Optional[bool] = Field(alias="chargesEnabled", default=None)
    payouts_enabled: Optional[bool] = Field(alias="payoutsEnabled", default=None)
    details_submitted: Optional[bool] = Field(alias="detailsSubmitted", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_status(cls, result: ConnectStatus) -> "ConnectStatusResponse":
        if not result.connected and result.status == "not_connected":
            return cls(connected=False, status=result.status)
        return cls(
            connected=result.connected,
            status=result.status,
            charges_enabled=result.charges_enabled,
            payouts_enabled=result.payouts_enabled,
            details_submitted=result.details_submitted,
        )
