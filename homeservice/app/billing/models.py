"""Domain models for subscriptions, plan changes, commissions and webhooks."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..plans import PlanId


class SubscriptionStatus(str, Enum):
    """Local billing state of a customer's subscription."""

    ACTIVE = "active"
    PENDING_PAYMENT_CHANGE = "pending_payment_change"
    NONE = "none"


class PendingPlanChangeStatus(str, Enum):
    """Lifecycle of an upgrade waiting on an upfront payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class CommissionStatus(str, Enum):
    """Partner commission lifecycle. ``paid`` and ``failed`` are terminal."""

    HELD = "held"
    PAID = "paid"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CommissionStatus.PAID, CommissionStatus.FAILED)


class ConnectedAccountStatus(str, Enum):
    """Payout eligibility of a partner's connected account."""

    INCOMPLETE = "incomplete"
    PENDING = "pending"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class PayloadStyle(str, Enum):
    """Whether a webhook carried the full object or only a reference to it."""

    SNAPSHOT = "snapshot"
    THIN = "thin"


class SigningSecret(str, Enum):
    PRIMARY = "A"
    SECONDARY = "B"


class WebhookEventKind(str, Enum):
    """Closed set of webhook events the reconciler understands."""

    ACCOUNT_UPDATED = "account.updated"
    ACCOUNT_DEAUTHORIZED = "account.application.deauthorized"
    TRANSFER_CREATED = "transfer.created"
    TRANSFER_PAID = "transfer.paid"
    TRANSFER_FAILED = "transfer.failed"
    TRANSFER_UPDATED = "transfer.updated"
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    UNKNOWN = "unknown"

    @classmethod
    def from_type(cls, event_type: Optional[str]) -> "WebhookEventKind":
        # Thin events are namespaced by API version, e.g. "v1.account.updated"
        # or "v2.core.account.updated".
        normalized = (event_type or "").strip()
        if normalized.startswith("v1.") or normalized.startswith("v2."):
            normalized = normalized[3:]
        if normalized.startswith("core."):
            normalized = normalized[len("core."):]
        for kind in cls:
            if kind.value == normalized:
                return kind
        return cls.UNKNOWN

    @property
    def is_transfer(self) -> bool:
        return self in _TRANSFER_KINDS


_TRANSFER_KINDS = frozenset(
    {
        WebhookEventKind.TRANSFER_CREATED,
        WebhookEventKind.TRANSFER_PAID,
        WebhookEventKind.TRANSFER_FAILED,
        WebhookEventKind.TRANSFER_UPDATED,
    }
)


class WebhookOutcome(str, Enum):
    """What the reconciler did with a verified event."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    UNCORRELATED = "uncorrelated"
    IGNORED = "ignored"
    FAILED = "failed"


def next_commission_status(current: CommissionStatus, kind: WebhookEventKind) -> CommissionStatus:
    """Apply a transfer event to a commission status without ever leaving a terminal state."""

    if current.is_terminal:
        return current
    if kind == WebhookEventKind.TRANSFER_PAID:
        return CommissionStatus.PAID
    if kind == WebhookEventKind.TRANSFER_FAILED:
        return CommissionStatus.FAILED
    return CommissionStatus.HELD


def derive_account_status(
    *,
    charges_enabled: bool,
    payouts_enabled: bool,
    details_submitted: bool,
) -> ConnectedAccountStatus:
    if charges_enabled and payouts_enabled:
        return ConnectedAccountStatus.ACTIVE
    if details_submitted:
        return ConnectedAccountStatus.PENDING
    return ConnectedAccountStatus.INCOMPLETE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(BaseModel):
    """A customer's billing relationship as stored locally."""

    customer_id: str
    current_plan_id: Optional[PlanId] = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    external_subscription_ref: Optional[str] = None
    external_customer_ref: Optional[str] = None
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    plan_version: Optional[int] = None
    pending_plan_change_id: Optional[str] = None
    gateway_status: Optional[str] = None
    gateway_status_at: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def has_recurring_subscription(self) -> bool:
        return bool(self.external_subscription_ref)


class ProrationQuote(BaseModel):
    """Time-weighted price difference between two plans. Amounts are in cents."""

    current_monthly_price: int
    new_monthly_price: int
    days_remaining: int = Field(ge=0)
    total_days_in_period: int = Field(ge=0)
    is_upgrade: bool
    prorated_amount_owed: int = Field(default=0, ge=0)
    prorated_credit: int = Field(default=0, ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def requires_payment(self) -> bool:
        return self.is_upgrade and self.prorated_amount_owed > 0


class PendingPlanChange(BaseModel):
    """An upgrade that is quoted and awaiting checkout payment before it commits."""

    checkout_session_ref: str
    customer_id: str
    subscription_id: str
    current_plan_id: PlanId
    target_plan_id: PlanId
    amount_due_cents: int = Field(ge=0)
    reserved_plan_version: int
    status: PendingPlanChangeStatus = PendingPlanChangeStatus.PENDING
    checkout_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_open(self, now: datetime) -> bool:
        if self.status != PendingPlanChangeStatus.PENDING:
            return False
        return self.expires_at is None or self.expires_at > now


class CommissionRecord(BaseModel):
    """A partner's share of a booking, tracked through its payout lifecycle."""

    booking_id: str
    partner_id: Optional[str] = None
    amount_cents: int = 0
    commission_status: CommissionStatus = CommissionStatus.HELD
    external_transfer_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    stored_status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ConnectedAccount(BaseModel):
    partner_id: str
    external_account_ref: Optional[str] = None
    status: Optional[ConnectedAccountStatus] = None
    stored_status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InboundWebhookEvent(BaseModel):
    """A verified webhook notification, normalized across payload styles."""

    event_id: Optional[str] = None
    type: str
    kind: WebhookEventKind
    payload_style: PayloadStyle
    verified_with_secret: SigningSecret
    raw_object_id: Optional[str] = None
    data_object: Optional[Dict[str, Any]] = None
    account: Optional[str] = None
    created: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def metadata(self) -> Dict[str, Any]:
        if not self.data_object:
            return {}
        return dict(self.data_object.get("metadata") or {})


class CommittedPlanChange(BaseModel):
    subscription_ref: Optional[str]
    plan_id: PlanId
    converted: bool = False
    quote: Optional[ProrationQuote] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentRequiredPlanChange(BaseModel):
    checkout_ref: str
    checkout_url: Optional[str]
    amount_due_cents: int
    quote: ProrationQuote

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingPeriod(BaseModel):
    subscription_ref: str
    start: Optional[datetime]
    end: Optional[datetime]

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookReceipt(BaseModel):
    """Result of reconciling one verified event."""

    event_type: str
    kind: WebhookEventKind
    payload_style: PayloadStyle
    verified_with_secret: SigningSecret
    outcome: WebhookOutcome
    affected_ids: Tuple[str, ...] = ()

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "BillingPeriod",
    "CommissionRecord",
    "CommissionStatus",
    "CommittedPlanChange",
    "ConnectedAccount",
    "ConnectedAccountStatus",
    "InboundWebhookEvent",
    "PayloadStyle",
    "PaymentRequiredPlanChange",
    "PendingPlanChange",
    "PendingPlanChangeStatus",
    "ProrationQuote",
    "SigningSecret",
    "Subscription",
    "SubscriptionStatus",
    "WebhookEventKind",
    "WebhookOutcome",
    "WebhookReceipt",
    "derive_account_status",
    "next_commission_status",
]
