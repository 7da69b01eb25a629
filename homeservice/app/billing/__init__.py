"""Billing domain package: plan changes, proration and webhook reconciliation."""

from .accounts import ConnectAccountService, ConnectStatus, update_partner_status
from .errors import (
    BillingError,
    InvalidInput,
    InvalidPlan,
    InvalidSignature,
    NotFound,
    PlanChangeConflict,
    UpstreamUnavailable,
    WebhookNotConfigured,
)
from .gateway import (
    GatewayAccount,
    GatewayCheckoutSession,
    GatewayPrice,
    GatewaySubscription,
    GatewayTransfer,
    PaymentGateway,
    StripePaymentGateway,
)
from .models import (
    BillingPeriod,
    CommissionRecord,
    CommissionStatus,
    CommittedPlanChange,
    ConnectedAccount,
    ConnectedAccountStatus,
    InboundWebhookEvent,
    PayloadStyle,
    PaymentRequiredPlanChange,
    PendingPlanChange,
    PendingPlanChangeStatus,
    ProrationQuote,
    SigningSecret,
    Subscription,
    SubscriptionStatus,
    WebhookEventKind,
    WebhookOutcome,
    WebhookReceipt,
    derive_account_status,
    next_commission_status,
)
from .proration import calculate_proration, conversion_quote
from .repository import BillingRepository
from .service import PLAN_CHANGE_CHECKOUT_TYPE, PlanChangeResult, PlanChangeService
from .webhooks import PendingChangeHandler, WebhookReconciler, booking_ids_from_metadata

__all__ = [
    "BillingError",
    "BillingPeriod",
    "BillingRepository",
    "CommissionRecord",
    "CommissionStatus",
    "CommittedPlanChange",
    "ConnectAccountService",
    "ConnectStatus",
    "ConnectedAccount",
    "ConnectedAccountStatus",
    "GatewayAccount",
    "GatewayCheckoutSession",
    "GatewayPrice",
    "GatewaySubscription",
    "GatewayTransfer",
    "InboundWebhookEvent",
    "InvalidInput",
    "InvalidPlan",
    "InvalidSignature",
    "NotFound",
    "PLAN_CHANGE_CHECKOUT_TYPE",
    "PayloadStyle",
    "PaymentGateway",
    "PaymentRequiredPlanChange",
    "PendingChangeHandler",
    "PendingPlanChange",
    "PendingPlanChangeStatus",
    "PlanChangeConflict",
    "PlanChangeResult",
    "PlanChangeService",
    "ProrationQuote",
    "SigningSecret",
    "StripePaymentGateway",
    "Subscription",
    "SubscriptionStatus",
    "UpstreamUnavailable",
    "WebhookEventKind",
    "WebhookNotConfigured",
    "WebhookOutcome",
    "WebhookReceipt",
    "WebhookReconciler",
    "booking_ids_from_metadata",
    "calculate_proration",
    "conversion_quote",
    "derive_account_status",
    "next_commission_status",
    "update_partner_status",
]
