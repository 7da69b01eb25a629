"""Payment gateway interface and its Stripe implementation."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Mapping, Optional, Protocol

import stripe

from ..plans import PlanDefinition, PlanId
from .errors import InvalidInput, NotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "usd"
# Stripe rejects checkout expiries under 30 minutes from when it receives the request.
MIN_CHECKOUT_LIFETIME = timedelta(minutes=31)


@dataclass(frozen=True)
class GatewayPrice:
    id: str
    unit_amount: int
    interval: Optional[str] = None


@dataclass(frozen=True)
class GatewaySubscription:
    """Live view of a recurring subscription held by the gateway."""

    id: str
    item_id: Optional[str]
    price_id: Optional[str]
    unit_amount: Optional[int]
    interval: Optional[str]
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    status: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayCheckoutSession:
    id: str
    url: Optional[str]
    status: Optional[str] = None
    payment_status: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    expires_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid" or self.status == "complete"


@dataclass(frozen=True)
class GatewayTransfer:
    id: str
    amount: Optional[int] = None
    destination: Optional[str] = None
    reversed: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayAccount:
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Narrow slice of the payment processor used by billing flows."""

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        """Fetch a subscription with its first item's price expanded."""

    def resolve_price(self, plan: PlanDefinition) -> GatewayPrice:
        """Return the gateway price for a plan, creating one when none is configured."""

    def create_subscription(
        self,
        *,
        customer_ref: str,
        price: GatewayPrice,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        ...

    def update_subscription_item(
        self,
        subscription_ref: str,
        *,
        item_id: str,
        price: GatewayPrice,
        proration_behavior: str,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        ...

    def create_checkout_session(
        self,
        *,
        customer_ref: Optional[str],
        amount_cents: int,
        description: str,
        metadata: Mapping[str, str],
        success_url: str,
        cancel_url: str,
        expires_at: Optional[datetime] = None,
    ) -> GatewayCheckoutSession:
        ...

    def retrieve_checkout_session(self, session_ref: str) -> GatewayCheckoutSession:
        ...

    def retrieve_transfer(self, transfer_ref: str) -> GatewayTransfer:
        ...

    def retrieve_account(self, account_ref: str) -> GatewayAccount:
        ...


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain mapping."""

    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    return getattr(obj, name, default)


def metadata_of(obj: Any) -> Dict[str, str]:
    metadata = field_of(obj, "metadata")
    if not metadata:
        return {}
    if isinstance(metadata, Mapping):
        return {str(key): str(value) for key, value in metadata.items()}
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return {str(key): str(value) for key, value in to_dict().items()}
    return {}


def from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def to_gateway_subscription(subscription: Any) -> GatewaySubscription:
    items = field_of(field_of(subscription, "items"), "data") or []
    item = items[0] if items else None
    price = field_of(item, "price")
    recurring = field_of(price, "recurring")
    # Newer API versions report the billing period on the item only.
    period_start = field_of(subscription, "current_period_start") or field_of(item, "current_period_start")
    period_end = field_of(subscription, "current_period_end") or field_of(item, "current_period_end")
    unit_amount = field_of(price, "unit_amount")
    return GatewaySubscription(
        id=field_of(subscription, "id"),
        item_id=field_of(item, "id"),
        price_id=field_of(price, "id"),
        unit_amount=int(unit_amount) if unit_amount is not None else None,
        interval=field_of(recurring, "interval"),
        period_start=from_timestamp(period_start),
        period_end=from_timestamp(period_end),
        status=field_of(subscription, "status"),
        customer=field_of(subscription, "customer"),
        metadata=metadata_of(subscription),
    )


def to_gateway_checkout_session(session: Any) -> GatewayCheckoutSession:
    return GatewayCheckoutSession(
        id=field_of(session, "id"),
        url=field_of(session, "url"),
        status=field_of(session, "status"),
        payment_status=field_of(session, "payment_status"),
        customer=field_of(session, "customer"),
        metadata=metadata_of(session),
        expires_at=from_timestamp(field_of(session, "expires_at")),
    )


def to_gateway_transfer(transfer: Any) -> GatewayTransfer:
    return GatewayTransfer(
        id=field_of(transfer, "id"),
        amount=field_of(transfer, "amount"),
        destination=field_of(transfer, "destination"),
        reversed=bool(field_of(transfer, "reversed", False)),
        metadata=metadata_of(transfer),
    )


def to_gateway_account(account: Any) -> GatewayAccount:
    return GatewayAccount(
        id=field_of(account, "id"),
        charges_enabled=bool(field_of(account, "charges_enabled", False)),
        payouts_enabled=bool(field_of(account, "payouts_enabled", False)),
        details_submitted=bool(field_of(account, "details_submitted", False)),
        metadata=metadata_of(account),
    )


@contextmanager
def translate_stripe_errors(operation: str, **context: Any) -> Iterator[None]:
    """Map ``stripe`` exceptions onto the billing error taxonomy."""

    try:
        yield
    except stripe.InvalidRequestError as exc:
        detail = {"operation": operation, **context}
        if getattr(exc, "code", None) == "resource_missing":
            raise NotFound(message=exc.user_message or "Payment gateway object not found", detail=detail) from exc
        raise InvalidInput(message=exc.user_message or str(exc), detail=detail) from exc
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
        logger.warning("Payment gateway unavailable during %s: %s", operation, exc, extra=context)
        raise UpstreamUnavailable(
            message="Payment gateway is unavailable, please retry",
            detail={"operation": operation},
        ) from exc
    except stripe.StripeError as exc:
        logger.error("Payment gateway error during %s: %s", operation, exc, extra=context)
        raise UpstreamUnavailable(
            message="Payment gateway request failed",
            detail={"operation": operation},
        ) from exc


class StripePaymentGateway:
    """``PaymentGateway`` backed by the Stripe API.

    The API key is passed per request instead of being set on the module so
    several gateways (or test doubles) can coexist in one process.
    """

    def __init__(
        self,
        api_key: str,
        *,
        price_ids: Optional[Mapping[PlanId, str]] = None,
        currency: str = DEFAULT_CURRENCY,
    ) -> None:
        self._api_key = api_key
        self._price_ids = dict(price_ids or {})
        self._currency = currency

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        with translate_stripe_errors("retrieve_subscription", subscription_ref=subscription_ref):
            subscription = stripe.Subscription.retrieve(
                subscription_ref,
                expand=["items.data.price.product"],
                api_key=self._api_key,
            )
        return to_gateway_subscription(subscription)

    def resolve_price(self, plan: PlanDefinition) -> GatewayPrice:
        price_id = self._price_ids.get(plan.id)
        if price_id:
            with translate_stripe_errors("retrieve_price", plan_id=plan.id.value):
                price = stripe.Price.retrieve(price_id, api_key=self._api_key)
        else:
            params: Dict[str, Any] = {
                "currency": self._currency,
                "unit_amount": plan.price_cents,
                "product_data": {"name": plan.display_name},
                "metadata": {"planId": plan.id.value},
            }
            if plan.gateway_interval:
                params["recurring"] = {"interval": plan.gateway_interval}
            with translate_stripe_errors("create_price", plan_id=plan.id.value):
                price = stripe.Price.create(api_key=self._api_key, **params)
            logger.info("Created gateway price %s for plan %s", field_of(price, "id"), plan.id.value)
        unit_amount = field_of(price, "unit_amount")
        return GatewayPrice(
            id=field_of(price, "id"),
            unit_amount=int(unit_amount) if unit_amount is not None else plan.price_cents,
            interval=field_of(field_of(price, "recurring"), "interval"),
        )

    def create_subscription(
        self,
        *,
        customer_ref: str,
        price: GatewayPrice,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        with translate_stripe_errors("create_subscription", customer_ref=customer_ref):
            subscription = stripe.Subscription.create(
                customer=customer_ref,
                items=[{"price": price.id}],
                proration_behavior="none",
                metadata=dict(metadata),
                expand=["items.data.price"],
                api_key=self._api_key,
            )
        return to_gateway_subscription(subscription)

    def update_subscription_item(
        self,
        subscription_ref: str,
        *,
        item_id: str,
        price: GatewayPrice,
        proration_behavior: str,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        with translate_stripe_errors("update_subscription", subscription_ref=subscription_ref):
            subscription = stripe.Subscription.modify(
                subscription_ref,
                items=[{"id": item_id, "price": price.id}],
                proration_behavior=proration_behavior,
                metadata=dict(metadata),
                expand=["items.data.price"],
                api_key=self._api_key,
            )
        return to_gateway_subscription(subscription)

    def create_checkout_session(
        self,
        *,
        customer_ref: Optional[str],
        amount_cents: int,
        description: str,
        metadata: Mapping[str, str],
        success_url: str,
        cancel_url: str,
        expires_at: Optional[datetime] = None,
    ) -> GatewayCheckoutSession:
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {"name": description},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": dict(metadata),
        }
        if customer_ref:
            params["customer"] = customer_ref
        if expires_at is not None:
            earliest = datetime.now(timezone.utc) + MIN_CHECKOUT_LIFETIME
            params["expires_at"] = int(max(expires_at, earliest).timestamp())
        with translate_stripe_errors("create_checkout_session", customer_ref=customer_ref):
            session = stripe.checkout.Session.create(api_key=self._api_key, **params)
        return to_gateway_checkout_session(session)

    def retrieve_checkout_session(self, session_ref: str) -> GatewayCheckoutSession:
        with translate_stripe_errors("retrieve_checkout_session", session_ref=session_ref):
            session = stripe.checkout.Session.retrieve(session_ref, api_key=self._api_key)
        return to_gateway_checkout_session(session)

    def retrieve_transfer(self, transfer_ref: str) -> GatewayTransfer:
        with translate_stripe_errors("retrieve_transfer", transfer_ref=transfer_ref):
            transfer = stripe.Transfer.retrieve(transfer_ref, api_key=self._api_key)
        return to_gateway_transfer(transfer)

    def retrieve_account(self, account_ref: str) -> GatewayAccount:
        with translate_stripe_errors("retrieve_account", account_ref=account_ref):
            account = stripe.Account.retrieve(account_ref, api_key=self._api_key)
        return to_gateway_account(account)
