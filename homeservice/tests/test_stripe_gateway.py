from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import stripe

from homeservice.app.billing import (
    GatewayPrice,
    InvalidInput,
    NotFound,
    StripePaymentGateway,
    UpstreamUnavailable,
)
from homeservice.app.plans import PlanId, get_plan_definition

PERIOD_START = 1773403200
PERIOD_END = 1775995200


def stripe_subscription(**overrides):
    subscription = {
        "id": "sub_1",
        "object": "subscription",
        "status": "active",
        "customer": "cus_1",
        "metadata": {"planId": "twice-month"},
        "items": {
            "data": [
                {
                    "id": "si_1",
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                    "price": {"id": "price_1", "unit_amount": 6500, "recurring": {"interval": "month"}},
                }
            ]
        },
    }
    subscription.update(overrides)
    return subscription


@pytest.fixture
def gateway():
    return StripePaymentGateway("sk_test_123", price_ids={PlanId.QUARTERLY: "price_quarterly"})


def test_retrieve_subscription_reads_item_level_period(monkeypatch, gateway):
    retrieve = MagicMock(return_value=stripe_subscription())
    monkeypatch.setattr(stripe.Subscription, "retrieve", retrieve)

    subscription = gateway.retrieve_subscription("sub_1")

    retrieve.assert_called_once_with("sub_1", expand=["items.data.price.product"], api_key="sk_test_123")
    assert subscription.item_id == "si_1"
    assert subscription.unit_amount == 6500
    assert subscription.interval == "month"
    assert subscription.period_start == datetime.fromtimestamp(PERIOD_START, tz=timezone.utc)
    assert subscription.period_end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
    assert subscription.metadata == {"planId": "twice-month"}


def test_configured_price_is_retrieved(monkeypatch, gateway):
    retrieve = MagicMock(return_value={"id": "price_quarterly", "unit_amount": 16000, "recurring": {"interval": "year"}})
    monkeypatch.setattr(stripe.Price, "retrieve", retrieve)

    price = gateway.resolve_price(get_plan_definition(PlanId.QUARTERLY))

    assert price == GatewayPrice(id="price_quarterly", unit_amount=16000, interval="year")


def test_missing_price_is_created_from_the_catalog(monkeypatch, gateway):
    create = MagicMock(return_value={"id": "price_new", "unit_amount": 6500, "recurring": {"interval": "month"}})
    monkeypatch.setattr(stripe.Price, "create", create)

    price = gateway.resolve_price(get_plan_definition(PlanId.TWICE_MONTH))

    kwargs = create.call_args.kwargs
    assert kwargs["unit_amount"] == 6500
    assert kwargs["recurring"] == {"interval": "month"}
    assert kwargs["metadata"] == {"planId": "twice-month"}
    assert price.id == "price_new"


def test_item_update_passes_proration_behavior(monkeypatch, gateway):
    modify = MagicMock(return_value=stripe_subscription())
    monkeypatch.setattr(stripe.Subscription, "modify", modify)

    gateway.update_subscription_item(
        "sub_1",
        item_id="si_1",
        price=GatewayPrice(id="price_quarterly", unit_amount=16000, interval="year"),
        proration_behavior="none",
        metadata={"planId": "quarterly"},
    )

    kwargs = modify.call_args.kwargs
    assert kwargs["items"] == [{"id": "si_1", "price": "price_quarterly"}]
    assert kwargs["proration_behavior"] == "none"
    assert kwargs["api_key"] == "sk_test_123"


def test_checkout_session_is_a_one_time_payment(monkeypatch, gateway):
    create = MagicMock(
        return_value={
            "id": "cs_1",
            "url": "https://checkout.stripe.com/cs_1",
            "status": "open",
            "payment_status": "unpaid",
            "metadata": {"type": "plan_change"},
            "expires_at": PERIOD_START,
        }
    )
    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    expires_at = datetime.now(timezone.utc) + timedelta(hours=2)

    session = gateway.create_checkout_session(
        customer_ref="cus_1",
        amount_cents=1500,
        description="Upgrade",
        metadata={"type": "plan_change"},
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
        expires_at=expires_at,
    )

    kwargs = create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 1500
    assert kwargs["customer"] == "cus_1"
    assert kwargs["expires_at"] == int(expires_at.timestamp())
    assert session.is_paid is False
    assert session.expires_at == datetime.fromtimestamp(PERIOD_START, tz=timezone.utc)


def test_missing_resource_is_not_found(monkeypatch, gateway):
    error = stripe.InvalidRequestError("No such subscription: 'sub_x'", "id", code="resource_missing")
    monkeypatch.setattr(stripe.Subscription, "retrieve", MagicMock(side_effect=error))

    with pytest.raises(NotFound):
        gateway.retrieve_subscription("sub_x")


def test_invalid_request_is_invalid_input(monkeypatch, gateway):
    error = stripe.InvalidRequestError("Invalid integer", "amount")
    monkeypatch.setattr(stripe.Transfer, "retrieve", MagicMock(side_effect=error))

    with pytest.raises(InvalidInput):
        gateway.retrieve_transfer("tr_1")


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("Network down"),
        stripe.RateLimitError("Too many requests"),
        stripe.AuthenticationError("Bad key"),
    ],
)
def test_transport_failures_are_retryable(monkeypatch, gateway, error):
    monkeypatch.setattr(stripe.Account, "retrieve", MagicMock(side_effect=error))

    with pytest.raises(UpstreamUnavailable) as excinfo:
        gateway.retrieve_account("acct_1")

    assert excinfo.value.retryable is True


def test_checkout_expiry_stays_inside_the_gateway_minimum(monkeypatch, gateway):
    create = MagicMock(return_value={"id": "cs_1", "url": None, "status": "open", "payment_status": "unpaid"})
    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    requested_at = datetime.now(timezone.utc) - timedelta(seconds=5)

    gateway.create_checkout_session(
        customer_ref="cus_1",
        amount_cents=205,
        description="Upgrade",
        metadata={},
        success_url="https://app.test/ok",
        cancel_url="https://app.test/cancel",
        expires_at=requested_at + timedelta(minutes=30),
    )

    assert create.call_args.kwargs["expires_at"] - time.time() >= 30 * 60
