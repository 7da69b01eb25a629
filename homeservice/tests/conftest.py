"""Shared fakes and fixtures for the billing tests."""
from __future__ import annotations

import hashlib
import hmac
import itertools
import json
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pytest

from homeservice.app.billing import (
    BillingRepository,
    GatewayAccount,
    GatewayCheckoutSession,
    GatewayPrice,
    GatewaySubscription,
    GatewayTransfer,
    NotFound,
    PlanChangeService,
)
from homeservice.app.documents import InMemoryDocumentStore
from homeservice.app.plans import PlanDefinition

NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)


class FakePaymentGateway:
    """In-memory stand-in for the payment processor."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, GatewaySubscription] = {}
        self.checkout_sessions: Dict[str, GatewayCheckoutSession] = {}
        self.transfers: Dict[str, GatewayTransfer] = {}
        self.accounts: Dict[str, GatewayAccount] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, Exception] = {}
        self.on_retrieve_subscription: Optional[Callable[[str], None]] = None
        self._ids = itertools.count(1)

    def _record(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))
        failure = self.failures.get(name)
        if failure is not None:
            raise failure

    def calls_named(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def add_subscription(
        self,
        subscription_id: str,
        *,
        unit_amount: int,
        interval: str,
        period_start: datetime,
        period_end: datetime,
        customer: str = "cus_1",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> GatewaySubscription:
        subscription = GatewaySubscription(
            id=subscription_id,
            item_id=f"si_{subscription_id}",
            price_id=f"price_{subscription_id}",
            unit_amount=unit_amount,
            interval=interval,
            period_start=period_start,
            period_end=period_end,
            status="active",
            customer=customer,
            metadata=dict(metadata or {}),
        )
        self.subscriptions[subscription_id] = subscription
        return subscription

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        self._record("retrieve_subscription", subscription_ref=subscription_ref)
        if self.on_retrieve_subscription is not None:
            self.on_retrieve_subscription(subscription_ref)
        try:
            return self.subscriptions[subscription_ref]
        except KeyError:
            raise NotFound(message="Payment gateway object not found") from None

    def resolve_price(self, plan: PlanDefinition) -> GatewayPrice:
        self._record("resolve_price", plan_id=plan.id.value)
        return GatewayPrice(id=f"price_{plan.id.value}", unit_amount=plan.price_cents, interval=plan.gateway_interval)

    def create_subscription(self, *, customer_ref: str, price: GatewayPrice, metadata: Mapping[str, str]) -> GatewaySubscription:
        self._record("create_subscription", customer_ref=customer_ref, price=price, metadata=dict(metadata))
        subscription_id = f"sub_new_{next(self._ids)}"
        length = timedelta(days=365) if price.interval == "year" else timedelta(days=30)
        return self.add_subscription(
            subscription_id,
            unit_amount=price.unit_amount,
            interval=price.interval or "month",
            period_start=NOW,
            period_end=NOW + length,
            customer=customer_ref,
            metadata=metadata,
        )

    def update_subscription_item(
        self,
        subscription_ref: str,
        *,
        item_id: str,
        price: GatewayPrice,
        proration_behavior: str,
        metadata: Mapping[str, str],
    ) -> GatewaySubscription:
        self._record(
            "update_subscription_item",
            subscription_ref=subscription_ref,
            item_id=item_id,
            price=price,
            proration_behavior=proration_behavior,
            metadata=dict(metadata),
        )
        current = self.subscriptions[subscription_ref]
        updated = replace(
            current,
            price_id=price.id,
            unit_amount=price.unit_amount,
            interval=price.interval,
            metadata={**current.metadata, **metadata},
        )
        self.subscriptions[subscription_ref] = updated
        return updated

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
        self._record(
            "create_checkout_session",
            customer_ref=customer_ref,
            amount_cents=amount_cents,
            description=description,
            metadata=dict(metadata),
            expires_at=expires_at,
        )
        session_id = f"cs_test_{next(self._ids)}"
        session = GatewayCheckoutSession(
            id=session_id,
            url=f"https://checkout.test/{session_id}",
            status="open",
            payment_status="unpaid",
            customer=customer_ref,
            metadata=dict(metadata),
            expires_at=expires_at,
        )
        self.checkout_sessions[session_id] = session
        return session

    def mark_paid(self, session_id: str) -> None:
        session = self.checkout_sessions[session_id]
        self.checkout_sessions[session_id] = replace(session, status="complete", payment_status="paid")

    def retrieve_checkout_session(self, session_ref: str) -> GatewayCheckoutSession:
        self._record("retrieve_checkout_session", session_ref=session_ref)
        try:
            return self.checkout_sessions[session_ref]
        except KeyError:
            raise NotFound(message="Payment gateway object not found") from None

    def retrieve_transfer(self, transfer_ref: str) -> GatewayTransfer:
        self._record("retrieve_transfer", transfer_ref=transfer_ref)
        try:
            return self.transfers[transfer_ref]
        except KeyError:
            raise NotFound(message="Payment gateway object not found") from None

    def retrieve_account(self, account_ref: str) -> GatewayAccount:
        self._record("retrieve_account", account_ref=account_ref)
        try:
            return self.accounts[account_ref]
        except KeyError:
            raise NotFound(message="Payment gateway object not found") from None


def sign_payload(payload: str, secret: str, *, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header the way the gateway does."""

    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def snapshot_event(event_type: str, data_object: Mapping[str, Any], **extra: Any) -> str:
    body = {
        "id": f"evt_{event_type.replace('.', '_')}",
        "object": "event",
        "type": event_type,
        "created": int(NOW.timestamp()),
        "data": {"object": dict(data_object)},
    }
    body.update(extra)
    return json.dumps(body)


def thin_event(event_type: str, object_id: str, **extra: Any) -> str:
    body = {
        "id": f"evt_thin_{object_id}",
        "object": "v2.core.event",
        "type": event_type,
        "created": NOW.isoformat().replace("+00:00", "Z"),
        "related_object": {"id": object_id, "type": event_type.split(".")[1], "url": f"/v1/{object_id}"},
    }
    body.update(extra)
    return json.dumps(body)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(indexed_fields=("updatedAt",))


@pytest.fixture
def repository(store: InMemoryDocumentStore) -> BillingRepository:
    return BillingRepository(store)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def service(repository: BillingRepository, gateway: FakePaymentGateway) -> PlanChangeService:
    return PlanChangeService(
        repository=repository,
        gateway=gateway,
        success_url="https://app.test/success",
        cancel_url="https://app.test/cancel",
        checkout_expiry=timedelta(minutes=30),
        clock=lambda: NOW,
    )
