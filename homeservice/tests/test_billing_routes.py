from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from homeservice.app.billing import ConnectAccountService, GatewayAccount, WebhookReconciler
from homeservice.app.billing.repository import PARTNERS, USERS
from homeservice.app.documents import InMemoryDocumentStore
from homeservice.app.services.billing import (
    configure_billing,
    get_billing_config,
    get_connect_account_service,
    get_connected_account_reconciler,
    get_document_store,
    get_plan_change_service,
    get_webhook_reconciler,
)
from homeservice.config import load_billing_config
from homeservice.main import create_app

from conftest import NOW, sign_payload, snapshot_event, thin_event

SECRET = "whsec_routes"


def build_client(service, repository, gateway, *, app_env="development", secret=SECRET):
    config = load_billing_config({"APP_ENV": app_env, "DOCUMENT_STORE": "memory"})
    app = create_app(config)
    reconciler = WebhookReconciler(
        repository=repository,
        gateway=gateway,
        primary_secret=secret,
        pending_changes=service,
    )
    app.dependency_overrides[get_plan_change_service] = lambda: service
    app.dependency_overrides[get_webhook_reconciler] = lambda: reconciler
    app.dependency_overrides[get_connected_account_reconciler] = lambda: reconciler
    app.dependency_overrides[get_connect_account_service] = lambda: ConnectAccountService(
        repository=repository, gateway=gateway
    )
    return TestClient(app)


@pytest.fixture(autouse=True)
def environment_wiring():
    yield
    configure_billing(None)


@pytest.fixture
def client(service, repository, gateway):
    return build_client(service, repository, gateway)


@pytest.fixture
def subscribed_customer(store, gateway):
    gateway.add_subscription(
        "sub_1",
        unit_amount=6500,
        interval="month",
        period_start=NOW - timedelta(days=15),
        period_end=NOW + timedelta(days=15),
        metadata={"planId": "twice-month"},
    )
    store.create(
        USERS,
        "cust_1",
        {"selectedPlan": "twice-month", "stripeSubscriptionId": "sub_1", "stripeCustomerId": "cus_1"},
    )


def test_downgrade_returns_committed_change(client, subscribed_customer):
    response = client.post(
        "/api/billing/change-subscription",
        json={"customerId": "cust_1", "newPlanId": "quarterly", "currentSubscriptionRef": "sub_1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["committed"] is True
    assert body["paymentRequired"] is False
    assert body["planId"] == "quarterly"
    assert body["proration"]["daysRemaining"] == 15
    assert body["proration"]["isUpgrade"] is False
    assert "checkoutUrl" not in body


def test_missing_fields_are_a_bad_request(client):
    response = client.post("/api/billing/change-subscription", json={"customerId": "cust_1"})

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_input"


def test_unknown_plan_is_a_bad_request(client, subscribed_customer):
    response = client.post(
        "/api/billing/change-subscription",
        json={"customerId": "cust_1", "newPlanId": "platinum"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_plan"


def test_unknown_customer_is_not_found(client):
    response = client.post(
        "/api/billing/change-subscription",
        json={"customerId": "nobody", "newPlanId": "quarterly"},
    )

    assert response.status_code == 404
    assert response.json()["customerId"] == "nobody"


def test_production_errors_omit_detail(service, repository, gateway):
    client = build_client(service, repository, gateway, app_env="production")

    response = client.post(
        "/api/billing/change-subscription",
        json={"customerId": "nobody", "newPlanId": "quarterly"},
    )

    assert response.status_code == 404
    assert response.json() == {"error": "not_found", "message": "Customer not found"}


def test_upgrade_flow_over_http(client, store, gateway):
    gateway.add_subscription(
        "sub_q",
        unit_amount=16000,
        interval="year",
        period_start=NOW - timedelta(days=350),
        period_end=NOW + timedelta(days=15),
        metadata={"planId": "quarterly"},
    )
    store.create(
        USERS,
        "cust_1",
        {"selectedPlan": "quarterly", "stripeSubscriptionId": "sub_q", "stripeCustomerId": "cus_1"},
    )

    requested = client.post(
        "/api/billing/change-subscription",
        json={"customerId": "cust_1", "newPlanId": "bi-monthly"},
    ).json()
    assert requested["paymentRequired"] is True
    assert requested["committed"] is False
    assert requested["amountDueCents"] == 205

    conflict = client.post(
        "/api/billing/change-subscription",
        json={"customerId": "cust_1", "newPlanId": "twice-month"},
    )
    assert conflict.status_code == 409

    unpaid = client.post(
        "/api/billing/complete-subscription-change",
        json={"checkoutSessionId": requested["checkoutRef"]},
    )
    assert unpaid.status_code == 400

    gateway.mark_paid(requested["checkoutRef"])
    completed = client.post(
        "/api/billing/complete-subscription-change",
        json={"checkoutSessionId": requested["checkoutRef"], "customerId": "cust_1"},
    )
    assert completed.status_code == 200
    assert completed.json()["planId"] == "bi-monthly"
    assert store.get(USERS, "cust_1")["selectedPlan"] == "bi-monthly"


def test_billing_period(client, subscribed_customer):
    response = client.get("/api/billing/subscriptions/sub_1/billing-period")

    assert response.status_code == 200
    body = response.json()
    assert body["subscriptionRef"] == "sub_1"
    assert body["billingPeriodEnd"].startswith("2026-03-31")


def test_billing_period_for_unknown_subscription(client):
    response = client.get("/api/billing/subscriptions/sub_missing/billing-period")

    assert response.status_code == 404


def test_webhook_is_acknowledged(client):
    body = snapshot_event("invoice.paid", {"id": "in_1"})

    response = client.post(
        "/api/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, SECRET), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_verified_webhook_is_acknowledged_when_its_handler_fails(client, gateway):
    gateway.failures["retrieve_transfer"] = RuntimeError("boom")
    body = thin_event("v1.transfer.paid", "tr_1")

    response = client.post(
        "/api/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, SECRET)},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_webhook_with_bad_signature_is_rejected(client):
    body = snapshot_event("invoice.paid", {"id": "in_1"})

    response = client.post(
        "/api/webhooks/stripe/connected-accounts",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, "whsec_wrong")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_signature"


def test_webhook_without_secret_is_a_server_error(service, repository, gateway):
    client = build_client(service, repository, gateway, secret=None)

    response = client.post("/api/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=abc"})

    assert response.status_code == 500
    assert response.json()["error"] == "webhook_not_configured"


def test_partner_without_account_is_not_connected(client, store):
    store.create(PARTNERS, "p1", {"updatedAt": NOW})

    response = client.post("/api/partners/stripe-connect/check-status", json={"partnerId": "p1"})

    assert response.status_code == 200
    assert response.json() == {"connected": False, "status": "not_connected"}


def test_partner_status_is_refreshed_from_the_gateway(client, store, gateway):
    store.create(PARTNERS, "p1", {"stripeConnectedAccountId": "acct_1", "stripeConnectStatus": "incomplete"})
    gateway.accounts["acct_1"] = GatewayAccount(
        id="acct_1", charges_enabled=True, payouts_enabled=True, details_submitted=True
    )

    response = client.post("/api/partners/stripe-connect/check-status", json={"partnerId": "p1"})

    assert response.status_code == 200
    assert response.json() == {
        "connected": True,
        "status": "active",
        "chargesEnabled": True,
        "payoutsEnabled": True,
        "detailsSubmitted": True,
    }
    assert store.get(PARTNERS, "p1")["stripeConnectStatus"] == "active"


def test_partner_id_is_required(client):
    response = client.post("/api/partners/stripe-connect/check-status", json={})

    assert response.status_code == 400


def test_app_config_reaches_the_service_wiring():
    config = load_billing_config(
        {
            "DOCUMENT_STORE": "memory",
            "APP_BASE_URL": "https://homeservice.example",
            "STRIPE_WEBHOOK_SECRET": "whsec_app",
        }
    )

    create_app(config)

    assert get_billing_config() is config
    assert isinstance(get_document_store(), InMemoryDocumentStore)
    assert get_plan_change_service().cancel_url == "https://homeservice.example/dashboard?plan_change=cancelled"
    assert get_webhook_reconciler().configured is True
