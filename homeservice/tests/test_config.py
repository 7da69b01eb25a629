from __future__ import annotations

import pytest

from homeservice.config import load_billing_config
from homeservice.app.plans import PlanId


def test_defaults():
    config = load_billing_config({})

    assert config.app_env == "development"
    assert config.is_production is False
    assert config.document_store == "postgres"
    assert config.database.as_connect_kwargs()["port"] == 5432
    assert config.webhook_secrets.configured is False
    assert config.webhook_tolerance_seconds == 300
    assert config.checkout_expiry_minutes == 31
    assert config.cors_origins == ("http://localhost:3000",)
    assert config.price_ids == {}


def test_connected_account_secret_falls_back_to_main_secret():
    config = load_billing_config(
        {
            "STRIPE_WEBHOOK_SECRET": "whsec_main",
            "STRIPE_WEBHOOK_SECRET_THIN": "whsec_thin",
            "STRIPE_WEBHOOK_SECRET_CONNECTED_ACCOUNTS_THIN": "whsec_connect_thin",
        }
    )

    assert config.webhook_secrets.primary == "whsec_main"
    assert config.webhook_secrets.secondary == "whsec_thin"
    assert config.connected_account_webhook_secrets.primary == "whsec_main"
    assert config.connected_account_webhook_secrets.secondary == "whsec_connect_thin"


def test_checkout_expiry_has_a_floor():
    assert load_billing_config({"CHECKOUT_EXPIRY_MINUTES": "5"}).checkout_expiry_minutes == 31
    assert load_billing_config({"CHECKOUT_EXPIRY_MINUTES": "90"}).checkout_expiry_minutes == 90


def test_checkout_urls_use_the_app_base_url():
    config = load_billing_config({"APP_BASE_URL": "https://homeservice.example/"})

    assert config.checkout_success_url.startswith("https://homeservice.example/dashboard?plan_change=success")
    assert "{CHECKOUT_SESSION_ID}" in config.checkout_success_url
    assert config.checkout_cancel_url == "https://homeservice.example/dashboard?plan_change=cancelled"


def test_price_ids_are_read_per_plan():
    config = load_billing_config({"STRIPE_PRICE_QUARTERLY": "price_q", "STRIPE_PRICE_TWICE_MONTH": " "})

    assert config.price_ids == {PlanId.QUARTERLY: "price_q"}


@pytest.mark.parametrize(
    "env",
    [
        {"DOCUMENT_STORE": "redis"},
        {"DB_PORT": "not-a-port"},
        {"DB_CONNECT_TIMEOUT": "-1"},
    ],
)
def test_invalid_values_are_rejected(env):
    with pytest.raises(ValueError):
        load_billing_config(env)
