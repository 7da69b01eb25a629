"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache, partial
from typing import Optional

import psycopg2

from ...config import BillingConfig, load_billing_config
from ..billing import (
    BillingRepository,
    ConnectAccountService,
    PaymentGateway,
    PlanChangeService,
    StripePaymentGateway,
    WebhookReconciler,
)
from ..documents import DocumentStore, InMemoryDocumentStore, PostgresDocumentStore

logger = logging.getLogger("billing")

INDEXED_FIELDS = ("createdAt", "updatedAt")

_configured: Optional[BillingConfig] = None


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return _configured or load_billing_config()


@lru_cache(maxsize=1)
def get_document_store() -> DocumentStore:
    config = get_billing_config()
    if config.document_store == "memory":
        logger.warning("Using the in-memory document store; data is lost on restart")
        return InMemoryDocumentStore(indexed_fields=INDEXED_FIELDS)
    connect = partial(psycopg2.connect, **config.database.as_connect_kwargs())
    return PostgresDocumentStore(connect, sort_timeout_ms=config.sort_timeout_ms)


@lru_cache(maxsize=1)
def get_billing_repository() -> BillingRepository:
    return BillingRepository(get_document_store())


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    config = get_billing_config()
    if not config.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; gateway calls will fail")
    return StripePaymentGateway(config.stripe_secret_key, price_ids=config.price_ids)


@lru_cache(maxsize=1)
def get_plan_change_service() -> PlanChangeService:
    config = get_billing_config()
    return PlanChangeService(
        repository=get_billing_repository(),
        gateway=get_payment_gateway(),
        success_url=config.checkout_success_url,
        cancel_url=config.checkout_cancel_url,
        checkout_expiry=timedelta(minutes=config.checkout_expiry_minutes),
    )


@lru_cache(maxsize=1)
def get_connect_account_service() -> ConnectAccountService:
    return ConnectAccountService(repository=get_billing_repository(), gateway=get_payment_gateway())


@lru_cache(maxsize=1)
def get_webhook_reconciler() -> WebhookReconciler:
    config = get_billing_config()
    return WebhookReconciler(
        repository=get_billing_repository(),
        gateway=get_payment_gateway(),
        primary_secret=config.webhook_secrets.primary,
        secondary_secret=config.webhook_secrets.secondary,
        pending_changes=get_plan_change_service(),
        tolerance=config.webhook_tolerance_seconds,
        name="stripe",
    )


@lru_cache(maxsize=1)
def get_connected_account_reconciler() -> WebhookReconciler:
    config = get_billing_config()
    secrets = config.connected_account_webhook_secrets
    return WebhookReconciler(
        repository=get_billing_repository(),
        gateway=get_payment_gateway(),
        primary_secret=secrets.primary,
        secondary_secret=secrets.secondary,
        tolerance=config.webhook_tolerance_seconds,
        name="connected-accounts",
    )


def reset_billing_wiring() -> None:
    """Drop cached singletons so the next request reloads configuration."""

    for provider in (
        get_billing_config,
        get_document_store,
        get_billing_repository,
        get_payment_gateway,
        get_plan_change_service,
        get_connect_account_service,
        get_webhook_reconciler,
        get_connected_account_reconciler,
    ):
        provider.cache_clear()


def configure_billing(config: Optional[BillingConfig]) -> None:
    """Build the billing singletons from ``config`` instead of the environment."""

    global _configured
    _configured = config
    reset_billing_wiring()


__all__ = [
    "configure_billing",
    "get_billing_config",
    "get_billing_repository",
    "get_connect_account_service",
    "get_connected_account_reconciler",
    "get_document_store",
    "get_payment_gateway",
    "get_plan_change_service",
    "get_webhook_reconciler",
    "reset_billing_wiring",
]
