"""Environment configuration for the billing service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .app.plans import PlanId

MIN_CHECKOUT_EXPIRY_MINUTES = 31
DOCUMENT_STORE_BACKENDS = ("postgres", "memory")


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    dbname: str
    user: str
    password: str
    connect_timeout: int

    def as_connect_kwargs(self) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class WebhookSecrets:
    """Signing secrets for one webhook endpoint; ``secondary`` verifies thin payloads."""

    primary: Optional[str]
    secondary: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.primary or self.secondary)


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for plan changes, the payment gateway and webhooks."""

    app_env: str
    app_base_url: str
    stripe_secret_key: str
    webhook_secrets: WebhookSecrets
    connected_account_webhook_secrets: WebhookSecrets
    webhook_tolerance_seconds: int
    checkout_expiry_minutes: int
    document_store: str
    database: DatabaseConfig
    sort_timeout_ms: int
    cors_origins: Tuple[str, ...]
    price_ids: Dict[PlanId, str] = field(default_factory=dict)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def checkout_success_url(self) -> str:
        return f"{self.app_base_url}/dashboard?plan_change=success&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.app_base_url}/dashboard?plan_change=cancelled"


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_list(value: Optional[str], *, default: str) -> Tuple[str, ...]:
    raw = default if value is None else value
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _price_ids(env: Mapping[str, str]) -> Dict[PlanId, str]:
    price_ids: Dict[PlanId, str] = {}
    for plan_id in PlanId:
        value = _optional(env.get(f"STRIPE_PRICE_{plan_id.name}"))
        if value:
            price_ids[plan_id] = value
    return price_ids


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    app_env = (env_mapping.get("APP_ENV") or "development").strip().lower()
    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:3000")

    main_secret = _optional(env_mapping.get("STRIPE_WEBHOOK_SECRET"))
    webhook_secrets = WebhookSecrets(
        primary=main_secret,
        secondary=_optional(env_mapping.get("STRIPE_WEBHOOK_SECRET_THIN")),
    )
    connected_secrets = WebhookSecrets(
        primary=_optional(env_mapping.get("STRIPE_WEBHOOK_SECRET_CONNECTED_ACCOUNTS")) or main_secret,
        secondary=_optional(env_mapping.get("STRIPE_WEBHOOK_SECRET_CONNECTED_ACCOUNTS_THIN")),
    )

    document_store = (env_mapping.get("DOCUMENT_STORE") or "postgres").strip().lower()
    if document_store not in DOCUMENT_STORE_BACKENDS:
        raise ValueError(f"DOCUMENT_STORE must be one of {', '.join(DOCUMENT_STORE_BACKENDS)}")

    connect_timeout = _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)
    if connect_timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")

    database = DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "homeservice"),
        user=env_mapping.get("DB_USER", "homeservice"),
        password=env_mapping.get("DB_PASSWORD", "homeservice"),
        connect_timeout=connect_timeout,
    )

    return BillingConfig(
        app_env=app_env,
        app_base_url=app_base_url.rstrip("/"),
        stripe_secret_key=(env_mapping.get("STRIPE_SECRET_KEY") or "").strip(),
        webhook_secrets=webhook_secrets,
        connected_account_webhook_secrets=connected_secrets,
        webhook_tolerance_seconds=max(0, _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"), default=300)),
        checkout_expiry_minutes=max(
            MIN_CHECKOUT_EXPIRY_MINUTES,
            _to_int(env_mapping.get("CHECKOUT_EXPIRY_MINUTES"), default=MIN_CHECKOUT_EXPIRY_MINUTES),
        ),
        document_store=document_store,
        database=database,
        sort_timeout_ms=max(1, _to_int(env_mapping.get("DOCUMENT_SORT_TIMEOUT_MS"), default=2000)),
        cors_origins=_to_list(env_mapping.get("CORS_ORIGINS"), default="http://localhost:3000"),
        price_ids=_price_ids(env_mapping),
    )


__all__ = ["BillingConfig", "DatabaseConfig", "WebhookSecrets", "load_billing_config"]
