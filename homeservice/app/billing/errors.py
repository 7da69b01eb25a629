"""Exceptions raised by the billing subsystem and surfaced to API callers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass(eq=False)
class BillingError(Exception):
    """Base class for billing failures with a stable error code and HTTP status."""

    message: str
    code: str = "billing_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None
    retryable: bool = False

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass(eq=False)
class InvalidInput(BillingError):
    """Malformed or missing request fields."""

    code: str = "invalid_input"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class InvalidPlan(InvalidInput):
    """The requested plan is unknown or cannot be selected."""

    code: str = "invalid_plan"


@dataclass(eq=False)
class NotFound(BillingError):
    """Unknown customer, subscription, pending change or gateway object."""

    code: str = "not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass(eq=False)
class InvalidSignature(BillingError):
    """A webhook could not be verified with any configured secret."""

    code: str = "invalid_signature"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class PlanChangeConflict(BillingError):
    """Another plan change touched the same subscription first."""

    code: str = "plan_change_conflict"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass(eq=False)
class UpstreamUnavailable(BillingError):
    """The payment gateway or document store could not be reached."""

    code: str = "upstream_unavailable"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = True


@dataclass(eq=False)
class WebhookNotConfigured(BillingError):
    """No signing secret is configured for the webhook endpoint."""

    code: str = "webhook_not_configured"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
    "BillingError",
    "InvalidInput",
    "InvalidPlan",
    "InvalidSignature",
    "NotFound",
    "PlanChangeConflict",
    "UpstreamUnavailable",
    "WebhookNotConfigured",
]
