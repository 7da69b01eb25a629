"""Verification and reconciliation of payment gateway webhooks."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple, Union

import stripe

from .accounts import update_partner_status
from .errors import BillingError, InvalidSignature, WebhookNotConfigured
from .gateway import (
    GatewayAccount,
    GatewayCheckoutSession,
    GatewaySubscription,
    PaymentGateway,
    to_gateway_account,
    to_gateway_checkout_session,
    to_gateway_subscription,
)
from .models import (
    CommissionRecord,
    ConnectedAccount,
    ConnectedAccountStatus,
    InboundWebhookEvent,
    PayloadStyle,
    SigningSecret,
    WebhookEventKind,
    WebhookOutcome,
    WebhookReceipt,
    derive_account_status,
    next_commission_status,
)
from .repository import BillingRepository
from .service import PLAN_CHANGE_CHECKOUT_TYPE

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 3

BOOKING_METADATA_KEYS = ("bookingId", "partnerBookingId")
BATCH_METADATA_KEY = "commissionIds"

HandlerResult = Tuple[WebhookOutcome, Tuple[str, ...]]


class PendingChangeHandler(Protocol):
    """Payment-success side of the two-phase plan upgrade."""

    def commit_pending_change(self, checkout_session_ref: str) -> Any:
        ...

    def expire_pending_change(self, checkout_session_ref: str) -> bool:
        ...


def _parse_created(value: object) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def booking_ids_from_metadata(metadata: Mapping[str, Any]) -> List[str]:
    """Collect every booking id a transfer's metadata refers to, in order and without duplicates."""

    ids: List[str] = []
    for key in BOOKING_METADATA_KEYS:
        value = metadata.get(key)
        if value:
            ids.append(str(value).strip())
    batch = metadata.get(BATCH_METADATA_KEY)
    if batch:
        ids.extend(part.strip() for part in str(batch).split(","))
    seen = set()
    unique: List[str] = []
    for booking_id in ids:
        if booking_id and booking_id not in seen:
            seen.add(booking_id)
            unique.append(booking_id)
    return unique


class WebhookReconciler:
    """Applies verified gateway notifications to local billing records.

    Deliveries are at-least-once and unordered, so every handler is
    idempotent: commission and account writes are compare-and-swap against
    the value that was read, and terminal states are never left. Once the
    signature checks out the event is always accepted; a handler fault is
    logged and reported in the receipt instead of failing the delivery.
    """

    def __init__(
        self,
        *,
        repository: BillingRepository,
        gateway: PaymentGateway,
        primary_secret: Optional[str],
        secondary_secret: Optional[str] = None,
        pending_changes: Optional[PendingChangeHandler] = None,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        name: str = "stripe",
    ) -> None:
        self._repository = repository
        self._gateway = gateway
        self._secrets: List[Tuple[SigningSecret, str]] = [
            (label, secret)
            for label, secret in ((SigningSecret.PRIMARY, primary_secret), (SigningSecret.SECONDARY, secondary_secret))
            if secret
        ]
        self._pending_changes = pending_changes
        self._tolerance = tolerance
        self._max_attempts = max(1, max_attempts)
        self._name = name
        self._handlers: Dict[WebhookEventKind, Callable[[InboundWebhookEvent], HandlerResult]] = {
            WebhookEventKind.ACCOUNT_UPDATED: self._on_account_updated,
            WebhookEventKind.ACCOUNT_DEAUTHORIZED: self._on_account_deauthorized,
            WebhookEventKind.TRANSFER_CREATED: self._on_transfer,
            WebhookEventKind.TRANSFER_PAID: self._on_transfer,
            WebhookEventKind.TRANSFER_FAILED: self._on_transfer,
            WebhookEventKind.TRANSFER_UPDATED: self._on_transfer,
            WebhookEventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            WebhookEventKind.CHECKOUT_EXPIRED: self._on_checkout_expired,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._on_subscription_changed,
            WebhookEventKind.SUBSCRIPTION_DELETED: self._on_subscription_changed,
            WebhookEventKind.UNKNOWN: self._on_unknown,
        }
        missing = set(WebhookEventKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No webhook handler for: {sorted(kind.value for kind in missing)}")

    @property
    def configured(self) -> bool:
        return bool(self._secrets)

    def handle(self, raw_body: Union[bytes, str], signature_header: Optional[str]) -> WebhookReceipt:
        verified_with = self.verify(raw_body, signature_header)
        payload_text = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        try:
            payload = json.loads(payload_text)
        except ValueError:
            logger.exception("Verified %s webhook carried malformed JSON", self._name)
            return WebhookReceipt(
                event_type="",
                kind=WebhookEventKind.UNKNOWN,
                payload_style=PayloadStyle.SNAPSHOT,
                verified_with_secret=verified_with,
                outcome=WebhookOutcome.FAILED,
            )
        if not isinstance(payload, dict):
            payload = {}

        event = self.parse_event(payload, verified_with)
        context = {
            "webhook": self._name,
            "event_id": event.event_id,
            "event_type": event.type,
            "payload_style": event.payload_style.value,
            "secret": event.verified_with_secret.value,
        }
        logger.info("Received %s webhook %s", self._name, event.type, extra=context)

        try:
            outcome, affected = self._handlers[event.kind](event)
        except BillingError:
            logger.exception("Webhook handler failed for %s", event.type, extra=context)
            outcome, affected = WebhookOutcome.FAILED, ()
        except Exception:
            # A verified delivery is always acknowledged; the receipt records the fault.
            logger.exception("Unexpected error handling %s", event.type, extra=context)
            outcome, affected = WebhookOutcome.FAILED, ()

        return WebhookReceipt(
            event_type=event.type,
            kind=event.kind,
            payload_style=event.payload_style,
            verified_with_secret=event.verified_with_secret,
            outcome=outcome,
            affected_ids=affected,
        )

    def verify(self, raw_body: Union[bytes, str], signature_header: Optional[str]) -> SigningSecret:
        """Return which secret signed the body, trying the primary secret first."""

        if not self._secrets:
            raise WebhookNotConfigured(message="Webhook secret not configured", detail={"webhook": self._name})
        if not signature_header:
            raise InvalidSignature(message="No signature provided")
        try:
            payload_text = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as exc:
            raise InvalidSignature(message="Webhook body is not valid UTF-8") from exc

        for label, secret in self._secrets:
            try:
                stripe.WebhookSignature.verify_header(payload_text, signature_header, secret, self._tolerance)
            except stripe.SignatureVerificationError:
                logger.debug("Signature did not match %s secret %s", self._name, label.value)
                continue
            return label

        logger.warning("Rejected %s webhook with invalid signature", self._name)
        raise InvalidSignature(message="Webhook signature verification failed")

    @staticmethod
    def parse_event(payload: Mapping[str, Any], verified_with: SigningSecret) -> InboundWebhookEvent:
        event_type = str(payload.get("type") or "")
        data = payload.get("data")
        data_object = data.get("object") if isinstance(data, Mapping) else None
        related = payload.get("related_object")

        if isinstance(data_object, Mapping):
            style = PayloadStyle.SNAPSHOT
            raw_object_id = data_object.get("id")
        elif isinstance(related, Mapping):
            style = PayloadStyle.THIN
            raw_object_id = related.get("id")
            data_object = None
        else:
            style = PayloadStyle.THIN
            raw_object_id = None
            data_object = None

        return InboundWebhookEvent(
            event_id=payload.get("id"),
            type=event_type,
            kind=WebhookEventKind.from_type(event_type),
            payload_style=style,
            verified_with_secret=verified_with,
            raw_object_id=raw_object_id,
            data_object=dict(data_object) if data_object is not None else None,
            account=payload.get("account") or payload.get("context"),
            created=_parse_created(payload.get("created")),
        )

    # Connected accounts ------------------------------------------------

    def _on_account_updated(self, event: InboundWebhookEvent) -> HandlerResult:
        account = self._load_account(event)
        if account is None:
            logger.info("Account event without an account id", extra={"event_id": event.event_id})
            return WebhookOutcome.UNCORRELATED, ()
        status = derive_account_status(
            charges_enabled=account.charges_enabled,
            payouts_enabled=account.payouts_enabled,
            details_submitted=account.details_submitted,
        )
        return self.apply_account_status(account.id, status)

    def _on_account_deauthorized(self, event: InboundWebhookEvent) -> HandlerResult:
        account_ref = event.account
        if not account_ref and event.data_object and event.data_object.get("object") == "account":
            account_ref = event.raw_object_id
        if not account_ref:
            logger.info("Deauthorization without a connected account", extra={"event_id": event.event_id})
            return WebhookOutcome.UNCORRELATED, ()
        return self.apply_account_status(account_ref, ConnectedAccountStatus.DISCONNECTED)

    def apply_account_status(self, account_ref: str, status: ConnectedAccountStatus) -> HandlerResult:
        partner: Optional[ConnectedAccount] = self._repository.find_partner_by_account(account_ref)
        if partner is None:
            logger.info("No partner for connected account %s", account_ref)
            return WebhookOutcome.UNCORRELATED, ()
        outcome = update_partner_status(
            self._repository, partner, status, max_attempts=self._max_attempts
        )
        return outcome, (partner.partner_id,)

    def _load_account(self, event: InboundWebhookEvent) -> Optional[GatewayAccount]:
        if event.payload_style == PayloadStyle.SNAPSHOT and event.data_object:
            return to_gateway_account(event.data_object)
        account_ref = event.raw_object_id or event.account
        if not account_ref:
            return None
        return self._gateway.retrieve_account(account_ref)

    # Transfers ---------------------------------------------------------

    def _on_transfer(self, event: InboundWebhookEvent) -> HandlerResult:
        transfer_ref = event.raw_object_id
        records = self._find_commissions(event, transfer_ref)
        if not records:
            logger.info(
                "Transfer %s matches no commission record",
                transfer_ref,
                extra={"event_id": event.event_id, "event_type": event.type},
            )
            return WebhookOutcome.UNCORRELATED, ()

        applied = False
        affected: List[str] = []
        for record in records:
            if self._transition_commission(record, event.kind, transfer_ref):
                applied = True
            affected.append(record.booking_id)
        return (WebhookOutcome.APPLIED if applied else WebhookOutcome.UNCHANGED), tuple(affected)

    def _find_commissions(self, event: InboundWebhookEvent, transfer_ref: Optional[str]) -> List[CommissionRecord]:
        booking_ids = booking_ids_from_metadata(event.metadata)
        if not booking_ids and transfer_ref:
            try:
                transfer = self._gateway.retrieve_transfer(transfer_ref)
            except BillingError:
                logger.warning(
                    "Could not fetch transfer %s to recover its metadata",
                    transfer_ref,
                    exc_info=True,
                )
            else:
                booking_ids = booking_ids_from_metadata(transfer.metadata)

        if booking_ids:
            records = [self._repository.get_commission(booking_id) for booking_id in booking_ids]
            found = [record for record in records if record is not None]
            if found:
                return found
        if transfer_ref:
            return self._repository.find_commissions_by_transfer(transfer_ref)
        return []

    def _transition_commission(
        self,
        record: CommissionRecord,
        kind: WebhookEventKind,
        transfer_ref: Optional[str],
    ) -> bool:
        current: Optional[CommissionRecord] = record
        for _ in range(self._max_attempts):
            if current is None:
                return False
            target = next_commission_status(current.commission_status, kind)
            if current.commission_status.is_terminal:
                # Status is frozen; only a missing transfer id may still be recorded.
                if current.external_transfer_ref or not transfer_ref:
                    logger.info(
                        "Commission %s already %s, ignoring %s",
                        current.booking_id,
                        current.commission_status.value,
                        kind.value,
                    )
                    return False
            elif target.value == current.stored_status and (
                not transfer_ref or current.external_transfer_ref == transfer_ref
            ):
                return False
            if self._repository.set_commission_status(current, target, transfer_ref=transfer_ref):
                logger.info(
                    "Commission %s %s -> %s",
                    current.booking_id,
                    current.stored_status,
                    target.value,
                    extra={"transfer_ref": transfer_ref},
                )
                # Backfilling the transfer id of a settled commission is not a transition.
                return not current.commission_status.is_terminal
            current = self._repository.get_commission(record.booking_id)

        logger.warning("Gave up updating commission %s after concurrent writes", record.booking_id)
        return False

    # Checkout sessions -------------------------------------------------

    def _checkout_session(self, event: InboundWebhookEvent) -> Optional[GatewayCheckoutSession]:
        if event.payload_style == PayloadStyle.SNAPSHOT and event.data_object:
            return to_gateway_checkout_session(event.data_object)
        if not event.raw_object_id:
            return None
        return self._gateway.retrieve_checkout_session(event.raw_object_id)

    def _on_checkout_completed(self, event: InboundWebhookEvent) -> HandlerResult:
        session = self._checkout_session(event)
        if session is None or session.metadata.get("type") != PLAN_CHANGE_CHECKOUT_TYPE:
            return WebhookOutcome.IGNORED, ()
        if self._pending_changes is None:
            logger.info("Plan change checkout %s received on %s webhook", session.id, self._name)
            return WebhookOutcome.IGNORED, ()
        self._pending_changes.commit_pending_change(session.id)
        return WebhookOutcome.APPLIED, (session.id,)

    def _on_checkout_expired(self, event: InboundWebhookEvent) -> HandlerResult:
        session = self._checkout_session(event)
        if session is None or session.metadata.get("type") != PLAN_CHANGE_CHECKOUT_TYPE:
            return WebhookOutcome.IGNORED, ()
        if self._pending_changes is None:
            return WebhookOutcome.IGNORED, ()
        if self._pending_changes.expire_pending_change(session.id):
            return WebhookOutcome.APPLIED, (session.id,)
        return WebhookOutcome.UNCHANGED, (session.id,)

    # Subscriptions -----------------------------------------------------

    def _on_subscription_changed(self, event: InboundWebhookEvent) -> HandlerResult:
        live: Optional[GatewaySubscription]
        if event.payload_style == PayloadStyle.SNAPSHOT and event.data_object:
            live = to_gateway_subscription(event.data_object)
        elif event.raw_object_id:
            live = self._gateway.retrieve_subscription(event.raw_object_id)
        else:
            live = None
        if live is None or not live.id:
            return WebhookOutcome.UNCORRELATED, ()

        record = self._repository.find_subscription_by_ref(live.id)
        if record is None:
            logger.info("No customer for subscription %s", live.id)
            return WebhookOutcome.UNCORRELATED, ()

        created = event.created or datetime.now(timezone.utc)
        event_created = int(created.timestamp())
        for _ in range(self._max_attempts):
            if record.gateway_status_at is not None and event_created < record.gateway_status_at:
                logger.info(
                    "Ignoring stale subscription event for %s",
                    live.id,
                    extra={"event_id": event.event_id},
                )
                return WebhookOutcome.UNCHANGED, (record.customer_id,)
            if self._repository.sync_gateway_state(
                record,
                gateway_status=live.status,
                event_created=event_created,
                billing_period_start=live.period_start,
                billing_period_end=live.period_end,
            ):
                return WebhookOutcome.APPLIED, (record.customer_id,)
            refreshed = self._repository.get_subscription(record.customer_id)
            if refreshed is None:
                return WebhookOutcome.UNCORRELATED, ()
            record = refreshed

        logger.warning("Gave up syncing subscription %s after concurrent writes", live.id)
        return WebhookOutcome.FAILED, (record.customer_id,)

    def _on_unknown(self, event: InboundWebhookEvent) -> HandlerResult:
        logger.info("Unhandled %s webhook event type: %s", self._name, event.type)
        return WebhookOutcome.IGNORED, ()


__all__ = [
    "PendingChangeHandler",
    "WebhookReconciler",
    "booking_ids_from_metadata",
]
