"""Billing records persisted in the document store."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from ..documents import DocumentStore, FieldFilter, StoredDocument, StoreUnavailableError, query_sorted
from ..plans import PlanId
from .errors import UpstreamUnavailable
from .models import (
    CommissionRecord,
    CommissionStatus,
    ConnectedAccount,
    ConnectedAccountStatus,
    PendingPlanChange,
    PendingPlanChangeStatus,
    Subscription,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)

USERS = "users"
PENDING_PLAN_CHANGES = "pendingPlanChanges"
PARTNER_BOOKINGS = "partnerBookings"
PARTNERS = "partners"

# Bookings written before the held status existed used "pending".
_LEGACY_COMMISSION_STATUSES = {"pending": CommissionStatus.HELD}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Ignoring unparseable stored date %r", value)
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    raise TypeError("Unsupported datetime value")


def _parse_optional_int(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _parse_plan(value: object) -> Optional[PlanId]:
    try:
        return PlanId(value) if value else None
    except ValueError:
        return None


def _parse_amount_cents(data: Mapping[str, Any]) -> int:
    if data.get("partnerShareAmountCents") is not None:
        return int(data["partnerShareAmountCents"])
    try:
        dollars = Decimal(str(data.get("partnerShareAmount") or 0))
    except InvalidOperation:
        return 0
    return int((dollars * 100).to_integral_value())


def parse_commission_status(value: object) -> CommissionStatus:
    if isinstance(value, str):
        if value in _LEGACY_COMMISSION_STATUSES:
            return _LEGACY_COMMISSION_STATUSES[value]
        try:
            return CommissionStatus(value)
        except ValueError:
            logger.warning("Unknown commission status %r treated as held", value)
    return CommissionStatus.HELD


def _doc_to_subscription(customer_id: str, data: Mapping[str, Any]) -> Subscription:
    raw_status = data.get("subscriptionStatus")
    try:
        status = SubscriptionStatus(raw_status) if raw_status else SubscriptionStatus.NONE
    except ValueError:
        status = SubscriptionStatus.ACTIVE if data.get("stripeSubscriptionId") else SubscriptionStatus.NONE
    return Subscription(
        customer_id=customer_id,
        current_plan_id=_parse_plan(data.get("selectedPlan")),
        status=status,
        external_subscription_ref=data.get("stripeSubscriptionId") or None,
        external_customer_ref=data.get("stripeCustomerId") or None,
        billing_period_start=_parse_optional_datetime(data.get("billingPeriodStart")),
        billing_period_end=_parse_optional_datetime(data.get("billingPeriodEnd")),
        plan_version=_parse_optional_int(data.get("planVersion")),
        pending_plan_change_id=data.get("pendingPlanChangeId") or None,
        gateway_status=data.get("gatewayStatus"),
        gateway_status_at=_parse_optional_int(data.get("gatewayStatusAt")),
    )


def _doc_to_pending_change(doc_id: str, data: Mapping[str, Any]) -> PendingPlanChange:
    return PendingPlanChange(
        checkout_session_ref=doc_id,
        customer_id=data["customerId"],
        subscription_id=data["subscriptionId"],
        current_plan_id=PlanId(data["currentPlanId"]),
        target_plan_id=PlanId(data["targetPlanId"]),
        amount_due_cents=int(data.get("amountDueCents") or 0),
        reserved_plan_version=int(data.get("reservedPlanVersion") or 0),
        status=PendingPlanChangeStatus(data.get("status") or PendingPlanChangeStatus.PENDING.value),
        checkout_url=data.get("checkoutUrl"),
        expires_at=_parse_optional_datetime(data.get("expiresAt")),
        created_at=_parse_optional_datetime(data.get("createdAt")) or _utcnow(),
    )


def _doc_to_commission(doc_id: str, data: Mapping[str, Any]) -> CommissionRecord:
    return CommissionRecord(
        booking_id=doc_id,
        partner_id=data.get("partnerId"),
        amount_cents=_parse_amount_cents(data),
        commission_status=parse_commission_status(data.get("commissionStatus")),
        external_transfer_ref=data.get("stripeTransferId") or None,
        created_at=_parse_optional_datetime(data.get("createdAt")),
        stored_status=data.get("commissionStatus"),
    )


def _doc_to_account(doc_id: str, data: Mapping[str, Any]) -> ConnectedAccount:
    raw_status = data.get("stripeConnectStatus")
    try:
        status = ConnectedAccountStatus(raw_status) if raw_status else None
    except ValueError:
        status = None
    return ConnectedAccount(
        partner_id=doc_id,
        external_account_ref=data.get("stripeConnectedAccountId") or None,
        status=status,
        stored_status=raw_status,
    )


@contextmanager
def translate_store_errors(operation: str, collection: str) -> Iterator[None]:
    try:
        yield
    except StoreUnavailableError as exc:
        raise UpstreamUnavailable(
            message="Document store is unavailable, please retry",
            detail={"operation": operation, "collection": collection},
        ) from exc


class _GuardedStore:
    """Reports store outages as :class:`UpstreamUnavailable`."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with translate_store_errors("get", collection):
            return self._store.get(collection, doc_id)

    def create(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        with translate_store_errors("create", collection):
            self._store.create(collection, doc_id, data)

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        precondition: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        with translate_store_errors("update", collection):
            return self._store.update(collection, doc_id, fields, precondition=precondition)

    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        with translate_store_errors("query", collection):
            return self._store.query(
                collection,
                filters,
                order_by=order_by,
                descending=descending,
                limit=limit,
            )


class BillingRepository:
    """Reads and conditionally writes billing records.

    Every write that must not lose a concurrent update takes an explicit
    precondition and reports ``False`` when the stored record moved on.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = _GuardedStore(store)

    # Subscriptions -----------------------------------------------------

    def get_subscription(self, customer_id: str) -> Optional[Subscription]:
        data = self._store.get(USERS, customer_id)
        return _doc_to_subscription(customer_id, data) if data is not None else None

    def find_subscription_by_ref(self, subscription_ref: str) -> Optional[Subscription]:
        documents = self._store.query(
            USERS,
            [FieldFilter("stripeSubscriptionId", "==", subscription_ref)],
            limit=1,
        )
        if not documents:
            return None
        return _doc_to_subscription(documents[0].id, documents[0].data)

    def reserve_plan_change(self, subscription: Subscription) -> Optional[int]:
        """Bump the plan version if nobody changed the plan since ``subscription`` was read.

        Returns the reserved version, or ``None`` when another change won the race.
        """

        reserved = (subscription.plan_version or 0) + 1
        updated = self._store.update(
            USERS,
            subscription.customer_id,
            {"planVersion": reserved, "updatedAt": _utcnow()},
            precondition={
                "selectedPlan": subscription.current_plan_id.value if subscription.current_plan_id else None,
                "planVersion": subscription.plan_version,
            },
        )
        return reserved if updated else None

    def commit_plan(
        self,
        customer_id: str,
        *,
        plan_id: PlanId,
        reserved_version: int,
        subscription_ref: Optional[str] = None,
        billing_period_start: Optional[datetime] = None,
        billing_period_end: Optional[datetime] = None,
        pending_plan_change_id: Optional[str] = None,
    ) -> bool:
        """Point the customer at ``plan_id`` if the reservation is still theirs.

        A ``pending_plan_change_id`` makes the commit also require that the
        record still references that pending change.
        """

        fields: Dict[str, Any] = {
            "selectedPlan": plan_id.value,
            "subscriptionStatus": SubscriptionStatus.ACTIVE.value,
            "pendingPlanChangeId": None,
            "planVersion": reserved_version,
            "updatedAt": _utcnow(),
        }
        if subscription_ref:
            fields["stripeSubscriptionId"] = subscription_ref
        if billing_period_start is not None:
            fields["billingPeriodStart"] = billing_period_start
        if billing_period_end is not None:
            fields["billingPeriodEnd"] = billing_period_end
        precondition: Dict[str, Any] = {"planVersion": reserved_version}
        if pending_plan_change_id is not None:
            precondition["pendingPlanChangeId"] = pending_plan_change_id
        return self._store.update(USERS, customer_id, fields, precondition=precondition)

    def mark_payment_pending(self, customer_id: str, *, reserved_version: int, checkout_ref: str) -> bool:
        return self._store.update(
            USERS,
            customer_id,
            {
                "subscriptionStatus": SubscriptionStatus.PENDING_PAYMENT_CHANGE.value,
                "pendingPlanChangeId": checkout_ref,
                "updatedAt": _utcnow(),
            },
            precondition={"planVersion": reserved_version},
        )

    def clear_payment_pending(self, customer_id: str, *, checkout_ref: str) -> bool:
        return self._store.update(
            USERS,
            customer_id,
            {
                "subscriptionStatus": SubscriptionStatus.ACTIVE.value,
                "pendingPlanChangeId": None,
                "updatedAt": _utcnow(),
            },
            precondition={"pendingPlanChangeId": checkout_ref},
        )

    def sync_gateway_state(
        self,
        subscription: Subscription,
        *,
        gateway_status: Optional[str],
        event_created: int,
        billing_period_start: Optional[datetime],
        billing_period_end: Optional[datetime],
    ) -> bool:
        fields: Dict[str, Any] = {
            "gatewayStatus": gateway_status,
            "gatewayStatusAt": event_created,
            "updatedAt": _utcnow(),
        }
        if billing_period_start is not None:
            fields["billingPeriodStart"] = billing_period_start
        if billing_period_end is not None:
            fields["billingPeriodEnd"] = billing_period_end
        return self._store.update(
            USERS,
            subscription.customer_id,
            fields,
            precondition={"gatewayStatusAt": subscription.gateway_status_at},
        )

    # Pending plan changes ----------------------------------------------

    def create_pending_change(self, change: PendingPlanChange) -> PendingPlanChange:
        self._store.create(
            PENDING_PLAN_CHANGES,
            change.checkout_session_ref,
            {
                "customerId": change.customer_id,
                "subscriptionId": change.subscription_id,
                "currentPlanId": change.current_plan_id.value,
                "targetPlanId": change.target_plan_id.value,
                "amountDueCents": change.amount_due_cents,
                "reservedPlanVersion": change.reserved_plan_version,
                "status": change.status.value,
                "checkoutUrl": change.checkout_url,
                "expiresAt": change.expires_at,
                "createdAt": change.created_at,
            },
        )
        return change

    def get_pending_change(self, checkout_ref: str) -> Optional[PendingPlanChange]:
        data = self._store.get(PENDING_PLAN_CHANGES, checkout_ref)
        return _doc_to_pending_change(checkout_ref, data) if data is not None else None

    def transition_pending_change(
        self,
        checkout_ref: str,
        *,
        from_status: PendingPlanChangeStatus,
        to_status: PendingPlanChangeStatus,
    ) -> bool:
        return self._store.update(
            PENDING_PLAN_CHANGES,
            checkout_ref,
            {"status": to_status.value, "updatedAt": _utcnow()},
            precondition={"status": from_status.value},
        )

    # Commissions -------------------------------------------------------

    def get_commission(self, booking_id: str) -> Optional[CommissionRecord]:
        data = self._store.get(PARTNER_BOOKINGS, booking_id)
        return _doc_to_commission(booking_id, data) if data is not None else None

    def find_commissions_by_transfer(self, transfer_ref: str) -> List[CommissionRecord]:
        documents = query_sorted(
            self._store,
            PARTNER_BOOKINGS,
            [FieldFilter("stripeTransferId", "==", transfer_ref)],
            order_by="createdAt",
        )
        return [_doc_to_commission(document.id, document.data) for document in documents]

    def set_commission_status(
        self,
        record: CommissionRecord,
        status: CommissionStatus,
        *,
        transfer_ref: Optional[str],
    ) -> bool:
        fields: Dict[str, Any] = {"commissionStatus": status.value, "updatedAt": _utcnow()}
        if transfer_ref:
            fields["stripeTransferId"] = transfer_ref
        return self._store.update(
            PARTNER_BOOKINGS,
            record.booking_id,
            fields,
            precondition={"commissionStatus": record.stored_status},
        )

    # Connected accounts ------------------------------------------------

    def get_partner_account(self, partner_id: str) -> Optional[ConnectedAccount]:
        data = self._store.get(PARTNERS, partner_id)
        return _doc_to_account(partner_id, data) if data is not None else None

    def find_partner_by_account(self, account_ref: str) -> Optional[ConnectedAccount]:
        documents = query_sorted(
            self._store,
            PARTNERS,
            [FieldFilter("stripeConnectedAccountId", "==", account_ref)],
            order_by="updatedAt",
            descending=True,
            limit=1,
        )
        if not documents:
            return None
        return _doc_to_account(documents[0].id, documents[0].data)

    def set_account_status(self, account: ConnectedAccount, status: ConnectedAccountStatus) -> bool:
        return self._store.update(
            PARTNERS,
            account.partner_id,
            {"stripeConnectStatus": status.value, "updatedAt": _utcnow()},
            precondition={"stripeConnectStatus": account.stored_status},
        )


__all__ = [
    "BillingRepository",
    "PARTNERS",
    "PARTNER_BOOKINGS",
    "PENDING_PLAN_CHANGES",
    "USERS",
    "parse_commission_status",
]
