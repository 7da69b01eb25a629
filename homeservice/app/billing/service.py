"""Plan change orchestration across the payment gateway and the document store."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Union

from ..plans import PlanDefinition, PlanId, find_plan_definition, get_plan_definition
from .errors import BillingError, InvalidInput, InvalidPlan, NotFound, PlanChangeConflict
from .gateway import GatewaySubscription, PaymentGateway
from .models import (
    BillingPeriod,
    CommittedPlanChange,
    PaymentRequiredPlanChange,
    PendingPlanChange,
    PendingPlanChangeStatus,
    ProrationQuote,
    Subscription,
)
from .proration import calculate_proration, conversion_quote
from .repository import BillingRepository

logger = logging.getLogger(__name__)

PLAN_CHANGE_CHECKOUT_TYPE = "plan_change"

PlanChangeResult = Union[CommittedPlanChange, PaymentRequiredPlanChange]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_target_plan(plan_id: object) -> PlanDefinition:
    plan = find_plan_definition(plan_id)
    if plan is None:
        raise InvalidPlan(message=f"Unknown plan: {plan_id}", detail={"planId": str(plan_id)})
    if not plan.is_changeable or not plan.is_recurring:
        raise InvalidPlan(
            message=f"Plan {plan.id.value} cannot be selected through a plan change",
            detail={"planId": plan.id.value},
        )
    return plan


@dataclass
class PlanChangeService:
    """Moves customers between plans without ever committing an unpaid upgrade.

    Downgrades and zero-cost changes are applied at the gateway and committed
    immediately. Upgrades that owe a prorated amount open a one-time checkout
    and leave the current plan untouched until :meth:`commit_pending_change`
    observes the payment.
    """

    repository: BillingRepository
    gateway: PaymentGateway
    success_url: str
    cancel_url: str
    checkout_expiry: timedelta = timedelta(minutes=30)
    clock: Callable[[], datetime] = _utcnow

    def request_plan_change(
        self,
        customer_id: str,
        new_plan_id: object,
        subscription_ref: Optional[str] = None,
    ) -> PlanChangeResult:
        if not customer_id:
            raise InvalidInput(message="customerId is required")
        if not new_plan_id:
            raise InvalidInput(message="newPlanId is required")
        new_plan = _require_target_plan(new_plan_id)

        subscription = self.repository.get_subscription(customer_id)
        if subscription is None:
            raise NotFound(message="Customer not found", detail={"customerId": customer_id})
        if subscription.current_plan_id == PlanId.COMMERCIAL:
            raise InvalidInput(message="Custom quote plans cannot be changed online")

        now = self.clock()
        self._ensure_no_open_pending_change(subscription, now)

        stored_ref = subscription.external_subscription_ref
        if subscription_ref and stored_ref and subscription_ref != stored_ref:
            raise InvalidInput(
                message="Subscription does not belong to this customer",
                detail={"subscriptionRef": subscription_ref},
            )
        subscription_ref = subscription_ref or stored_ref

        if not subscription_ref:
            current_plan_id = subscription.current_plan_id or PlanId.ONE_TIME
            if current_plan_id != PlanId.ONE_TIME:
                raise InvalidInput(message="No active subscription found. Cannot change plan.")
            return self._convert_one_time(subscription, new_plan)
        return self._change_recurring(subscription, subscription_ref, new_plan, now)

    def commit_pending_change(
        self,
        checkout_session_ref: str,
        *,
        customer_id: Optional[str] = None,
        new_plan_id: Optional[str] = None,
        subscription_ref: Optional[str] = None,
    ) -> CommittedPlanChange:
        """Apply a paid upgrade. Safe to call repeatedly for the same checkout."""

        if not checkout_session_ref:
            raise InvalidInput(message="checkoutSessionId is required")
        pending = self.repository.get_pending_change(checkout_session_ref)
        if pending is None:
            raise NotFound(
                message="Pending plan change not found",
                detail={"checkoutSessionId": checkout_session_ref},
            )
        expected = {
            "customerId": (customer_id, pending.customer_id),
            "newPlanId": (new_plan_id, pending.target_plan_id.value),
            "subscriptionId": (subscription_ref, pending.subscription_id),
        }
        mismatched = [key for key, (given, stored) in expected.items() if given and given != stored]
        if mismatched:
            raise InvalidInput(
                message="Checkout session does not match the requested plan change",
                detail={"fields": mismatched},
            )

        if pending.status == PendingPlanChangeStatus.COMPLETED:
            return self._committed_from_pending(pending)
        if pending.status == PendingPlanChangeStatus.EXPIRED:
            raise PlanChangeConflict(
                message="Plan change is no longer pending",
                detail={"checkoutSessionId": checkout_session_ref},
            )

        session = self.gateway.retrieve_checkout_session(checkout_session_ref)
        if not session.is_paid:
            raise InvalidInput(
                message="Payment not completed",
                detail={"checkoutSessionId": checkout_session_ref},
            )
        session_mismatch = [
            key
            for key, value in (
                ("customerId", pending.customer_id),
                ("newPlanId", pending.target_plan_id.value),
                ("subscriptionId", pending.subscription_id),
            )
            if session.metadata.get(key) != value
        ]
        if session_mismatch:
            raise InvalidInput(
                message="Checkout session metadata does not match the pending plan change",
                detail={"fields": session_mismatch},
            )

        claimed = self.repository.transition_pending_change(
            checkout_session_ref,
            from_status=PendingPlanChangeStatus.PENDING,
            to_status=PendingPlanChangeStatus.COMPLETED,
        )
        if not claimed:
            current = self.repository.get_pending_change(checkout_session_ref)
            if current is not None and current.status == PendingPlanChangeStatus.COMPLETED:
                return self._committed_from_pending(current)
            raise PlanChangeConflict(message="Plan change is no longer pending")

        target_plan = get_plan_definition(pending.target_plan_id)
        try:
            live = self.gateway.retrieve_subscription(pending.subscription_id)
            if not live.item_id:
                raise InvalidInput(message="No subscription items found")
            price = self.gateway.resolve_price(target_plan)
            updated = self.gateway.update_subscription_item(
                pending.subscription_id,
                item_id=live.item_id,
                price=price,
                proration_behavior="none",
                metadata={"planId": target_plan.id.value},
            )
        except BillingError:
            self._release_claim(checkout_session_ref)
            raise

        committed = self.repository.commit_plan(
            pending.customer_id,
            plan_id=target_plan.id,
            reserved_version=pending.reserved_plan_version,
            subscription_ref=updated.id,
            billing_period_start=updated.period_start,
            billing_period_end=updated.period_end,
            pending_plan_change_id=checkout_session_ref,
        )
        if not committed:
            logger.error(
                "Gateway subscription moved to %s but the customer record changed meanwhile",
                target_plan.id.value,
                extra={"customer_id": pending.customer_id, "checkout_ref": checkout_session_ref},
            )
            raise PlanChangeConflict(message="Subscription changed while the upgrade was being applied")

        logger.info(
            "Committed paid upgrade %s -> %s",
            pending.current_plan_id.value,
            target_plan.id.value,
            extra={"customer_id": pending.customer_id, "checkout_ref": checkout_session_ref},
        )
        return CommittedPlanChange(subscription_ref=updated.id, plan_id=target_plan.id)

    def expire_pending_change(self, checkout_session_ref: str) -> bool:
        """Abandon an unpaid upgrade and return the subscription to active."""

        pending = self.repository.get_pending_change(checkout_session_ref)
        if pending is None:
            return False
        expired = self.repository.transition_pending_change(
            checkout_session_ref,
            from_status=PendingPlanChangeStatus.PENDING,
            to_status=PendingPlanChangeStatus.EXPIRED,
        )
        if expired or pending.status == PendingPlanChangeStatus.EXPIRED:
            # The customer record may still point at a change that lapsed earlier.
            self.repository.clear_payment_pending(pending.customer_id, checkout_ref=checkout_session_ref)
        if expired:
            logger.info(
                "Expired pending plan change",
                extra={"customer_id": pending.customer_id, "checkout_ref": checkout_session_ref},
            )
        return expired

    def get_billing_period(self, subscription_ref: str) -> BillingPeriod:
        if not subscription_ref:
            raise InvalidInput(message="subscriptionRef is required")
        live = self.gateway.retrieve_subscription(subscription_ref)
        return BillingPeriod(subscription_ref=live.id, start=live.period_start, end=live.period_end)

    def _ensure_no_open_pending_change(self, subscription: Subscription, now: datetime) -> None:
        if not subscription.pending_plan_change_id:
            return
        pending = self.repository.get_pending_change(subscription.pending_plan_change_id)
        if pending is None:
            return
        if pending.is_open(now):
            raise PlanChangeConflict(
                message="A plan change is already awaiting payment",
                detail={"checkoutRef": pending.checkout_session_ref},
            )
        if pending.status != PendingPlanChangeStatus.COMPLETED:
            # Checkout lifetime elapsed without an expiry notification.
            self.expire_pending_change(pending.checkout_session_ref)

    def _reserve(self, subscription: Subscription) -> int:
        reserved = self.repository.reserve_plan_change(subscription)
        if reserved is None:
            raise PlanChangeConflict(
                message="Subscription was changed by another request",
                detail={"customerId": subscription.customer_id},
            )
        return reserved

    def _convert_one_time(self, subscription: Subscription, new_plan: PlanDefinition) -> CommittedPlanChange:
        if not subscription.external_customer_ref:
            raise InvalidInput(message="No payment customer on file for this account")
        current_plan = get_plan_definition(PlanId.ONE_TIME)
        reserved = self._reserve(subscription)

        price = self.gateway.resolve_price(new_plan)
        created = self.gateway.create_subscription(
            customer_ref=subscription.external_customer_ref,
            price=price,
            metadata={
                "planId": new_plan.id.value,
                "convertedFromOneTime": "true",
                "customerId": subscription.customer_id,
            },
        )
        committed = self.repository.commit_plan(
            subscription.customer_id,
            plan_id=new_plan.id,
            reserved_version=reserved,
            subscription_ref=created.id,
            billing_period_start=created.period_start,
            billing_period_end=created.period_end,
        )
        if not committed:
            logger.error(
                "Created gateway subscription %s but the customer record changed meanwhile",
                created.id,
                extra={"customer_id": subscription.customer_id},
            )
            raise PlanChangeConflict(message="Subscription was changed by another request")

        logger.info(
            "Converted one-time customer to %s",
            new_plan.id.value,
            extra={"customer_id": subscription.customer_id, "subscription_ref": created.id},
        )
        return CommittedPlanChange(
            subscription_ref=created.id,
            plan_id=new_plan.id,
            converted=True,
            quote=conversion_quote(current_plan, new_plan),
        )

    def _change_recurring(
        self,
        subscription: Subscription,
        subscription_ref: str,
        new_plan: PlanDefinition,
        now: datetime,
    ) -> PlanChangeResult:
        reserved = self._reserve(subscription)

        live = self.gateway.retrieve_subscription(subscription_ref)
        if live.customer and subscription.external_customer_ref and live.customer != subscription.external_customer_ref:
            raise InvalidInput(
                message="Subscription does not belong to this customer",
                detail={"subscriptionRef": subscription_ref},
            )
        if not live.item_id:
            raise InvalidInput(message="No subscription items found")
        current_plan = self._current_plan(subscription, live)
        if not current_plan.is_changeable:
            raise InvalidInput(message="Custom quote plans cannot be changed online")

        period_start = live.period_start or subscription.billing_period_start
        period_end = live.period_end or subscription.billing_period_end
        if period_start is None or period_end is None:
            raise InvalidInput(message="Subscription has no billing period")

        new_price = self.gateway.resolve_price(new_plan)
        quote = calculate_proration(
            current_plan,
            new_plan,
            period_start,
            period_end,
            now,
            current_unit_amount=live.unit_amount,
            new_unit_amount=new_price.unit_amount,
        )
        context: Dict[str, object] = {
            "customer_id": subscription.customer_id,
            "subscription_ref": subscription_ref,
        }

        if quote.requires_payment:
            return self._open_upgrade_checkout(
                subscription, live, current_plan, new_plan, quote, reserved, now, context
            )

        updated = self.gateway.update_subscription_item(
            subscription_ref,
            item_id=live.item_id,
            price=new_price,
            proration_behavior="always_invoice",
            metadata={"planId": new_plan.id.value},
        )
        committed = self.repository.commit_plan(
            subscription.customer_id,
            plan_id=new_plan.id,
            reserved_version=reserved,
            subscription_ref=updated.id,
            billing_period_start=updated.period_start,
            billing_period_end=updated.period_end,
        )
        if not committed:
            logger.error("Gateway plan updated but the customer record changed meanwhile", extra=context)
            raise PlanChangeConflict(message="Subscription was changed by another request")

        logger.info("Changed plan %s -> %s", current_plan.id.value, new_plan.id.value, extra=context)
        return CommittedPlanChange(subscription_ref=updated.id, plan_id=new_plan.id, quote=quote)

    def _open_upgrade_checkout(
        self,
        subscription: Subscription,
        live: GatewaySubscription,
        current_plan: PlanDefinition,
        new_plan: PlanDefinition,
        quote: ProrationQuote,
        reserved: int,
        now: datetime,
        context: Dict[str, object],
    ) -> PaymentRequiredPlanChange:
        amount = quote.prorated_amount_owed
        session = self.gateway.create_checkout_session(
            customer_ref=subscription.external_customer_ref or live.customer,
            amount_cents=amount,
            description=f"Upgrade to {new_plan.display_name} (prorated)",
            metadata={
                "type": PLAN_CHANGE_CHECKOUT_TYPE,
                "customerId": subscription.customer_id,
                "subscriptionId": live.id,
                "currentPlanId": current_plan.id.value,
                "newPlanId": new_plan.id.value,
            },
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            expires_at=self.clock() + self.checkout_expiry,
        )
        pending = self.repository.create_pending_change(
            PendingPlanChange(
                checkout_session_ref=session.id,
                customer_id=subscription.customer_id,
                subscription_id=live.id,
                current_plan_id=current_plan.id,
                target_plan_id=new_plan.id,
                amount_due_cents=amount,
                reserved_plan_version=reserved,
                checkout_url=session.url,
                expires_at=session.expires_at or now + self.checkout_expiry,
                created_at=now,
            )
        )
        marked = self.repository.mark_payment_pending(
            subscription.customer_id,
            reserved_version=reserved,
            checkout_ref=session.id,
        )
        if not marked:
            self.repository.transition_pending_change(
                session.id,
                from_status=PendingPlanChangeStatus.PENDING,
                to_status=PendingPlanChangeStatus.EXPIRED,
            )
            raise PlanChangeConflict(message="Subscription was changed by another request")

        logger.info(
            "Upgrade %s -> %s awaiting payment of %s cents",
            current_plan.id.value,
            new_plan.id.value,
            amount,
            extra={**context, "checkout_ref": session.id},
        )
        return PaymentRequiredPlanChange(
            checkout_ref=pending.checkout_session_ref,
            checkout_url=pending.checkout_url,
            amount_due_cents=amount,
            quote=quote,
        )

    def _current_plan(self, subscription: Subscription, live: GatewaySubscription) -> PlanDefinition:
        plan = find_plan_definition(live.metadata.get("planId"))
        if plan is None:
            plan = find_plan_definition(subscription.current_plan_id)
        return plan or get_plan_definition(PlanId.ONE_TIME)

    def _committed_from_pending(self, pending: PendingPlanChange) -> CommittedPlanChange:
        return CommittedPlanChange(subscription_ref=pending.subscription_id, plan_id=pending.target_plan_id)

    def _release_claim(self, checkout_session_ref: str) -> None:
        try:
            self.repository.transition_pending_change(
                checkout_session_ref,
                from_status=PendingPlanChangeStatus.COMPLETED,
                to_status=PendingPlanChangeStatus.PENDING,
            )
        except Exception:
            logger.exception("Failed to release plan change claim", extra={"checkout_ref": checkout_session_ref})


__all__ = ["PLAN_CHANGE_CHECKOUT_TYPE", "PlanChangeResult", "PlanChangeService"]
