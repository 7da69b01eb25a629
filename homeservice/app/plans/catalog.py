"""Static catalog definitions for service plans."""
from __future__ import annotations

from typing import Dict

from .models import BillingInterval, PlanDefinition, PlanId


PLAN_CATALOG: Dict[PlanId, PlanDefinition] = {
    PlanId.ONE_TIME: PlanDefinition(
        id=PlanId.ONE_TIME,
        display_name="One-Time Blast",
        price_cents=3500,
        billing_interval=BillingInterval.ONE_TIME,
        is_recurring=False,
    ),
    PlanId.TWICE_MONTH: PlanDefinition(
        id=PlanId.TWICE_MONTH,
        display_name="Bi-Weekly Clean (2x/Month)",
        price_cents=6500,
        billing_interval=BillingInterval.MONTH,
        is_recurring=True,
    ),
    PlanId.BI_MONTHLY: PlanDefinition(
        id=PlanId.BI_MONTHLY,
        display_name="Bi-Monthly Plan - Yearly Package",
        price_cents=21000,
        billing_interval=BillingInterval.YEAR,
        is_recurring=True,
    ),
    PlanId.QUARTERLY: PlanDefinition(
        id=PlanId.QUARTERLY,
        display_name="Quarterly Plan - Yearly Package",
        price_cents=16000,
        billing_interval=BillingInterval.YEAR,
        is_recurring=True,
    ),
    PlanId.COMMERCIAL: PlanDefinition(
        id=PlanId.COMMERCIAL,
        display_name="Commercial & HOA Plans",
        price_cents=0,
        billing_interval=BillingInterval.MONTH,
        is_recurring=False,
        custom_quote=True,
    ),
}


def get_plan_definition(plan_id: PlanId | str) -> PlanDefinition:
    """Return a plan definition, raising ``KeyError`` if the id is unknown."""

    try:
        return PLAN_CATALOG[PlanId(plan_id)]
    except (KeyError, ValueError) as exc:
        raise KeyError(f"Unknown plan id: {plan_id}") from exc


def find_plan_definition(plan_id: object) -> PlanDefinition | None:
    if not plan_id:
        return None
    try:
        return get_plan_definition(plan_id)  # type: ignore[arg-type]
    except KeyError:
        return None
