"""Day-based proration between two plans over a billing window."""
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Optional

from ..plans import BillingInterval, PlanDefinition
from .models import ProrationQuote

SECONDS_PER_DAY = Decimal(86400)
YEAR_BASIS_DAYS = 365
MONTH_BASIS_DAYS = 30


def round_cents(amount: Decimal) -> int:
    """Round a fractional cent amount half-up to whole cents."""

    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def ceil_days(start: datetime, end: datetime) -> int:
    """Whole days between two instants, rounding partial days up and never negative."""

    seconds = Decimal(str((end - start).total_seconds()))
    if seconds <= 0:
        return 0
    return int((seconds / SECONDS_PER_DAY).to_integral_value(rounding=ROUND_CEILING))


def period_basis_days(plan: PlanDefinition, total_days: int) -> int:
    if plan.billing_interval == BillingInterval.YEAR:
        return YEAR_BASIS_DAYS
    if plan.billing_interval == BillingInterval.MONTH:
        return MONTH_BASIS_DAYS
    return total_days


def calculate_proration(
    current_plan: PlanDefinition,
    new_plan: PlanDefinition,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    *,
    current_unit_amount: Optional[int] = None,
    new_unit_amount: Optional[int] = None,
) -> ProrationQuote:
    """Quote the cost of moving from ``current_plan`` to ``new_plan`` at ``now``.

    Plans are ranked by monthly-equivalent price. An upgrade charges the
    difference between the gateway unit prices (``current_unit_amount`` and
    ``new_unit_amount``, falling back to catalog prices) for the days left,
    measured against a 365 day year or 30 day month for the new plan's
    interval. A downgrade or equal price owes nothing; the informational
    credit values the remaining days at the new plan's monthly rate.
    """

    total_days = ceil_days(period_start, period_end)
    days_remaining = ceil_days(now, period_end)

    current_monthly = current_plan.monthly_equivalent_cents
    new_monthly = new_plan.monthly_equivalent_cents
    is_upgrade = new_monthly > current_monthly

    owed = 0
    credit = 0
    if is_upgrade:
        current_unit = current_unit_amount if current_unit_amount is not None else current_plan.price_cents
        new_unit = new_unit_amount if new_unit_amount is not None else new_plan.price_cents
        basis = period_basis_days(new_plan, total_days)
        if basis > 0:
            delta = Decimal(new_unit - current_unit) * days_remaining / basis
            owed = max(0, round_cents(delta))
    elif total_days > 0:
        credit = max(0, round_cents(new_monthly / total_days * days_remaining))

    return ProrationQuote(
        current_monthly_price=round_cents(current_monthly),
        new_monthly_price=round_cents(new_monthly),
        days_remaining=days_remaining,
        total_days_in_period=total_days,
        is_upgrade=is_upgrade,
        prorated_amount_owed=owed,
        prorated_credit=credit,
    )


def conversion_quote(current_plan: PlanDefinition, new_plan: PlanDefinition) -> ProrationQuote:
    """Quote for converting a one-time customer: no billing period, nothing owed."""

    return ProrationQuote(
        current_monthly_price=round_cents(current_plan.monthly_equivalent_cents),
        new_monthly_price=round_cents(new_plan.monthly_equivalent_cents),
        days_remaining=0,
        total_days_in_period=0,
        is_upgrade=new_plan.monthly_equivalent_cents > current_plan.monthly_equivalent_cents,
    )
