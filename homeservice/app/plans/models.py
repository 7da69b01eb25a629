"""Domain models for the plan catalog."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class PlanId(str, Enum):
    """Canonical identifiers for service plans."""

    ONE_TIME = "one-time"
    TWICE_MONTH = "twice-month"
    BI_MONTHLY = "bi-monthly"
    QUARTERLY = "quarterly"
    COMMERCIAL = "commercial"


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    ONE_TIME = "one-time"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a plan and how it is billed.

    Prices are stored in cents. ``custom_quote`` plans are priced offline and
    can neither be selected nor changed from through self-service.
    """

    id: PlanId
    display_name: str
    price_cents: int
    billing_interval: BillingInterval
    is_recurring: bool
    custom_quote: bool = False

    @property
    def monthly_equivalent_cents(self) -> Decimal:
        """Price normalized to one month, used to rank plans against each other."""

        if self.billing_interval == BillingInterval.YEAR:
            return Decimal(self.price_cents) / 12
        return Decimal(self.price_cents)

    @property
    def is_changeable(self) -> bool:
        return not self.custom_quote

    @property
    def gateway_interval(self) -> str | None:
        """Recurring interval understood by the payment gateway, if any."""

        if not self.is_recurring:
            return None
        return self.billing_interval.value
