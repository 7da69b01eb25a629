"""Plan catalog package describing the service plans customers can buy."""

from .catalog import PLAN_CATALOG, find_plan_definition, get_plan_definition
from .models import BillingInterval, PlanDefinition, PlanId

__all__ = [
    "BillingInterval",
    "PLAN_CATALOG",
    "PlanDefinition",
    "PlanId",
    "find_plan_definition",
    "get_plan_definition",
]
