"""Plan tiers and the resolver mapping accounts onto them."""

from .catalog import DEFAULT_PAID_TIER, PLAN_CATALOG, PlanDefinition, get_plan_definition, tier_for_product
from .resolver import PlanResolution, PlanResolver

__all__ = [
    "DEFAULT_PAID_TIER",
    "PLAN_CATALOG",
    "PlanDefinition",
    "PlanResolution",
    "PlanResolver",
    "get_plan_definition",
    "tier_for_product",
]
