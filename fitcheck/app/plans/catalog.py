"""Static catalog definitions for plan tiers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from ..ledger.models import PlanTier


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a plan tier and the credit rules attached to it."""

    tier: PlanTier
    display_name: str
    period_grant: int
    max_batch_size: int
    unlimited: bool = False

    @property
    def is_paid(self) -> bool:
        return self.tier != PlanTier.FREE


PLAN_CATALOG: Dict[PlanTier, PlanDefinition] = {
    PlanTier.FREE: PlanDefinition(
        tier=PlanTier.FREE,
        display_name="Free",
        period_grant=10,
        max_batch_size=1,
    ),
    PlanTier.PRO: PlanDefinition(
        tier=PlanTier.PRO,
        display_name="Pro",
        period_grant=100,
        max_batch_size=4,
    ),
    PlanTier.UNLIMITED: PlanDefinition(
        tier=PlanTier.UNLIMITED,
        display_name="Unlimited",
        period_grant=0,
        max_batch_size=4,
        unlimited=True,
    ),
}

DEFAULT_PAID_TIER = PlanTier.PRO


def get_plan_definition(tier: PlanTier) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    try:
        return PLAN_CATALOG[tier]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown plan tier: {tier}") from exc


def tier_for_product(product_id: Optional[str], product_tiers: Dict[str, str]) -> PlanTier:
    """Map a billing product id onto a paid tier."""

    if product_id and product_id in product_tiers:
        try:
            tier = PlanTier(product_tiers[product_id])
        except ValueError:
            return DEFAULT_PAID_TIER
        if tier != PlanTier.FREE:
            return tier
    return DEFAULT_PAID_TIER
