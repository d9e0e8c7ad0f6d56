"""Value objects returned by the credit accountant."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ..ledger.models import PlanTier


class Affordability(BaseModel):
    """Outcome of an affordability check."""

    allowed: bool
    reason: str
    balance: int
    cost: int
    plan: PlanTier

    model_config = ConfigDict(frozen=True)


class CreditSummary(BaseModel):
    """Read-only view of an account's credits exposed to clients."""

    credits: int
    plan: PlanTier
    is_unlimited: bool = Field(alias="isUnlimited")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationReport(BaseModel):
    """Comparison of the cached balance with the sum of ledger entries."""

    account_id: str
    cached_balance: int
    ledger_balance: int
    entry_count: int

    model_config = ConfigDict(frozen=True)

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_balance
