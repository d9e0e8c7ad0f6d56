"""API schemas for credit endpoints."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ..credits import CreditSummary
from ..ledger.models import PlanTier


class CreditsResponse(BaseModel):
    credits: int
    plan: PlanTier
    is_unlimited: bool = Field(alias="isUnlimited")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: CreditSummary) -> "CreditsResponse":
        return cls(credits=summary.credits, plan=summary.plan, is_unlimited=summary.is_unlimited)
