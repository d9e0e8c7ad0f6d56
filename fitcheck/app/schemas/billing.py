"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import ApplyOutcome, ApplyResult


class PortalSessionResponse(BaseModel):
    portal_url: str = Field(alias="portalUrl")

    model_config = ConfigDict(populate_by_name=True)


class WebhookAckResponse(BaseModel):
    event_id: str = Field(alias="eventId")
    outcome: ApplyOutcome
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ApplyResult) -> "WebhookAckResponse":
        return cls(event_id=result.event_id, outcome=result.outcome, reason=result.reason)
