"""Domain models for the credit ledger."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    """Canonical plan tiers an account can hold."""

    FREE = "free"
    PRO = "pro"
    UNLIMITED = "unlimited"


class LedgerReason(str, Enum):
    """Why a ledger entry changed the balance."""

    RESERVATION = "reservation"
    COMMIT = "commit"
    REFUND = "refund"
    TOPUP = "topup"
    SUBSCRIPTION_GRANT = "subscription_grant"


class ReservationStatus(str, Enum):
    """Lifecycle of a credit reservation held against a task."""

    HELD = "held"
    COMMITTED = "committed"
    REFUNDED = "refunded"


class Account(BaseModel):
    """Per-user credit account with its cached balance and plan state."""

    account_id: str
    plan_tier: PlanTier = PlanTier.FREE
    credit_balance: int = 0
    billing_customer_ref: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_version: int = Field(default=0, description="Ordering key of the last applied plan change")
    downgrade_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LedgerEntry(BaseModel):
    """Immutable record of a balance change."""

    entry_id: str = Field(default_factory=lambda: f"le_{uuid4().hex}")
    account_id: str
    delta: int
    reason: LedgerReason
    related_task_id: Optional[str] = None
    reference: Optional[str] = Field(default=None, description="Idempotency key such as an order id")
    billing_event_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Reservation(BaseModel):
    """Provisional deduction held until its task resolves."""

    task_id: str
    account_id: str
    amount: int = Field(ge=0)
    status: ReservationStatus = ReservationStatus.HELD
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_final(self) -> bool:
        return self.status != ReservationStatus.HELD


class ProcessedEvent(BaseModel):
    """Marker proving a billing event id has already taken effect."""

    event_id: str
    event_type: str
    account_id: Optional[str] = None
    sequence: int = 0
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "Account",
    "LedgerEntry",
    "LedgerReason",
    "PlanTier",
    "ProcessedEvent",
    "Reservation",
    "ReservationStatus",
]
