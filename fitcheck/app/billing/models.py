"""Typed billing events delivered by the payment provider."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingEventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_ACTIVE = "subscription.active"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    ORDER_PAID = "order.paid"
    CUSTOMER_CREATED = "customer.created"


class CustomerInfo(BaseModel):
    """Customer object embedded in subscription and order payloads."""

    id: Optional[str] = None
    external_id: Optional[str] = None
    email: Optional[str] = None

    model_config = ConfigDict(extra="ignore", frozen=True)


class _AccountLinkedPayload(BaseModel):
    customer_id: Optional[str] = None
    customer: Optional[CustomerInfo] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def external_account_id(self) -> Optional[str]:
        if self.customer and self.customer.external_id:
            return self.customer.external_id
        value = self.metadata.get("account_id") or self.metadata.get("user_id")
        return str(value) if value else None


class SubscriptionPayload(_AccountLinkedPayload):
    id: str
    product_id: Optional[str] = None
    status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    @property
    def period_key(self) -> str:
        start = self.current_period_start.isoformat() if self.current_period_start else "initial"
        return f"subscription:{self.id}:{start}"


class OrderPaidPayload(_AccountLinkedPayload):
    id: str

    @property
    def credits(self) -> Optional[int]:
        raw = self.metadata.get("credits")
        if raw is None or raw == "":
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            return None

    @property
    def reference(self) -> str:
        return f"order:{self.id}"


class CustomerCreatedPayload(BaseModel):
    id: str
    external_id: Optional[str] = None
    email: Optional[str] = None

    model_config = ConfigDict(extra="ignore", frozen=True)


BillingPayload = Union[SubscriptionPayload, OrderPaidPayload, CustomerCreatedPayload]


class BillingEvent(BaseModel):
    """A verified webhook event.

    ``type`` keeps the raw value so that unknown types can be absorbed;
    ``payload`` is only set for types in :class:`BillingEventType`.
    ``sequence`` orders events that concern the same account.
    """

    event_id: str
    type: str
    sequence: int = 0
    payload: Optional[BillingPayload] = None
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def event_type(self) -> Optional[BillingEventType]:
        try:
            return BillingEventType(self.type)
        except ValueError:
            return None


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class ApplyResult(BaseModel):
    event_id: str
    outcome: ApplyOutcome
    reason: Optional[str] = None
    account_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


__all__ = [
    "ApplyOutcome",
    "ApplyResult",
    "BillingEvent",
    "BillingEventType",
    "BillingPayload",
    "CustomerCreatedPayload",
    "CustomerInfo",
    "OrderPaidPayload",
    "SubscriptionPayload",
]
