"""Domain exceptions surfaced by the credits, generation and billing services."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class CreditsError(Exception):
    """Represents an actionable failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class InsufficientCredits(CreditsError):
    def __init__(self, *, account_id: str, required: int, available: int) -> None:
        super().__init__(
            code="insufficient_credits",
            message=(
                f"Insufficient credits. Required: {required}, available: {available}. "
                "Top up credits to continue."
            ),
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"account_id": account_id, "required": required, "available": available},
        )
        self.account_id = account_id
        self.required = required
        self.available = available


class PlanLimitExceeded(CreditsError):
    def __init__(self, *, plan: str, requested: int, allowed: int) -> None:
        super().__init__(
            code="plan_limit_exceeded",
            message=f"The {plan} plan allows {allowed} generation(s) per request.",
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"plan": plan, "requested": requested, "allowed": allowed},
        )


class AccountNotFound(CreditsError):
    def __init__(self, account_id: str) -> None:
        super().__init__(
            code="account_not_found",
            message=f"Account {account_id} does not exist.",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"account_id": account_id},
        )
        self.account_id = account_id


class ReservationNotFound(CreditsError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            code="reservation_not_found",
            message=f"No credit reservation exists for task {task_id}.",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"task_id": task_id},
        )
        self.task_id = task_id


class StorageUnavailable(CreditsError):
    def __init__(self, message: str = "Credit storage is temporarily unavailable.") -> None:
        super().__init__(
            code="storage_unavailable",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class TaskNotFound(CreditsError):
    def __init__(self, task_id: str) -> None:
        super().__init__(
            code="task_not_found",
            message=f"Generation task {task_id} does not exist.",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"task_id": task_id},
        )
        self.task_id = task_id


class InvalidTaskTransition(CreditsError):
    def __init__(self, *, task_id: str, current: str, requested: str) -> None:
        super().__init__(
            code="invalid_task_transition",
            message=f"Task {task_id} cannot move from {current} to {requested}.",
            status_code=status.HTTP_409_CONFLICT,
            detail={"task_id": task_id, "current": current, "requested": requested},
        )


class UnknownAccount(CreditsError):
    """Billing event references a customer that is not linked to an account yet."""

    def __init__(self, account_ref: Optional[str]) -> None:
        super().__init__(
            code="unknown_account",
            message=f"No account is linked to billing reference {account_ref!r}.",
            status_code=status.HTTP_409_CONFLICT,
            detail={"account_ref": account_ref},
        )
        self.account_ref = account_ref


class InvalidBillingEvent(CreditsError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="invalid_billing_event",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class BillingCustomerNotLinked(CreditsError):
    def __init__(self, account_id: str) -> None:
        super().__init__(
            code="no_billing_account",
            message="No billing account linked",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"account_id": account_id},
        )


class BillingPortalUnavailable(CreditsError):
    def __init__(self, message: str = "Failed to create portal session") -> None:
        super().__init__(
            code="billing_portal_unavailable",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )


class WebhookVerificationError(CreditsError):
    def __init__(self, message: str = "Webhook signature verification failed.") -> None:
        super().__init__(
            code="webhook_verification_failed",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
        )


__all__ = [
    "AccountNotFound",
    "BillingCustomerNotLinked",
    "BillingPortalUnavailable",
    "CreditsError",
    "InsufficientCredits",
    "InvalidBillingEvent",
    "InvalidTaskTransition",
    "PlanLimitExceeded",
    "ReservationNotFound",
    "StorageUnavailable",
    "TaskNotFound",
    "UnknownAccount",
    "WebhookVerificationError",
]
