"""Generation task records and the provider status shapes."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..exceptions import InvalidTaskTransition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return f"gen_{uuid4().hex}"


class GenerationKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class TaskState(str, Enum):
    """Lifecycle of a generation task. ``SUCCEEDED`` and ``FAILED`` are terminal."""

    SUBMITTED = "submitted"
    GENERATING = "generating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskState.SUCCEEDED, TaskState.FAILED}


class FailureReason(str, Enum):
    PROVIDER_ERROR = "provider_error"
    SUBMISSION_FAILED = "submission_failed"
    EMPTY_RESULT = "empty_result"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


_ALLOWED_TRANSITIONS: Dict[TaskState, frozenset] = {
    TaskState.SUBMITTED: frozenset({TaskState.GENERATING, TaskState.SUCCEEDED, TaskState.FAILED}),
    TaskState.GENERATING: frozenset({TaskState.GENERATING, TaskState.SUCCEEDED, TaskState.FAILED}),
    TaskState.SUCCEEDED: frozenset(),
    TaskState.FAILED: frozenset(),
}

IMAGE_RESOLUTIONS = ("1K", "2K", "4K")
VIDEO_DURATIONS = (5, 10)


class GenerationRequest(BaseModel):
    """Provider-agnostic description of what to generate."""

    kind: GenerationKind = GenerationKind.IMAGE
    prompt: str = Field(min_length=1)
    image_urls: List[str] = Field(default_factory=list)
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    duration_seconds: Optional[int] = None
    sound: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_kind_fields(self) -> "GenerationRequest":
        if self.kind == GenerationKind.IMAGE:
            if self.resolution not in IMAGE_RESOLUTIONS:
                raise ValueError(f"resolution must be one of {', '.join(IMAGE_RESOLUTIONS)}")
            if not self.image_urls:
                raise ValueError("image generation needs at least one input image")
        elif self.duration_seconds not in VIDEO_DURATIONS:
            raise ValueError("duration_seconds must be 5 or 10")
        return self


class GenerationTask(BaseModel):
    """Local record of one provider job and the credits held against it."""

    task_id: str = Field(default_factory=new_task_id)
    account_id: str
    request: GenerationRequest
    credits_reserved: int = Field(default=0, ge=0)
    provider_task_id: Optional[str] = None
    state: TaskState = TaskState.SUBMITTED
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    result_urls: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    failure_reason: Optional[FailureReason] = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_polled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, state: TaskState, **changes: Any) -> "GenerationTask":
        """Return a copy moved to ``state``; terminal tasks never move again."""

        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTaskTransition(task_id=self.task_id, current=self.state.value, requested=state.value)
        update: Dict[str, Any] = {"state": state, **changes}
        if state.is_terminal:
            update.setdefault("completed_at", _utcnow())
        return self.model_copy(update=update)

    def with_progress(self, progress: float) -> "GenerationTask":
        # Progress only moves forward and stays within [0, 1].
        clamped = min(1.0, max(0.0, float(progress)))
        return self.transition(
            TaskState.GENERATING,
            progress=max(self.progress, clamped),
            last_polled_at=_utcnow(),
        )

    def succeed(self, result_urls: List[str]) -> "GenerationTask":
        return self.transition(
            TaskState.SUCCEEDED,
            progress=1.0,
            result_urls=list(result_urls),
            last_polled_at=_utcnow(),
        )

    def fail(self, reason: FailureReason, message: Optional[str] = None) -> "GenerationTask":
        return self.transition(
            TaskState.FAILED,
            failure_reason=reason,
            error_message=message or reason.value,
        )


class ProviderStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ProviderTaskStatus(BaseModel):
    """Normalised answer of the provider status endpoint."""

    status: ProviderStatus
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    result_urls: List[str] = Field(default_factory=list)
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


__all__ = [
    "FailureReason",
    "GenerationKind",
    "GenerationRequest",
    "GenerationTask",
    "IMAGE_RESOLUTIONS",
    "ProviderStatus",
    "ProviderTaskStatus",
    "TaskState",
    "VIDEO_DURATIONS",
    "new_task_id",
]
