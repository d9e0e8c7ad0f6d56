"""Generation tasks: submission, polling and credit settlement."""

from .costs import CREDIT_COSTS, credit_cost
from .models import (
    FailureReason,
    GenerationKind,
    GenerationRequest,
    GenerationTask,
    ProviderStatus,
    ProviderTaskStatus,
    TaskState,
)
from .orchestrator import TaskOrchestrator
from .provider import (
    GenerationProvider,
    KieGenerationProvider,
    ProviderError,
    ProviderTerminalError,
    ProviderTransientError,
)
from .repository import InMemoryTaskRepository, PostgresTaskRepository, TaskRepository

__all__ = [
    "CREDIT_COSTS",
    "FailureReason",
    "GenerationKind",
    "GenerationProvider",
    "GenerationRequest",
    "GenerationTask",
    "InMemoryTaskRepository",
    "KieGenerationProvider",
    "PostgresTaskRepository",
    "ProviderError",
    "ProviderStatus",
    "ProviderTaskStatus",
    "ProviderTerminalError",
    "ProviderTransientError",
    "TaskOrchestrator",
    "TaskRepository",
    "TaskState",
    "credit_cost",
]
