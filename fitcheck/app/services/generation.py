"""Application wiring for the generation task orchestrator."""
from __future__ import annotations

from functools import lru_cache

from ... import app_context
from ..generation import TaskOrchestrator
from .credits import get_credit_accountant


@lru_cache(maxsize=1)
def get_task_orchestrator() -> TaskOrchestrator:
    config = app_context.get_config()
    return TaskOrchestrator(
        get_credit_accountant(),
        app_context.get_task_repository(),
        app_context.get_generation_provider(),
        poll_interval_seconds=config.poll_interval_seconds,
        max_backoff_seconds=config.poll_max_backoff_seconds,
        max_poll_seconds=config.max_poll_seconds,
        submit_attempts=config.submit_attempts,
        storage_attempts=config.storage_retry_attempts,
        storage_backoff_seconds=config.storage_retry_backoff,
    )


__all__ = ["get_task_orchestrator"]
