"""Shared application context for runtime dependencies."""
from __future__ import annotations

from typing import Any, Optional

from .config import AppConfig

_config: Optional[AppConfig] = None
_ledger_store: Optional[Any] = None
_task_repository: Optional[Any] = None
_generation_provider: Optional[Any] = None
_billing_portal: Optional[Any] = None


def configure(
    *,
    config: AppConfig,
    ledger_store: Any,
    task_repository: Any,
    generation_provider: Optional[Any] = None,
    billing_portal: Optional[Any] = None,
) -> None:
    """Register the storage backends and outbound clients used by the services."""

    global _config
    global _ledger_store
    global _task_repository
    global _generation_provider
    global _billing_portal

    _config = config
    _ledger_store = ledger_store
    _task_repository = task_repository
    _generation_provider = generation_provider
    _billing_portal = billing_portal


def reset() -> None:
    global _config
    global _ledger_store
    global _task_repository
    global _generation_provider
    global _billing_portal

    _config = None
    _ledger_store = None
    _task_repository = None
    _generation_provider = None
    _billing_portal = None


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_config() -> AppConfig:
    return _require(_config, "config")


def get_ledger_store() -> Any:
    return _require(_ledger_store, "ledger_store")


def get_task_repository() -> Any:
    return _require(_task_repository, "task_repository")


def get_generation_provider() -> Any:
    return _require(_generation_provider, "generation_provider")


def get_billing_portal() -> Any:
    return _require(_billing_portal, "billing_portal")
