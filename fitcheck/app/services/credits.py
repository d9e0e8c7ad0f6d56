"""Application wiring for plan resolution and credit accounting."""
from __future__ import annotations

from functools import lru_cache

from ... import app_context
from ..credits import CreditAccountant
from ..plans import PlanResolver


@lru_cache(maxsize=1)
def get_plan_resolver() -> PlanResolver:
    config = app_context.get_config()
    return PlanResolver(
        app_context.get_ledger_store(),
        unlimited_account_ids=config.unlimited_account_ids,
    )


@lru_cache(maxsize=1)
def get_credit_accountant() -> CreditAccountant:
    config = app_context.get_config()
    return CreditAccountant(
        app_context.get_ledger_store(),
        get_plan_resolver(),
        read_attempts=config.storage_retry_attempts,
        read_backoff_seconds=config.storage_retry_backoff,
    )


__all__ = ["get_credit_accountant", "get_plan_resolver"]
