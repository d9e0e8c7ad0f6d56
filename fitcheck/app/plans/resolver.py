"""Resolve the effective plan tier of an account."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, FrozenSet, Iterable, Optional

from ..exceptions import AccountNotFound
from ..ledger.models import Account, PlanTier
from ..ledger.store import LedgerStore
from .catalog import PlanDefinition, get_plan_definition


@dataclass(frozen=True)
class PlanResolution:
    """Effective plan of an account at decision time."""

    plan_tier: PlanTier
    is_unlimited: bool
    definition: PlanDefinition


class PlanResolver:
    """Read-shaped view of an account's plan state plus static tier rules.

    The resolver keeps no state of its own, so callers always see the plan
    as stored at the moment they ask.
    """

    def __init__(
        self,
        store: LedgerStore,
        *,
        unlimited_account_ids: Iterable[str] = (),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._unlimited_account_ids: FrozenSet[str] = frozenset(unlimited_account_ids)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def resolve_plan(self, account_id: str) -> PlanResolution:
        account = await self._store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return self.resolve_for(account)

    def resolve_for(self, account: Account) -> PlanResolution:
        tier = self._effective_tier(account)
        definition = get_plan_definition(tier)
        return PlanResolution(plan_tier=tier, is_unlimited=definition.unlimited, definition=definition)

    def _effective_tier(self, account: Account) -> PlanTier:
        if account.account_id in self._unlimited_account_ids:
            return PlanTier.UNLIMITED
        if not account.billing_customer_ref:
            return PlanTier.FREE
        if account.downgrade_at is not None and self._clock() >= account.downgrade_at:
            return PlanTier.FREE
        return account.plan_tier
