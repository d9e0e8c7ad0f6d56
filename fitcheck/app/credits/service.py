"""Credit accountant coordinating reservations, refunds and top-ups."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from ..exceptions import AccountNotFound, InsufficientCredits, ReservationNotFound, StorageUnavailable
from ..ledger.models import (
    Account,
    LedgerEntry,
    LedgerReason,
    PlanTier,
    Reservation,
    ReservationStatus,
)
from ..ledger.store import AccountSession, LedgerStore
from ..plans.catalog import get_plan_definition
from ..plans.resolver import PlanResolver
from .models import Affordability, CreditSummary, ReconciliationReport

logger = logging.getLogger("credits")

T = TypeVar("T")

SIGNUP_GRANT_REFERENCE = "signup"


class CreditAccountant:
    """Atomic credit operations on top of the ledger store.

    Every mutation runs inside one account session, so operations on the same
    account are mutually exclusive while different accounts proceed in
    parallel. Reservations are taken pessimistically: the balance drops the
    moment a task is accepted, and the task later either commits the
    reservation or refunds it.
    """

    def __init__(
        self,
        store: LedgerStore,
        resolver: PlanResolver,
        *,
        read_attempts: int = 3,
        read_backoff_seconds: float = 0.2,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._read_attempts = max(1, read_attempts)
        self._read_backoff = max(0.0, read_backoff_seconds)

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def resolver(self) -> PlanResolver:
        return self._resolver

    async def ensure_account(self, account_id: str) -> Account:
        """Return the account, opening it on the free tier when missing."""

        account = await self._read(lambda: self._store.get_account(account_id))
        if account is not None:
            return account

        await self._store.create_account(Account(account_id=account_id, plan_tier=PlanTier.FREE))
        free_plan = get_plan_definition(PlanTier.FREE)
        if free_plan.period_grant > 0:
            await self.grant_subscription(account_id, free_plan.period_grant, reference=SIGNUP_GRANT_REFERENCE)
        logger.info("Opened credit account %s", account_id)
        return await self._require_account(account_id)

    async def get_credits(self, account_id: str) -> CreditSummary:
        account = await self._require_account(account_id)
        plan = self._resolver.resolve_for(account)
        return CreditSummary(credits=account.credit_balance, plan=plan.plan_tier, is_unlimited=plan.is_unlimited)

    async def check_affordability(self, account_id: str, cost: int) -> Affordability:
        account = await self._require_account(account_id)
        return self._affordability(account, _validate_cost(cost))

    async def reserve(self, account_id: str, cost: int, task_id: str) -> LedgerEntry:
        """Hold ``cost`` credits against ``task_id``.

        Re-issuing the same reservation returns the original entry instead of
        deducting twice.
        """

        cost = _validate_cost(cost)
        async with self._store.account_session(account_id) as session:
            existing = await session.get_reservation(task_id)
            if existing is not None:
                if existing.account_id != account_id:
                    raise ValueError(f"task {task_id} is reserved by another account")
                replayed = await session.find_entry(LedgerReason.RESERVATION, task_id)
                if replayed is not None:
                    logger.info("Reservation replay for task %s ignored", task_id)
                    return replayed

            affordability = self._affordability(session.account, cost)
            if not affordability.allowed:
                logger.info(
                    "Reservation rejected",
                    extra={"account_id": account_id, "task_id": task_id, "cost": cost, "balance": affordability.balance},
                )
                raise InsufficientCredits(account_id=account_id, required=cost, available=affordability.balance)

            amount = 0 if affordability.plan == PlanTier.UNLIMITED else cost
            entry = LedgerEntry(
                account_id=account_id,
                delta=-amount,
                reason=LedgerReason.RESERVATION,
                related_task_id=task_id,
                reference=task_id,
            )
            await session.append(entry)
            await session.save_reservation(Reservation(task_id=task_id, account_id=account_id, amount=amount))

        logger.info(
            "Reserved %s credits for task %s",
            amount,
            task_id,
            extra={"account_id": account_id, "task_id": task_id},
        )
        return entry

    async def commit(self, task_id: str) -> Reservation:
        """Finalize a reservation so it can no longer be refunded."""

        reservation = await self._require_reservation(task_id)
        async with self._store.account_session(reservation.account_id) as session:
            current = await session.get_reservation(task_id)
            if current is None:
                raise ReservationNotFound(task_id)
            if current.is_final:
                logger.info("Reservation for task %s already %s; commit ignored", task_id, current.status.value)
                return current

            await session.append(
                LedgerEntry(
                    account_id=current.account_id,
                    delta=0,
                    reason=LedgerReason.COMMIT,
                    related_task_id=task_id,
                    reference=task_id,
                )
            )
            committed = await session.save_reservation(
                current.model_copy(update={"status": ReservationStatus.COMMITTED, "updated_at": _now()})
            )

        logger.info("Committed reservation for task %s", task_id, extra={"account_id": committed.account_id})
        return committed

    async def refund(self, task_id: str) -> Optional[LedgerEntry]:
        """Return reserved credits; a no-op for finalized reservations."""

        reservation = await self._require_reservation(task_id)
        async with self._store.account_session(reservation.account_id) as session:
            current = await session.get_reservation(task_id)
            if current is None:
                raise ReservationNotFound(task_id)
            if current.is_final:
                logger.warning(
                    "Refund skipped for task %s: reservation already %s",
                    task_id,
                    current.status.value,
                )
                return None

            entry = LedgerEntry(
                account_id=current.account_id,
                delta=current.amount,
                reason=LedgerReason.REFUND,
                related_task_id=task_id,
                reference=task_id,
            )
            await session.append(entry)
            await session.save_reservation(
                current.model_copy(update={"status": ReservationStatus.REFUNDED, "updated_at": _now()})
            )

        logger.info(
            "Refunded %s credits for task %s",
            entry.delta,
            task_id,
            extra={"account_id": entry.account_id},
        )
        return entry

    async def top_up(
        self,
        account_id: str,
        amount: int,
        reason: LedgerReason = LedgerReason.TOPUP,
        *,
        reference: Optional[str] = None,
    ) -> LedgerEntry:
        async with self._store.account_session(account_id) as session:
            return await self.credit_in_session(session, amount, reason, reference=reference)

    async def grant_subscription(self, account_id: str, amount: int, *, reference: str) -> LedgerEntry:
        return await self.top_up(account_id, amount, LedgerReason.SUBSCRIPTION_GRANT, reference=reference)

    async def credit_in_session(
        self,
        session: AccountSession,
        amount: int,
        reason: LedgerReason,
        *,
        reference: Optional[str] = None,
        billing_event_id: Optional[str] = None,
    ) -> LedgerEntry:
        """Append a positive entry inside an already open account session.

        With a ``reference`` the credit is applied at most once; a repeat
        returns the entry recorded the first time.
        """

        if reason not in {LedgerReason.TOPUP, LedgerReason.SUBSCRIPTION_GRANT}:
            raise ValueError(f"{reason.value} entries cannot be used to add credits")
        if amount <= 0:
            raise ValueError("amount must be greater than 0")
        if reference:
            existing = await session.find_entry(reason, reference)
            if existing is not None:
                logger.info("Credit %s already applied for reference %s", reason.value, reference)
                return existing

        entry = LedgerEntry(
            account_id=session.account.account_id,
            delta=amount,
            reason=reason,
            reference=reference,
            billing_event_id=billing_event_id,
        )
        await session.append(entry)
        logger.info(
            "Credited %s credits (%s)",
            amount,
            reason.value,
            extra={"account_id": entry.account_id, "reference": reference},
        )
        return entry

    async def reconcile(self, account_id: str) -> ReconciliationReport:
        account = await self._require_account(account_id)
        entries = await self._read(lambda: self._store.list_entries(account_id))
        report = ReconciliationReport(
            account_id=account_id,
            cached_balance=account.credit_balance,
            ledger_balance=sum(entry.delta for entry in entries),
            entry_count=len(entries),
        )
        if not report.consistent:
            logger.error(
                "Ledger mismatch for account %s: cached=%s ledger=%s",
                account_id,
                report.cached_balance,
                report.ledger_balance,
            )
        return report

    def _affordability(self, account: Account, cost: int) -> Affordability:
        plan = self._resolver.resolve_for(account)
        if plan.is_unlimited:
            allowed, reason = True, "unlimited_plan"
        elif account.credit_balance >= cost:
            allowed, reason = True, "sufficient_balance"
        else:
            allowed, reason = False, "insufficient_balance"
        return Affordability(
            allowed=allowed,
            reason=reason,
            balance=account.credit_balance,
            cost=cost,
            plan=plan.plan_tier,
        )

    async def _require_account(self, account_id: str) -> Account:
        account = await self._read(lambda: self._store.get_account(account_id))
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def _require_reservation(self, task_id: str) -> Reservation:
        reservation = await self._read(lambda: self._store.get_reservation(task_id))
        if reservation is None:
            raise ReservationNotFound(task_id)
        return reservation

    async def _read(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a read-only store call, retrying while storage is unavailable."""

        for attempt in range(1, self._read_attempts + 1):
            try:
                return await operation()
            except StorageUnavailable:
                logger.warning(
                    "Ledger read failed",
                    extra={"ledger_attempt": attempt, "ledger_attempts": self._read_attempts},
                )
                if attempt >= self._read_attempts:
                    raise
                if self._read_backoff > 0:
                    await asyncio.sleep(self._read_backoff * attempt)
        raise StorageUnavailable()  # pragma: no cover - loop always returns or raises


def _validate_cost(cost: int) -> int:
    cost = int(cost)
    if cost < 0:
        raise ValueError("cost must be >= 0")
    return cost


def _now() -> datetime:
    return datetime.now(timezone.utc)


__all__ = ["CreditAccountant", "SIGNUP_GRANT_REFERENCE"]
