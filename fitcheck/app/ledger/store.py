"""Ledger store contract and the in-memory implementation."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from ..exceptions import AccountNotFound
from .models import (
    Account,
    LedgerEntry,
    LedgerReason,
    ProcessedEvent,
    Reservation,
)

_IMMUTABLE_ACCOUNT_FIELDS = frozenset({"account_id", "credit_balance", "created_at"})


class AccountSession(Protocol):
    """Unit of work holding the exclusive write lock for a single account.

    Every change staged through a session is committed together when the
    session exits cleanly and discarded when it exits with an exception.
    """

    @property
    def account(self) -> Account:
        ...

    async def append(self, entry: LedgerEntry) -> Account:
        ...

    async def get_reservation(self, task_id: str) -> Optional[Reservation]:
        ...

    async def save_reservation(self, reservation: Reservation) -> Reservation:
        ...

    async def update_account(self, **changes: object) -> Account:
        ...

    async def find_entry(self, reason: LedgerReason, reference: str) -> Optional[LedgerEntry]:
        ...

    async def record_event(self, event: ProcessedEvent) -> bool:
        ...


class LedgerStore(Protocol):
    """Durable keyed storage of accounts, ledger entries and reservations."""

    async def create_account(self, account: Account) -> Account:
        ...

    async def get_account(self, account_id: str) -> Optional[Account]:
        ...

    async def find_account_by_customer_ref(self, customer_ref: str) -> Optional[Account]:
        ...

    async def list_entries(self, account_id: str, *, limit: Optional[int] = None) -> Sequence[LedgerEntry]:
        ...

    async def get_reservation(self, task_id: str) -> Optional[Reservation]:
        ...

    async def has_event(self, event_id: str) -> bool:
        ...

    async def record_standalone_event(self, event: ProcessedEvent) -> bool:
        ...

    def account_session(self, account_id: str) -> AsyncContextManager[AccountSession]:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_account_changes(changes: Dict[str, object]) -> None:
    forbidden = _IMMUTABLE_ACCOUNT_FIELDS.intersection(changes)
    if forbidden:
        raise ValueError(f"Fields cannot be updated directly: {sorted(forbidden)}")


class _InMemoryAccountSession:
    def __init__(self, store: "InMemoryLedgerStore", account: Account) -> None:
        self._store = store
        self._account = account
        self.entries: List[LedgerEntry] = []
        self.reservations: Dict[str, Reservation] = {}
        self.events: Dict[str, ProcessedEvent] = {}

    @property
    def account(self) -> Account:
        return self._account

    async def append(self, entry: LedgerEntry) -> Account:
        if entry.account_id != self._account.account_id:
            raise ValueError("ledger entry belongs to a different account")
        next_balance = self._account.credit_balance + entry.delta
        if next_balance < 0:
            raise ValueError("credit balance cannot go negative")
        self.entries.append(entry)
        self._account = self._account.model_copy(
            update={"credit_balance": next_balance, "updated_at": _now()}
        )
        return self._account

    async def get_reservation(self, task_id: str) -> Optional[Reservation]:
        if task_id in self.reservations:
            return self.reservations[task_id]
        return self._store._reservations.get(task_id)

    async def save_reservation(self, reservation: Reservation) -> Reservation:
        if reservation.account_id != self._account.account_id:
            raise ValueError("reservation belongs to a different account")
        self.reservations[reservation.task_id] = reservation
        return reservation

    async def update_account(self, **changes: object) -> Account:
        _check_account_changes(changes)
        self._account = self._account.model_copy(update={**changes, "updated_at": _now()})
        return self._account

    async def find_entry(self, reason: LedgerReason, reference: str) -> Optional[LedgerEntry]:
        existing = self._store._entries.get(self._account.account_id, [])
        for entry in [*existing, *self.entries]:
            if entry.reason == reason and entry.reference == reference:
                return entry
        return None

    async def record_event(self, event: ProcessedEvent) -> bool:
        if event.event_id in self.events or event.event_id in self._store._events:
            return False
        self.events[event.event_id] = event
        return True


class InMemoryLedgerStore:
    """Ledger store suitable for tests and local development.

    Writers to the same account serialise on a per-account ``asyncio.Lock``;
    writers to different accounts never wait on each other.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._entries: Dict[str, List[LedgerEntry]] = defaultdict(list)
        self._reservations: Dict[str, Reservation] = {}
        self._events: Dict[str, ProcessedEvent] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        return self._locks.setdefault(account_id, asyncio.Lock())

    async def create_account(self, account: Account) -> Account:
        async with self._lock_for(account.account_id):
            existing = self._accounts.get(account.account_id)
            if existing is not None:
                return existing
            if account.credit_balance != 0:
                raise ValueError("accounts must be created with a zero balance")
            self._accounts[account.account_id] = account
            return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    async def find_account_by_customer_ref(self, customer_ref: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.billing_customer_ref == customer_ref:
                return account
        return None

    async def list_entries(self, account_id: str, *, limit: Optional[int] = None) -> Sequence[LedgerEntry]:
        entries = list(self._entries.get(account_id, []))
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    async def get_reservation(self, task_id: str) -> Optional[Reservation]:
        return self._reservations.get(task_id)

    async def has_event(self, event_id: str) -> bool:
        return event_id in self._events

    async def record_standalone_event(self, event: ProcessedEvent) -> bool:
        if event.event_id in self._events:
            return False
        self._events[event.event_id] = event
        return True

    @asynccontextmanager
    async def account_session(self, account_id: str) -> AsyncIterator[_InMemoryAccountSession]:
        async with self._lock_for(account_id):
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            session = _InMemoryAccountSession(self, account)
            yield session
            self._commit(session)

    def _commit(self, session: _InMemoryAccountSession) -> None:
        # No awaits here: the whole session lands in one step.
        account_id = session.account.account_id
        self._accounts[account_id] = session.account
        self._entries[account_id].extend(session.entries)
        self._reservations.update(session.reservations)
        self._events.update(session.events)


__all__ = ["AccountSession", "InMemoryLedgerStore", "LedgerStore"]
