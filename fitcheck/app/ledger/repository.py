"""PostgreSQL persistence for the credit ledger."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Optional, Sequence

import asyncpg

from ..exceptions import AccountNotFound, StorageUnavailable
from .models import (
    Account,
    LedgerEntry,
    LedgerReason,
    PlanTier,
    ProcessedEvent,
    Reservation,
    ReservationStatus,
)
from .store import _check_account_changes

_CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)

_ACCOUNT_COLUMNS = (
    "plan_tier",
    "billing_customer_ref",
    "subscription_id",
    "plan_version",
    "downgrade_at",
)


def _row_to_account(row) -> Account:
    return Account(
        account_id=row["account_id"],
        plan_tier=PlanTier(row["plan_tier"]),
        credit_balance=int(row["credit_balance"]),
        billing_customer_ref=row["billing_customer_ref"],
        subscription_id=row["subscription_id"],
        plan_version=int(row["plan_version"]),
        downgrade_at=row["downgrade_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entry(row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        account_id=row["account_id"],
        delta=int(row["delta"]),
        reason=LedgerReason(row["reason"]),
        related_task_id=row["related_task_id"],
        reference=row["reference"],
        billing_event_id=row["billing_event_id"],
        created_at=row["created_at"],
    )


def _row_to_reservation(row) -> Reservation:
    return Reservation(
        task_id=row["task_id"],
        account_id=row["account_id"],
        amount=int(row["amount"]),
        status=ReservationStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _db_value(value: object) -> object:
    if isinstance(value, PlanTier):
        return value.value
    return value


class _PostgresAccountSession:
    """Account session bound to an open transaction holding the row lock."""

    def __init__(self, connection: asyncpg.Connection, account: Account) -> None:
        self._connection = connection
        self._account = account

    @property
    def account(self) -> Account:
        return self._account

    async def append(self, entry: LedgerEntry) -> Account:
        if entry.account_id != self._account.account_id:
            raise ValueError("ledger entry belongs to a different account")
        if self._account.credit_balance + entry.delta < 0:
            raise ValueError("credit balance cannot go negative")
        await self._connection.execute(
            """
            INSERT INTO ledger_entries (
                entry_id,
                account_id,
                delta,
                reason,
                related_task_id,
                reference,
                billing_event_id,
                created_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            entry.entry_id,
            entry.account_id,
            entry.delta,
            entry.reason.value,
            entry.related_task_id,
            entry.reference,
            entry.billing_event_id,
            entry.created_at,
        )
        row = await self._connection.fetchrow(
            """
            UPDATE accounts
            SET credit_balance = credit_balance + $2, updated_at = NOW()
            WHERE account_id = $1
            RETURNING *
            """,
            entry.account_id,
            entry.delta,
        )
        self._account = _row_to_account(row)
        return self._account

    async def get_reservation(self, task_id: str) -> Optional[Reservation]:
        row = await self._connection.fetchrow(
            "SELECT * FROM credit_reservations WHERE task_id = $1",
            task_id,
        )
        return _row_to_reservation(row) if row else None

    async def save_reservation(self, reservation: Reservation) -> Reservation:
        if reservation.account_id != self._account.account_id:
            raise ValueError("reservation belongs to a different account")
        row = await self._connection.fetchrow(
            """
            INSERT INTO credit_reservations (task_id, account_id, amount, status, created_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (task_id) DO UPDATE SET
                status = EXCLUDED.status,
                updated_at = NOW()
            RETURNING *
            """,
            reservation.task_id,
            reservation.account_id,
            reservation.amount,
            reservation.status.value,
            reservation.created_at,
        )
        return _row_to_reservation(row)

    async def update_account(self, **changes: object) -> Account:
        _check_account_changes(changes)
        unknown = set(changes).difference(_ACCOUNT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown account fields: {sorted(unknown)}")
        if not changes:
            return self._account
        columns = list(changes)
        assignments = ", ".join(f"{column} = ${index + 2}" for index, column in enumerate(columns))
        row = await self._connection.fetchrow(
            f"""
            UPDATE accounts
            SET {assignments}, updated_at = NOW()
            WHERE account_id = $1
            RETURNING *
            """,
            self._account.account_id,
            *[_db_value(changes[column]) for column in columns],
        )
        self._account = _row_to_account(row)
        return self._account

    async def find_entry(self, reason: LedgerReason, reference: str) -> Optional[LedgerEntry]:
        row = await self._connection.fetchrow(
            """
            SELECT *
            FROM ledger_entries
            WHERE account_id = $1 AND reason = $2 AND reference = $3
            LIMIT 1
            """,
            self._account.account_id,
            reason.value,
            reference,
        )
        return _row_to_entry(row) if row else None

    async def record_event(self, event: ProcessedEvent) -> bool:
        return await _insert_event(self._connection, event)


@asynccontextmanager
async def storage_connection(pool: asyncpg.Pool) -> AsyncIterator[asyncpg.Connection]:
    """Acquire a pooled connection, reporting connectivity failures as ``StorageUnavailable``."""

    try:
        async with pool.acquire() as connection:
            yield connection
    except _CONNECTION_ERRORS as exc:
        raise StorageUnavailable(f"Storage unavailable: {exc}") from exc


async def _insert_event(connection: asyncpg.Connection, event: ProcessedEvent) -> bool:
    inserted = await connection.fetchval(
        """
        INSERT INTO billing_events (event_id, event_type, account_id, sequence, received_at)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (event_id) DO NOTHING
        RETURNING event_id
        """,
        event.event_id,
        event.event_type,
        event.account_id,
        event.sequence,
        event.received_at,
    )
    return inserted is not None


class PostgresLedgerStore:
    """Ledger store persisting to PostgreSQL through an asyncpg pool.

    Each account session is one transaction that starts by locking the
    account row (``SELECT ... FOR UPDATE``); concurrent writers of the same
    account queue on that lock and other accounts are unaffected.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    def _connection(self) -> AsyncContextManager[asyncpg.Connection]:
        return storage_connection(self._pool)

    async def create_account(self, account: Account) -> Account:
        if account.credit_balance != 0:
            raise ValueError("accounts must be created with a zero balance")
        async with self._connection() as connection:
            await connection.execute(
                """
                INSERT INTO accounts (
                    account_id,
                    plan_tier,
                    credit_balance,
                    billing_customer_ref,
                    subscription_id,
                    plan_version,
                    downgrade_at,
                    created_at
                )
                VALUES ($1, $2, 0, $3, $4, $5, $6, $7)
                ON CONFLICT (account_id) DO NOTHING
                """,
                account.account_id,
                account.plan_tier.value,
                account.billing_customer_ref,
                account.subscription_id,
                account.plan_version,
                account.downgrade_at,
                account.created_at,
            )
            row = await connection.fetchrow(
                "SELECT * FROM accounts WHERE account_id = $1",
                account.account_id,
            )
            return _row_to_account(row)

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self._connection() as connection:
            row = await connection.fetchrow(
                "SELECT * FROM accounts WHERE account_id = $1",
                account_id,
            )
            return _row_to_account(row) if row else None

    async def find_account_by_customer_ref(self, customer_ref: str) -> Optional[Account]:
        async with self._connection() as connection:
            row = await connection.fetchrow(
                "SELECT * FROM accounts WHERE billing_customer_ref = $1 LIMIT 1",
                customer_ref,
            )
            return _row_to_account(row) if row else None

    async def list_entries(self, account_id: str, *, limit: Optional[int] = None) -> Sequence[LedgerEntry]:
        async with self._connection() as connection:
            if limit is None:
                rows = await connection.fetch(
                    """
                    SELECT *
                    FROM ledger_entries
                    WHERE account_id = $1
                    ORDER BY created_at, entry_id
                    """,
                    account_id,
                )
            else:
                rows = await connection.fetch(
                    """
                    SELECT *
                    FROM (
                        SELECT *
                        FROM ledger_entries
                        WHERE account_id = $1
                        ORDER BY created_at DESC, entry_id DESC
                        LIMIT $2
                    ) AS recent
                    ORDER BY created_at, entry_id
                    """,
                    account_id,
                    limit,
                )
            return [_row_to_entry(row) for row in rows]

    async def get_reservation(self, task_id: str) -> Optional[Reservation]:
        async with self._connection() as connection:
            row = await connection.fetchrow(
                "SELECT * FROM credit_reservations WHERE task_id = $1",
                task_id,
            )
            return _row_to_reservation(row) if row else None

    async def has_event(self, event_id: str) -> bool:
        async with self._connection() as connection:
            found = await connection.fetchval(
                "SELECT 1 FROM billing_events WHERE event_id = $1",
                event_id,
            )
            return found is not None

    async def record_standalone_event(self, event: ProcessedEvent) -> bool:
        async with self._connection() as connection:
            return await _insert_event(connection, event)

    @asynccontextmanager
    async def account_session(self, account_id: str) -> AsyncIterator[_PostgresAccountSession]:
        async with self._connection() as connection:
            async with connection.transaction():
                row = await connection.fetchrow(
                    "SELECT * FROM accounts WHERE account_id = $1 FOR UPDATE",
                    account_id,
                )
                if row is None:
                    raise AccountNotFound(account_id)
                yield _PostgresAccountSession(connection, _row_to_account(row))


async def create_ledger_pool(db_config: dict) -> asyncpg.Pool:
    return await asyncpg.create_pool(min_size=1, max_size=10, command_timeout=10, **db_config)


__all__ = ["PostgresLedgerStore", "create_ledger_pool", "storage_connection"]
