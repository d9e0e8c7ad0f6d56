"""PostgreSQL schema backing the ledger, billing events and generation tasks."""
from __future__ import annotations

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id TEXT PRIMARY KEY,
        plan_tier TEXT NOT NULL DEFAULT 'free',
        credit_balance INTEGER NOT NULL DEFAULT 0 CHECK (credit_balance >= 0),
        billing_customer_ref TEXT UNIQUE,
        subscription_id TEXT,
        plan_version BIGINT NOT NULL DEFAULT 0,
        downgrade_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        entry_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts (account_id),
        delta INTEGER NOT NULL,
        reason TEXT NOT NULL,
        related_task_id TEXT,
        reference TEXT,
        billing_event_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ledger_entries_account_idx
        ON ledger_entries (account_id, created_at)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ledger_entries_reference_idx
        ON ledger_entries (account_id, reason, reference)
        WHERE reference IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_reservations (
        task_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts (account_id),
        amount INTEGER NOT NULL CHECK (amount >= 0),
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_events (
        event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        account_id TEXT,
        sequence BIGINT NOT NULL DEFAULT 0,
        received_at TIMESTAMPTZ NOT NULL,
        processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS generation_tasks (
        task_id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts (account_id),
        provider_task_id TEXT,
        state TEXT NOT NULL,
        progress DOUBLE PRECISION NOT NULL DEFAULT 0,
        result_urls JSONB NOT NULL DEFAULT '[]'::jsonb,
        error_message TEXT,
        failure_reason TEXT,
        credits_reserved INTEGER NOT NULL DEFAULT 0,
        request JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_polled_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS generation_tasks_active_idx
        ON generation_tasks (state)
        WHERE state IN ('submitted', 'generating')
    """,
)


async def apply_schema(connection) -> None:
    """Create missing tables on an asyncpg connection."""

    for statement in SCHEMA_STATEMENTS:
        await connection.execute(statement)


__all__ = ["SCHEMA_STATEMENTS", "apply_schema"]
