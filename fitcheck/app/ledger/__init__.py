"""Credit ledger package: accounts, append-only entries and reservations."""

from .models import (
    Account,
    LedgerEntry,
    LedgerReason,
    PlanTier,
    ProcessedEvent,
    Reservation,
    ReservationStatus,
)
from .repository import PostgresLedgerStore
from .store import AccountSession, InMemoryLedgerStore, LedgerStore

__all__ = [
    "Account",
    "AccountSession",
    "InMemoryLedgerStore",
    "LedgerEntry",
    "LedgerReason",
    "LedgerStore",
    "PlanTier",
    "PostgresLedgerStore",
    "ProcessedEvent",
    "Reservation",
    "ReservationStatus",
]
