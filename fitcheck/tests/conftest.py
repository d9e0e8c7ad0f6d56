from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Union

import pytest

from fitcheck.app.credits import CreditAccountant
from fitcheck.app.exceptions import StorageUnavailable
from fitcheck.app.generation import (
    GenerationKind,
    GenerationRequest,
    GenerationTask,
    InMemoryTaskRepository,
    ProviderStatus,
    ProviderTaskStatus,
    TaskOrchestrator,
)
from fitcheck.app.ledger import Account, InMemoryLedgerStore, LedgerReason, PlanTier
from fitcheck.app.plans import PlanResolver


class MutableClock:
    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


StatusStep = Union[ProviderTaskStatus, Exception]


class ScriptedProvider:
    """Provider fake replaying a fixed sequence of status answers.

    The last step repeats once the script is exhausted.
    """

    def __init__(
        self,
        statuses: Sequence[StatusStep] = (),
        *,
        submit_errors: Sequence[Exception] = (),
    ) -> None:
        self.statuses: List[StatusStep] = list(statuses) or [running(0.0)]
        self.submit_errors: List[Exception] = list(submit_errors)
        self.submitted: List[GenerationRequest] = []
        self.status_calls: List[str] = []
        self.uploads: List[str] = []

    async def submit(self, request: GenerationRequest) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(request)
        return f"kie_{len(self.submitted)}"

    async def get_status(self, provider_task_id: str) -> ProviderTaskStatus:
        self.status_calls.append(provider_task_id)
        step = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(step, Exception):
            raise step
        return step

    async def upload_image(self, base64_data: str, mime_type: str) -> str:
        self.uploads.append(mime_type)
        return f"https://uploads.test/{len(self.uploads)}.png"


class FlakyTaskRepository(InMemoryTaskRepository):
    """In-memory task store whose listed ``update`` calls (1-based) fail."""

    def __init__(self, failing_updates: Sequence[int] = ()) -> None:
        super().__init__()
        self.failing_updates = set(failing_updates)
        self.update_calls = 0

    async def update(self, task: GenerationTask) -> GenerationTask:
        self.update_calls += 1
        if self.update_calls in self.failing_updates:
            raise StorageUnavailable()
        return await super().update(task)


def running(progress: float) -> ProviderTaskStatus:
    return ProviderTaskStatus(status=ProviderStatus.RUNNING, progress=progress)


def succeeded(*urls: str) -> ProviderTaskStatus:
    return ProviderTaskStatus(status=ProviderStatus.SUCCEEDED, progress=1.0, result_urls=list(urls))


def failed(error: str) -> ProviderTaskStatus:
    return ProviderTaskStatus(status=ProviderStatus.FAILED, error=error)


def image_request(resolution: str = "1K") -> GenerationRequest:
    return GenerationRequest(
        kind=GenerationKind.IMAGE,
        prompt="Swap the jacket",
        image_urls=["https://uploads.test/person.png", "https://uploads.test/garment.png"],
        aspect_ratio="4:5",
        resolution=resolution,
    )


async def open_account(
    store: InMemoryLedgerStore,
    accountant: CreditAccountant,
    account_id: str,
    *,
    balance: int = 0,
    tier: PlanTier = PlanTier.FREE,
    customer_ref: Optional[str] = None,
) -> Account:
    await store.create_account(Account(account_id=account_id, plan_tier=tier, billing_customer_ref=customer_ref))
    if balance:
        await accountant.top_up(account_id, balance, LedgerReason.TOPUP, reference=f"seed:{account_id}")
    account = await store.get_account(account_id)
    assert account is not None
    return account


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def resolver(store: InMemoryLedgerStore, clock: MutableClock) -> PlanResolver:
    return PlanResolver(store, unlimited_account_ids={"acct_vip"}, clock=clock)


@pytest.fixture
def accountant(store: InMemoryLedgerStore, resolver: PlanResolver) -> CreditAccountant:
    return CreditAccountant(store, resolver, read_attempts=3, read_backoff_seconds=0)


@pytest.fixture
def task_repository() -> InMemoryTaskRepository:
    return InMemoryTaskRepository()


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def make_orchestrator(accountant, task_repository, clock):
    def _make(provider, *, tasks=None, **overrides) -> TaskOrchestrator:
        options = dict(
            poll_interval_seconds=0,
            max_backoff_seconds=0,
            max_poll_seconds=360,
            submit_attempts=3,
            submit_backoff_seconds=0,
            storage_backoff_seconds=0,
            clock=clock,
        )
        options.update(overrides)
        return TaskOrchestrator(accountant, tasks or task_repository, provider, **options)

    return _make
