"""Tests for the generation task lifecycle."""
from __future__ import annotations

import gc
from datetime import timedelta

import pytest

from conftest import FlakyTaskRepository, ScriptedProvider, failed, image_request, open_account, running, succeeded
from fitcheck.app.exceptions import InsufficientCredits, PlanLimitExceeded, StorageUnavailable, TaskNotFound
from fitcheck.app.generation import (
    FailureReason,
    GenerationTask,
    ProviderTerminalError,
    ProviderTransientError,
    TaskState,
)
from fitcheck.app.ledger import LedgerReason, PlanTier, ReservationStatus


async def _balance(store, account_id: str) -> int:
    return (await store.get_account(account_id)).credit_balance


@pytest.mark.asyncio
async def test_successful_task_commits_reservation(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    provider = ScriptedProvider([running(0.2), running(0.7), succeeded("https://cdn.test/out.png")])
    orchestrator = make_orchestrator(provider)

    task = await orchestrator.submit("acct_1", image_request())
    assert task.state == TaskState.SUBMITTED
    assert task.provider_task_id == "kie_1"
    assert task.credits_reserved == 6

    done = await orchestrator.wait(task.task_id)

    assert done.state == TaskState.SUCCEEDED
    assert done.result_urls == ["https://cdn.test/out.png"]
    assert done.progress == 1.0
    assert await _balance(store, "acct_1") == 4
    assert (await store.get_reservation(task.task_id)).status == ReservationStatus.COMMITTED


@pytest.mark.asyncio
async def test_provider_failure_refunds_reservation(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([running(0.1), failed("content policy")]))

    task = await orchestrator.submit("acct_1", image_request())
    done = await orchestrator.wait(task.task_id)

    assert done.state == TaskState.FAILED
    assert done.failure_reason == FailureReason.PROVIDER_ERROR
    assert done.error_message == "content policy"
    assert await _balance(store, "acct_1") == 10
    assert (await store.get_reservation(task.task_id)).status == ReservationStatus.REFUNDED


@pytest.mark.asyncio
async def test_transient_poll_errors_never_fail_the_task(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    provider = ScriptedProvider(
        [
            ProviderTransientError("502"),
            ProviderTransientError("timeout"),
            running(0.5),
            ProviderTransientError("reset"),
            succeeded("https://cdn.test/out.png"),
        ]
    )
    orchestrator = make_orchestrator(provider)

    task = await orchestrator.submit("acct_1", image_request())
    done = await orchestrator.wait(task.task_id)

    assert done.state == TaskState.SUCCEEDED
    assert len(provider.status_calls) == 5
    assert await _balance(store, "acct_1") == 4


@pytest.mark.asyncio
async def test_polling_deadline_fails_with_timeout_and_refunds(make_orchestrator, accountant, store, clock):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([running(0.4)]), poll_interval_seconds=60)

    task = await orchestrator.submit("acct_1", image_request())
    generating = await orchestrator.poll_once(task.task_id)
    assert generating.state == TaskState.GENERATING

    clock.advance(361)
    done = await orchestrator.poll_once(task.task_id)

    assert done.state == TaskState.FAILED
    assert done.failure_reason == FailureReason.TIMEOUT
    assert await _balance(store, "acct_1") == 10
    assert (await store.get_reservation(task.task_id)).status == ReservationStatus.REFUNDED
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_deadline_applies_while_provider_is_unreachable(make_orchestrator, accountant, store, clock):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([ProviderTransientError("down")]), poll_interval_seconds=60)

    task = await orchestrator.submit("acct_1", image_request())
    with pytest.raises(ProviderTransientError):
        await orchestrator.poll_once(task.task_id)
    assert (await orchestrator.get_task(task.task_id)).state == TaskState.SUBMITTED

    clock.advance(400)
    done = await orchestrator.poll_once(task.task_id)

    assert done.failure_reason == FailureReason.TIMEOUT
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_success_without_results_is_a_failure(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([succeeded()]))

    task = await orchestrator.submit("acct_1", image_request())
    done = await orchestrator.wait(task.task_id)

    assert done.state == TaskState.FAILED
    assert done.failure_reason == FailureReason.EMPTY_RESULT
    assert await _balance(store, "acct_1") == 10


@pytest.mark.asyncio
async def test_progress_is_monotonic(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([running(0.6), running(0.3)]), poll_interval_seconds=60)

    task = await orchestrator.submit("acct_1", image_request())
    first = await orchestrator.poll_once(task.task_id)
    second = await orchestrator.poll_once(task.task_id)

    assert first.progress == 0.6
    assert second.progress == 0.6
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_terminal_task_is_never_changed_by_later_polls(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    provider = ScriptedProvider([succeeded("https://cdn.test/a.png"), failed("late failure")])
    orchestrator = make_orchestrator(provider, poll_interval_seconds=60)

    task = await orchestrator.submit("acct_1", image_request())
    done = await orchestrator.poll_once(task.task_id)
    again = await orchestrator.poll_once(task.task_id)

    assert done.state == TaskState.SUCCEEDED
    assert again.state == TaskState.SUCCEEDED
    assert len(provider.status_calls) == 1
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_cancel_fails_running_task_and_refunds(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([running(0.3)]), poll_interval_seconds=60)

    task = await orchestrator.submit("acct_1", image_request())
    canceled = await orchestrator.cancel(task.task_id, account_id="acct_1")

    assert canceled.state == TaskState.FAILED
    assert canceled.failure_reason == FailureReason.CANCELED
    assert await _balance(store, "acct_1") == 10
    assert (await orchestrator.cancel(task.task_id)).state == TaskState.FAILED


@pytest.mark.asyncio
async def test_cancel_keeps_results_the_provider_already_finished(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([succeeded("https://cdn.test/a.png")]), poll_interval_seconds=60)

    task = await orchestrator.submit("acct_1", image_request())
    result = await orchestrator.cancel(task.task_id)

    assert result.state == TaskState.SUCCEEDED
    assert await _balance(store, "acct_1") == 4


@pytest.mark.asyncio
async def test_cancel_for_another_account_is_not_found(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([running(0.1)]), poll_interval_seconds=60)
    task = await orchestrator.submit("acct_1", image_request())

    with pytest.raises(TaskNotFound):
        await orchestrator.cancel(task.task_id, account_id="acct_2")
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_terminal_submission_error_refunds(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    provider = ScriptedProvider(submit_errors=[ProviderTerminalError("bad prompt")])
    orchestrator = make_orchestrator(provider)

    task = await orchestrator.submit("acct_1", image_request())

    assert task.state == TaskState.FAILED
    assert task.failure_reason == FailureReason.SUBMISSION_FAILED
    assert await _balance(store, "acct_1") == 10


@pytest.mark.asyncio
async def test_transient_submission_errors_are_retried(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    provider = ScriptedProvider(
        [succeeded("https://cdn.test/a.png")],
        submit_errors=[ProviderTransientError("503"), ProviderTransientError("503")],
    )
    orchestrator = make_orchestrator(provider)

    task = await orchestrator.submit("acct_1", image_request())
    done = await orchestrator.wait(task.task_id)

    assert task.provider_task_id == "kie_1"
    assert done.state == TaskState.SUCCEEDED


@pytest.mark.asyncio
async def test_exhausted_submission_retries_fail_and_refund(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    provider = ScriptedProvider(submit_errors=[ProviderTransientError("503")] * 3)
    orchestrator = make_orchestrator(provider)

    task = await orchestrator.submit("acct_1", image_request())

    assert task.state == TaskState.FAILED
    assert task.failure_reason == FailureReason.SUBMISSION_FAILED
    assert await _balance(store, "acct_1") == 10


@pytest.mark.asyncio
async def test_insufficient_credits_creates_no_task(make_orchestrator, accountant, store, task_repository):
    await open_account(store, accountant, "acct_1", balance=5)
    provider = ScriptedProvider()
    orchestrator = make_orchestrator(provider)

    with pytest.raises(InsufficientCredits):
        await orchestrator.submit("acct_1", image_request())

    assert provider.submitted == []
    assert await task_repository.list_for_account("acct_1") == []


@pytest.mark.asyncio
async def test_free_plan_batch_is_limited_to_one(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=100)
    orchestrator = make_orchestrator(ScriptedProvider())

    with pytest.raises(PlanLimitExceeded) as exc:
        await orchestrator.submit_batch("acct_1", image_request(), 2)

    assert exc.value.status_code == 403
    assert await _balance(store, "acct_1") == 100


@pytest.mark.asyncio
async def test_paid_plan_batch_reserves_every_task(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=50, tier=PlanTier.PRO, customer_ref="cus_1")
    orchestrator = make_orchestrator(ScriptedProvider([succeeded("https://cdn.test/a.png")]))

    tasks = await orchestrator.submit_batch("acct_1", image_request("2K"), 4)
    for task in tasks:
        await orchestrator.wait(task.task_id)

    assert len({task.task_id for task in tasks}) == 4
    assert await _balance(store, "acct_1") == 10
    commits = [entry for entry in await store.list_entries("acct_1") if entry.reason == LedgerReason.COMMIT]
    assert len(commits) == 4


@pytest.mark.asyncio
async def test_batch_beyond_balance_is_rejected_up_front(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=25, tier=PlanTier.PRO, customer_ref="cus_1")
    provider = ScriptedProvider()
    orchestrator = make_orchestrator(provider)

    with pytest.raises(InsufficientCredits):
        await orchestrator.submit_batch("acct_1", image_request("2K"), 3)

    assert provider.submitted == []
    assert await _balance(store, "acct_1") == 25


@pytest.mark.asyncio
async def test_resume_pending_restarts_polling(make_orchestrator, accountant, store, task_repository, clock):
    await open_account(store, accountant, "acct_1", balance=10)
    request = image_request()
    pending = GenerationTask(account_id="acct_1", request=request, credits_reserved=6, provider_task_id="kie_old")
    await accountant.reserve("acct_1", 6, pending.task_id)
    await task_repository.create(pending)

    orphan = GenerationTask(
        account_id="acct_1",
        request=request,
        credits_reserved=0,
        created_at=clock() - timedelta(minutes=5),
    )
    await accountant.reserve("acct_1", 0, orphan.task_id)
    await task_repository.create(orphan)

    orchestrator = make_orchestrator(ScriptedProvider([succeeded("https://cdn.test/a.png")]))
    resumed = await orchestrator.resume_pending()
    done = await orchestrator.wait(pending.task_id)

    assert resumed == 1
    assert done.state == TaskState.SUCCEEDED
    assert (await orchestrator.get_task(orphan.task_id)).failure_reason == FailureReason.SUBMISSION_FAILED
    assert await _balance(store, "acct_1") == 4


@pytest.mark.asyncio
async def test_shutdown_stops_pollers_without_resolving(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    orchestrator = make_orchestrator(ScriptedProvider([running(0.1)]), poll_interval_seconds=60)

    task = await orchestrator.submit("acct_1", image_request())
    await orchestrator.shutdown()

    assert (await orchestrator.get_task(task.task_id)).state == TaskState.SUBMITTED
    assert (await store.get_reservation(task.task_id)).status == ReservationStatus.HELD


@pytest.mark.asyncio
async def test_stage_inputs_uploads_inline_images(make_orchestrator):
    provider = ScriptedProvider()
    orchestrator = make_orchestrator(provider)

    urls = await orchestrator.stage_inputs(
        [{"url": "https://example.test/person.png"}, {"base64": "aGVsbG8=", "mime_type": "image/jpeg"}]
    )

    assert urls == ["https://example.test/person.png", "https://uploads.test/1.png"]
    assert provider.uploads == ["image/jpeg"]


@pytest.mark.asyncio
async def test_accepted_task_is_kept_when_storing_provider_id_fails(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    tasks = FlakyTaskRepository(failing_updates={1, 2, 3})
    orchestrator = make_orchestrator(
        ScriptedProvider([running(0.2), succeeded("https://cdn.test/out.png")]),
        tasks=tasks,
    )

    task = await orchestrator.submit("acct_1", image_request())

    assert task.provider_task_id == "kie_1"
    assert (await orchestrator.get_task(task.task_id)).provider_task_id == "kie_1"

    done = await orchestrator.wait(task.task_id)

    assert done.state == TaskState.SUCCEEDED
    assert (await tasks.get(task.task_id)).state == TaskState.SUCCEEDED
    assert await _balance(store, "acct_1") == 4
    assert (await store.get_reservation(task.task_id)).status == ReservationStatus.COMMITTED


@pytest.mark.asyncio
async def test_unstored_success_is_not_turned_into_a_timeout(make_orchestrator, accountant, store, clock):
    await open_account(store, accountant, "acct_1", balance=10)
    tasks = FlakyTaskRepository(failing_updates={2})
    orchestrator = make_orchestrator(
        ScriptedProvider([succeeded("https://cdn.test/out.png")]),
        tasks=tasks,
        storage_attempts=1,
        poll_interval_seconds=60,
    )

    task = await orchestrator.submit("acct_1", image_request())
    with pytest.raises(StorageUnavailable):
        await orchestrator.poll_once(task.task_id)
    assert (await store.get_reservation(task.task_id)).status == ReservationStatus.COMMITTED

    clock.advance(400)
    done = await orchestrator.poll_once(task.task_id)

    assert done.state == TaskState.SUCCEEDED
    assert done.result_urls == ["https://cdn.test/out.png"]
    assert await _balance(store, "acct_1") == 4
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_committed_task_finishes_as_success_after_restart(make_orchestrator, accountant, store, clock):
    await open_account(store, accountant, "acct_1", balance=10)
    tasks = FlakyTaskRepository(failing_updates={2})
    provider = ScriptedProvider([succeeded("https://cdn.test/out.png")])
    first = make_orchestrator(provider, tasks=tasks, storage_attempts=1, poll_interval_seconds=60)

    task = await first.submit("acct_1", image_request())
    with pytest.raises(StorageUnavailable):
        await first.poll_once(task.task_id)
    await first.shutdown()

    restarted = make_orchestrator(provider, tasks=tasks, poll_interval_seconds=60)
    clock.advance(400)
    done = await restarted.poll_once(task.task_id)

    assert done.state == TaskState.SUCCEEDED
    assert done.result_urls == ["https://cdn.test/out.png"]
    assert await _balance(store, "acct_1") == 4
    assert (await store.get_reservation(task.task_id)).status == ReservationStatus.COMMITTED


@pytest.mark.asyncio
async def test_cancel_of_committed_task_keeps_the_result(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=10)
    tasks = FlakyTaskRepository(failing_updates={2})
    provider = ScriptedProvider(
        [
            succeeded("https://cdn.test/out.png"),
            ProviderTransientError("reset"),
            succeeded("https://cdn.test/out.png"),
        ]
    )
    first = make_orchestrator(provider, tasks=tasks, storage_attempts=1, poll_interval_seconds=60)

    task = await first.submit("acct_1", image_request())
    with pytest.raises(StorageUnavailable):
        await first.poll_once(task.task_id)
    await first.shutdown()

    restarted = make_orchestrator(provider, tasks=tasks, poll_interval_seconds=60)
    result = await restarted.cancel(task.task_id, account_id="acct_1")

    assert result.state == TaskState.SUCCEEDED
    assert await _balance(store, "acct_1") == 4


@pytest.mark.asyncio
async def test_finished_tasks_release_their_locks(make_orchestrator, accountant, store):
    await open_account(store, accountant, "acct_1", balance=100)
    orchestrator = make_orchestrator(ScriptedProvider([succeeded("https://cdn.test/out.png")]))

    tasks = [await orchestrator.submit("acct_1", image_request()) for _ in range(10)]
    for task in tasks:
        await orchestrator.wait(task.task_id)
    gc.collect()

    assert len(orchestrator._locks) == 0
    assert await _balance(store, "acct_1") == 40


@pytest.mark.asyncio
async def test_resume_leaves_recent_unsubmitted_task_to_its_worker(
    make_orchestrator, accountant, store, task_repository, clock
):
    await open_account(store, accountant, "acct_1", balance=10)
    in_flight = GenerationTask(account_id="acct_1", request=image_request(), credits_reserved=6, created_at=clock())
    await accountant.reserve("acct_1", 6, in_flight.task_id)
    await task_repository.create(in_flight)
    orchestrator = make_orchestrator(ScriptedProvider([succeeded("https://cdn.test/out.png")]), poll_interval_seconds=60)

    resumed = await orchestrator.resume_pending()

    assert resumed == 1
    assert (await orchestrator.get_task(in_flight.task_id)).state == TaskState.SUBMITTED
    assert (await store.get_reservation(in_flight.task_id)).status == ReservationStatus.HELD

    # The submitting worker records the provider's id.
    await task_repository.update(in_flight.model_copy(update={"provider_task_id": "kie_other"}))
    done = await orchestrator.poll_once(in_flight.task_id)

    assert done.state == TaskState.SUCCEEDED
    assert await _balance(store, "acct_1") == 4
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_unsubmitted_task_fails_once_the_submission_window_passes(
    make_orchestrator, accountant, store, task_repository, clock
):
    await open_account(store, accountant, "acct_1", balance=10)
    stalled = GenerationTask(account_id="acct_1", request=image_request(), credits_reserved=6, created_at=clock())
    await accountant.reserve("acct_1", 6, stalled.task_id)
    await task_repository.create(stalled)
    orchestrator = make_orchestrator(ScriptedProvider(), poll_interval_seconds=60)

    await orchestrator.resume_pending()
    clock.advance(91)
    done = await orchestrator.poll_once(stalled.task_id)

    assert done.state == TaskState.FAILED
    assert done.failure_reason == FailureReason.SUBMISSION_FAILED
    assert await _balance(store, "acct_1") == 10
    assert (await store.get_reservation(stalled.task_id)).status == ReservationStatus.REFUNDED
    await orchestrator.shutdown()
