"""Drive generation tasks from submission to a terminal state."""
from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from ..credits.service import CreditAccountant
from ..exceptions import (
    InsufficientCredits,
    InvalidTaskTransition,
    PlanLimitExceeded,
    StorageUnavailable,
    TaskNotFound,
)
from ..ledger.models import ReservationStatus
from .costs import credit_cost
from .models import FailureReason, GenerationRequest, GenerationTask, ProviderStatus, ProviderTaskStatus
from .provider import GenerationProvider, ProviderError, ProviderTerminalError, ProviderTransientError
from .repository import TaskRepository

logger = logging.getLogger("generation")

MIN_BACKOFF_SECONDS = 1.0


class TaskOrchestrator:
    """Owns the lifecycle of generation tasks.

    Credits are reserved before the provider is contacted. Every task then
    ends in ``succeeded`` (reservation committed) or ``failed`` (reservation
    refunded). Credits are settled before the terminal state is stored, and
    both settlements are idempotent, so an interrupted finalisation can be
    repeated safely.

    Only explicit provider failures, an empty success, cancellation, the
    polling deadline or a submission that never reached the provider fail a
    task. Transient provider or storage errors are retried with capped
    exponential backoff. A task write that keeps failing is held in memory
    and retried by the task's poller, so an accepted provider job is never
    abandoned.
    """

    def __init__(
        self,
        accountant: CreditAccountant,
        tasks: TaskRepository,
        provider: GenerationProvider,
        *,
        poll_interval_seconds: float = 3.0,
        max_backoff_seconds: float = 30.0,
        max_poll_seconds: float = 360.0,
        submit_attempts: int = 3,
        submit_backoff_seconds: float = 1.0,
        submit_timeout_seconds: float = 30.0,
        storage_attempts: int = 3,
        storage_backoff_seconds: float = 0.2,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._accountant = accountant
        self._tasks = tasks
        self._provider = provider
        self._poll_interval = max(0.0, poll_interval_seconds)
        self._max_backoff = max(0.0, max_backoff_seconds)
        self._max_poll = timedelta(seconds=max_poll_seconds)
        self._submit_attempts = max(1, submit_attempts)
        self._submit_backoff = max(0.0, submit_backoff_seconds)
        self._storage_attempts = max(1, storage_attempts)
        self._storage_backoff = max(0.0, storage_backoff_seconds)
        # Longest a healthy worker can spend between opening a task and
        # storing the provider's task id.
        self._submission_window = timedelta(
            seconds=sum(
                max(0.0, submit_timeout_seconds) + self._submit_backoff * attempt
                for attempt in range(1, self._submit_attempts + 1)
            )
            + sum(self._storage_backoff * attempt for attempt in range(1, self._storage_attempts + 1))
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._pollers: Dict[str, asyncio.Task] = {}
        self._unsaved: Dict[str, GenerationTask] = {}

    # ------------------------------------------------------------------
    # Submission

    async def submit(self, account_id: str, request: GenerationRequest) -> GenerationTask:
        task = await self._open_task(account_id, request)
        return await self._dispatch(task)

    async def submit_batch(self, account_id: str, request: GenerationRequest, count: int) -> List[GenerationTask]:
        """Submit ``count`` generations of the same request."""

        if count < 1:
            raise ValueError("count must be at least 1")
        plan = await self._accountant.resolver.resolve_plan(account_id)
        if count > plan.definition.max_batch_size:
            raise PlanLimitExceeded(
                plan=plan.plan_tier.value,
                requested=count,
                allowed=plan.definition.max_batch_size,
            )

        total = credit_cost(request) * count
        affordability = await self._accountant.check_affordability(account_id, total)
        if not affordability.allowed:
            raise InsufficientCredits(account_id=account_id, required=total, available=affordability.balance)

        opened: List[GenerationTask] = []
        try:
            for _ in range(count):
                opened.append(await self._open_task(account_id, request))
        except InsufficientCredits:
            # Lost a race with another request on the same account.
            for task in opened:
                await self._finalize_failure(task, FailureReason.SUBMISSION_FAILED, "batch could not be fully reserved")
            raise

        return list(await asyncio.gather(*(self._dispatch(task) for task in opened)))

    async def stage_inputs(self, images: Sequence[Dict[str, str]]) -> List[str]:
        """Return provider URLs for ``images``, uploading inline ones first.

        Each image is either ``{"url": ...}`` or ``{"base64": ..., "mime_type": ...}``.
        """

        urls: List[str] = []
        for image in images:
            if image.get("url"):
                urls.append(image["url"])
            else:
                urls.append(await self._provider.upload_image(image["base64"], image.get("mime_type") or "image/png"))
        return urls

    async def _open_task(self, account_id: str, request: GenerationRequest) -> GenerationTask:
        task = GenerationTask(account_id=account_id, request=request, created_at=self._clock())
        entry = await self._accountant.reserve(account_id, credit_cost(request), task.task_id)
        task = task.model_copy(update={"credits_reserved": -entry.delta})
        try:
            await self._tasks.create(task)
        except StorageUnavailable:
            await self._accountant.refund(task.task_id)
            raise
        logger.info(
            "Task %s submitted",
            task.task_id,
            extra={"account_id": account_id, "credits_reserved": task.credits_reserved},
        )
        return task

    async def _dispatch(self, task: GenerationTask) -> GenerationTask:
        try:
            async with self._lock_for(task.task_id):
                task = await self._submit_to_provider(task)
        except StorageUnavailable:
            # The poller owns the task from here: it retries the held write,
            # or fails the task once the submission window has passed.
            self.track(task.task_id)
            pending = self._unsaved.get(task.task_id)
            if pending is None:
                raise
            logger.error("Task %s could not be stored; its poller will retry the write", task.task_id)
            return pending

        if not task.is_terminal:
            self.track(task.task_id)
        return task

    async def _submit_to_provider(self, task: GenerationTask) -> GenerationTask:
        provider_task_id: Optional[str] = None
        last_error: Optional[ProviderError] = None
        for attempt in range(1, self._submit_attempts + 1):
            try:
                provider_task_id = await self._provider.submit(task.request)
                break
            except ProviderTerminalError as exc:
                logger.warning("Provider rejected task %s: %s", task.task_id, exc)
                return await self._finalize_failure(task, FailureReason.SUBMISSION_FAILED, str(exc))
            except ProviderTransientError as exc:
                last_error = exc
                logger.warning(
                    "Provider submission failed",
                    extra={"task_id": task.task_id, "submit_attempt": attempt, "error": str(exc)},
                )
                if attempt < self._submit_attempts and self._submit_backoff > 0:
                    await asyncio.sleep(self._submit_backoff * attempt)

        if provider_task_id is None:
            return await self._finalize_failure(
                task,
                FailureReason.SUBMISSION_FAILED,
                f"provider unavailable after {self._submit_attempts} attempts: {last_error}",
            )
        return await self._store(task.model_copy(update={"provider_task_id": provider_task_id}))

    # ------------------------------------------------------------------
    # Polling

    async def poll_once(self, task_id: str) -> GenerationTask:
        """Advance ``task_id`` by one provider status read.

        Raises :class:`ProviderTransientError` when the provider could not be
        asked; the task is left untouched in that case. Raises
        :class:`StorageUnavailable` when the task could not be written; the
        new state is held and written by the next call.
        """

        async with self._lock_for(task_id):
            pending = self._unsaved.get(task_id)
            task = await self._store(pending) if pending is not None else await self._require(task_id)
            if task.is_terminal:
                return task
            if task.provider_task_id is None:
                if self._clock() - task.created_at < self._submission_window:
                    # Another worker may still be submitting it.
                    return task
                return await self._finalize_failure(
                    task,
                    FailureReason.SUBMISSION_FAILED,
                    "interrupted before the provider accepted the task",
                )
            if self._is_overdue(task):
                logger.warning("Task %s exceeded the polling deadline", task_id)
                return await self._finalize_failure(
                    task,
                    FailureReason.TIMEOUT,
                    f"no result within {int(self._max_poll.total_seconds())} seconds",
                )

            try:
                status = await self._provider.get_status(task.provider_task_id)
            except ProviderTerminalError as exc:
                return await self._finalize_failure(task, FailureReason.PROVIDER_ERROR, str(exc))
            return await self._apply_status(task, status)

    def track(self, task_id: str) -> asyncio.Task:
        """Start polling ``task_id`` in the background unless already polling."""

        existing = self._pollers.get(task_id)
        if existing is not None and not existing.done():
            return existing
        poller = asyncio.create_task(self._poll_until_done(task_id), name=f"poll-{task_id}")
        self._pollers[task_id] = poller
        poller.add_done_callback(lambda finished: self._poller_finished(task_id, finished))
        return poller

    async def wait(self, task_id: str) -> GenerationTask:
        """Wait for the background poller of ``task_id`` and return the task."""

        poller = self._pollers.get(task_id)
        if poller is not None:
            await asyncio.shield(poller)
        return await self._require(task_id)

    async def _poll_until_done(self, task_id: str) -> None:
        delay = self._poll_interval
        while True:
            await asyncio.sleep(delay)
            try:
                task = await self.poll_once(task_id)
            except (ProviderTransientError, StorageUnavailable) as exc:
                delay = min(self._max_backoff, max(delay * 2, self._poll_interval, MIN_BACKOFF_SECONDS))
                logger.info(
                    "Transient error polling task %s; retrying in %.1fs",
                    task_id,
                    delay,
                    extra={"error": str(exc)},
                )
                continue
            if task.is_terminal:
                return
            delay = self._poll_interval

    def _poller_finished(self, task_id: str, poller: asyncio.Task) -> None:
        if self._pollers.get(task_id) is poller:
            del self._pollers[task_id]
        if poller.cancelled():
            return
        exc = poller.exception()
        if exc is not None:
            logger.error("Polling task %s stopped unexpectedly", task_id, exc_info=exc)

    async def _apply_status(self, task: GenerationTask, status: ProviderTaskStatus) -> GenerationTask:
        if status.status == ProviderStatus.SUCCEEDED:
            if not status.result_urls:
                return await self._finalize_failure(
                    task,
                    FailureReason.EMPTY_RESULT,
                    "provider reported success without any result",
                )
            return await self._finalize_success(task, status.result_urls)
        if status.status == ProviderStatus.FAILED:
            return await self._finalize_failure(
                task,
                FailureReason.PROVIDER_ERROR,
                status.error or "generation failed",
            )
        return await self._store(task.with_progress(status.progress))

    def _is_overdue(self, task: GenerationTask) -> bool:
        return self._clock() - task.created_at >= self._max_poll

    # ------------------------------------------------------------------
    # Finalisation

    # The reservation outcome decides the task outcome: once credits are
    # committed the task can only succeed, once refunded it can only fail.

    async def _finalize_success(self, task: GenerationTask, result_urls: List[str]) -> GenerationTask:
        reservation = await self._accountant.commit(task.task_id)
        if reservation.status == ReservationStatus.REFUNDED:
            logger.warning("Task %s finished after its credits were refunded", task.task_id)
            return await self._store(
                task.fail(FailureReason.PROVIDER_ERROR, "result arrived after the credits were refunded")
            )
        done = await self._store(task.succeed(result_urls))
        logger.info(
            "Task %s succeeded",
            task.task_id,
            extra={"account_id": task.account_id, "result_count": len(result_urls)},
        )
        return done

    async def _finalize_failure(self, task: GenerationTask, reason: FailureReason, message: str) -> GenerationTask:
        if await self._accountant.refund(task.task_id) is None:
            reservation = await self._accountant.store.get_reservation(task.task_id)
            if reservation is not None and reservation.status == ReservationStatus.COMMITTED:
                return await self._complete_committed(task)
        failed = await self._store(task.fail(reason, message))
        logger.info(
            "Task %s failed (%s)",
            task.task_id,
            reason.value,
            extra={"account_id": task.account_id, "error": message},
        )
        return failed

    async def _complete_committed(self, task: GenerationTask) -> GenerationTask:
        """Store the result of a task whose credits were committed by an earlier attempt."""

        status: Optional[ProviderTaskStatus] = None
        if task.provider_task_id is not None:
            try:
                status = await self._provider.get_status(task.provider_task_id)
            except ProviderTerminalError as exc:
                logger.warning("Result lookup for committed task %s failed: %s", task.task_id, exc)
        if status is not None and status.status == ProviderStatus.SUCCEEDED and status.result_urls:
            logger.info("Task %s completed from its committed reservation", task.task_id)
            return await self._store(task.succeed(status.result_urls))

        logger.error(
            "Task %s was charged but its result is no longer available",
            task.task_id,
            extra={"account_id": task.account_id, "credits_reserved": task.credits_reserved},
        )
        return await self._store(task.fail(FailureReason.PROVIDER_ERROR, "result unavailable after settlement"))

    async def _store(self, task: GenerationTask) -> GenerationTask:
        """Write ``task``, retrying while storage is unavailable.

        When every attempt fails the task is kept in memory and
        :class:`StorageUnavailable` is raised; the next :meth:`poll_once`
        repeats the write. A task another worker already finished is
        returned as stored.
        """

        for attempt in range(1, self._storage_attempts + 1):
            try:
                stored = await self._tasks.update(task)
            except StorageUnavailable as exc:
                logger.warning(
                    "Storing task failed",
                    extra={"task_id": task.task_id, "storage_attempt": attempt, "error": str(exc)},
                )
                if attempt < self._storage_attempts and self._storage_backoff > 0:
                    await asyncio.sleep(self._storage_backoff * attempt)
                continue
            except InvalidTaskTransition:
                current = await self._require(task.task_id)
                if not current.is_terminal:
                    raise
                self._unsaved.pop(task.task_id, None)
                logger.info("Task %s was already finished as %s", task.task_id, current.state.value)
                return current
            self._unsaved.pop(task.task_id, None)
            return stored

        self._unsaved[task.task_id] = task
        raise StorageUnavailable(f"Task {task.task_id} could not be stored.")

    # ------------------------------------------------------------------
    # Queries and control

    async def get_task(self, task_id: str, *, account_id: Optional[str] = None) -> GenerationTask:
        task = self._unsaved.get(task_id) or await self._require(task_id)
        if account_id is not None and task.account_id != account_id:
            raise TaskNotFound(task_id)
        return task

    async def list_tasks(self, account_id: str, *, limit: int = 50) -> Sequence[GenerationTask]:
        return await self._tasks.list_for_account(account_id, limit=limit)

    async def cancel(self, task_id: str, *, account_id: Optional[str] = None) -> GenerationTask:
        """Stop polling and resolve the task now.

        A job the provider already finished still succeeds; anything else
        fails as ``canceled`` and its credits are refunded.
        """

        await self.get_task(task_id, account_id=account_id)
        await self._stop_polling(task_id)
        try:
            async with self._lock_for(task_id):
                return await self._cancel_locked(task_id)
        except StorageUnavailable:
            if task_id in self._unsaved:
                self.track(task_id)
            raise

    async def _cancel_locked(self, task_id: str) -> GenerationTask:
        pending = self._unsaved.get(task_id)
        task = await self._store(pending) if pending is not None else await self._require(task_id)
        if task.is_terminal:
            return task
        if task.provider_task_id is not None:
            try:
                status = await self._provider.get_status(task.provider_task_id)
            except ProviderError as exc:
                logger.info("Final status read for canceled task %s failed: %s", task_id, exc)
            else:
                if status.status == ProviderStatus.SUCCEEDED and status.result_urls:
                    return await self._finalize_success(task, status.result_urls)
        return await self._finalize_failure(task, FailureReason.CANCELED, "canceled by user")

    async def resume_pending(self) -> int:
        """Restart polling for every task left active by a previous process.

        A task without a provider id is failed and refunded once its
        submission window has passed; a younger one may still belong to a
        live worker, so it is watched instead.
        """

        resumed = 0
        for task in await self._tasks.list_active():
            if task.provider_task_id is None:
                task = await self.poll_once(task.task_id)
                if task.is_terminal:
                    continue
            self.track(task.task_id)
            resumed += 1
        if resumed:
            logger.info("Resumed polling for %s task(s)", resumed)
        return resumed

    async def shutdown(self) -> None:
        """Stop every poller without resolving its task."""

        pollers = list(self._pollers.values())
        for poller in pollers:
            poller.cancel()
        if pollers:
            await asyncio.gather(*pollers, return_exceptions=True)
        self._pollers.clear()

    async def _stop_polling(self, task_id: str) -> None:
        poller = self._pollers.pop(task_id, None)
        if poller is None or poller.done():
            return
        poller.cancel()
        await asyncio.gather(poller, return_exceptions=True)

    async def _require(self, task_id: str) -> GenerationTask:
        task = await self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        # Weak values: the lock goes away once no caller holds or waits on it.
        lock = self._locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[task_id] = lock
        return lock


__all__ = ["TaskOrchestrator"]
