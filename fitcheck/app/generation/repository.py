"""Persistence for generation task records."""
from __future__ import annotations

import json
from typing import Dict, List, Optional, Protocol, Sequence

import asyncpg

from ..exceptions import InvalidTaskTransition, TaskNotFound
from ..ledger.repository import storage_connection
from .models import FailureReason, GenerationRequest, GenerationTask, TaskState

_ACTIVE_STATES = (TaskState.SUBMITTED.value, TaskState.GENERATING.value)


class TaskRepository(Protocol):
    async def create(self, task: GenerationTask) -> GenerationTask:
        ...

    async def get(self, task_id: str) -> Optional[GenerationTask]:
        ...

    async def update(self, task: GenerationTask) -> GenerationTask:
        ...

    async def list_active(self) -> Sequence[GenerationTask]:
        ...

    async def list_for_account(self, account_id: str, *, limit: int = 50) -> Sequence[GenerationTask]:
        ...


class InMemoryTaskRepository:
    def __init__(self) -> None:
        self._tasks: Dict[str, GenerationTask] = {}

    async def create(self, task: GenerationTask) -> GenerationTask:
        if task.task_id in self._tasks:
            raise ValueError(f"task {task.task_id} already exists")
        self._tasks[task.task_id] = task
        return task

    async def get(self, task_id: str) -> Optional[GenerationTask]:
        return self._tasks.get(task_id)

    async def update(self, task: GenerationTask) -> GenerationTask:
        current = self._tasks.get(task.task_id)
        if current is None:
            raise TaskNotFound(task.task_id)
        if current.is_terminal:
            raise InvalidTaskTransition(
                task_id=task.task_id,
                current=current.state.value,
                requested=task.state.value,
            )
        self._tasks[task.task_id] = task
        return task

    async def list_active(self) -> Sequence[GenerationTask]:
        return [task for task in self._tasks.values() if not task.is_terminal]

    async def list_for_account(self, account_id: str, *, limit: int = 50) -> Sequence[GenerationTask]:
        tasks = [task for task in self._tasks.values() if task.account_id == account_id]
        tasks.sort(key=lambda task: task.created_at, reverse=True)
        return tasks[:limit]


def _row_to_task(row) -> GenerationTask:
    result_urls = row["result_urls"]
    request = row["request"]
    return GenerationTask(
        task_id=row["task_id"],
        account_id=row["account_id"],
        provider_task_id=row["provider_task_id"],
        state=TaskState(row["state"]),
        progress=float(row["progress"]),
        result_urls=json.loads(result_urls) if isinstance(result_urls, str) else list(result_urls or []),
        error_message=row["error_message"],
        failure_reason=FailureReason(row["failure_reason"]) if row["failure_reason"] else None,
        credits_reserved=int(row["credits_reserved"]),
        request=GenerationRequest.model_validate(json.loads(request) if isinstance(request, str) else request),
        created_at=row["created_at"],
        last_polled_at=row["last_polled_at"],
        completed_at=row["completed_at"],
    )


class PostgresTaskRepository:
    """Task records in the ``generation_tasks`` table.

    ``update`` only touches rows that are still active, so a terminal task is
    never overwritten even if two writers race.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(self, task: GenerationTask) -> GenerationTask:
        async with storage_connection(self._pool) as connection:
            await connection.execute(
                """
                INSERT INTO generation_tasks (
                    task_id,
                    account_id,
                    provider_task_id,
                    state,
                    progress,
                    result_urls,
                    error_message,
                    failure_reason,
                    credits_reserved,
                    request,
                    created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, $10::jsonb, $11)
                """,
                task.task_id,
                task.account_id,
                task.provider_task_id,
                task.state.value,
                task.progress,
                json.dumps(task.result_urls),
                task.error_message,
                task.failure_reason.value if task.failure_reason else None,
                task.credits_reserved,
                task.request.model_dump_json(),
                task.created_at,
            )
        return task

    async def get(self, task_id: str) -> Optional[GenerationTask]:
        async with storage_connection(self._pool) as connection:
            row = await connection.fetchrow(
                "SELECT * FROM generation_tasks WHERE task_id = $1",
                task_id,
            )
        return _row_to_task(row) if row else None

    async def update(self, task: GenerationTask) -> GenerationTask:
        async with storage_connection(self._pool) as connection:
            row = await connection.fetchrow(
                """
                UPDATE generation_tasks
                SET provider_task_id = $2,
                    state = $3,
                    progress = $4,
                    result_urls = $5::jsonb,
                    error_message = $6,
                    failure_reason = $7,
                    last_polled_at = $8,
                    completed_at = $9
                WHERE task_id = $1 AND state = ANY($10::text[])
                RETURNING *
                """,
                task.task_id,
                task.provider_task_id,
                task.state.value,
                task.progress,
                json.dumps(task.result_urls),
                task.error_message,
                task.failure_reason.value if task.failure_reason else None,
                task.last_polled_at,
                task.completed_at,
                list(_ACTIVE_STATES),
            )
            if row is not None:
                return _row_to_task(row)
            current = await connection.fetchrow(
                "SELECT state FROM generation_tasks WHERE task_id = $1",
                task.task_id,
            )
        if current is None:
            raise TaskNotFound(task.task_id)
        raise InvalidTaskTransition(task_id=task.task_id, current=current["state"], requested=task.state.value)

    async def list_active(self) -> Sequence[GenerationTask]:
        async with storage_connection(self._pool) as connection:
            rows = await connection.fetch(
                """
                SELECT *
                FROM generation_tasks
                WHERE state = ANY($1::text[])
                ORDER BY created_at
                """,
                list(_ACTIVE_STATES),
            )
        return [_row_to_task(row) for row in rows]

    async def list_for_account(self, account_id: str, *, limit: int = 50) -> Sequence[GenerationTask]:
        async with storage_connection(self._pool) as connection:
            rows = await connection.fetch(
                """
                SELECT *
                FROM generation_tasks
                WHERE account_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                account_id,
                limit,
            )
        tasks: List[GenerationTask] = [_row_to_task(row) for row in rows]
        return tasks


__all__ = ["InMemoryTaskRepository", "PostgresTaskRepository", "TaskRepository"]
