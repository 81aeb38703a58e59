# taskyard/core/queue/tasks.py
"""Producer and operator mutations on single tasks."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any

from psycopg.types.json import Jsonb
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.models.records import TaskRecord
from taskyard.core.queue.filters import normalize_filter_string, normalize_max_attempts
from taskyard.core.queue.sql import (
    CANCEL_TASK_SQL,
    GET_TASK_SQL,
    INSERT_TASK_SQL,
    UPDATE_TASK_REPORT_SQL,
)
from taskyard.core.types.status import LEASE_CLEARING_STATES, TaskStatus, TaskType

LIST_TASKS_LIMIT = 500


async def create_task(
    session: AsyncSession,
    *,
    episode_id: str,
    job_kind: str,
    type: TaskType | str = TaskType.SYSTEM,
    shot_id: str | None = None,
    payload: Mapping[str, Any] | None = None,
    max_attempts: int | None = None,
    trace_id: str | None = None,
    idempotency_key: str | None = None,
) -> TaskRecord:
    """Enqueue a task, or return the existing one for a repeated idempotency key.

    The key is scoped by (episode_id, job_kind). A blank key is stored as NULL
    and never deduplicates.
    """
    task_type = type.value if isinstance(type, TaskType) else TaskType(type).value
    res = await session.execute(
        INSERT_TASK_SQL,
        {
            'id': str(uuid.uuid4()),
            'episode_id': episode_id,
            'shot_id': normalize_filter_string(shot_id),
            'type': task_type,
            'job_kind': job_kind,
            'max_attempts': normalize_max_attempts(max_attempts),
            'trace_id': normalize_filter_string(trace_id) or str(uuid.uuid4()),
            'idempotency_key': normalize_filter_string(idempotency_key),
            'payload': Jsonb(dict(payload or {})),
        },
    )
    return TaskRecord.from_row(res.mappings().one())


async def get_task(session: AsyncSession, task_id: str) -> TaskRecord | None:
    res = await session.execute(GET_TASK_SQL, {'task_id': task_id})
    row = res.mappings().first()
    return TaskRecord.from_row(row) if row is not None else None


async def list_tasks(
    session: AsyncSession,
    *,
    episode_id: str | None = None,
    status: TaskStatus | None = None,
) -> list[TaskRecord]:
    """Newest first, at most 500 rows."""
    conditions: list[str] = []
    params: dict[str, Any] = {'limit': LIST_TASKS_LIMIT}
    if episode_id:
        conditions.append('episode_id = :episode_id')
        params['episode_id'] = episode_id
    if status is not None:
        conditions.append('status = :status')
        params['status'] = status.value
    where_sql = f"WHERE {' AND '.join(conditions)}" if conditions else ''
    res = await session.execute(
        text(
            f"""
            SELECT *
            FROM taskyard_tasks
            {where_sql}
            ORDER BY created_at DESC
            LIMIT :limit
            """
        ),
        params,
    )
    return [TaskRecord.from_row(row) for row in res.mappings().all()]


async def cancel_task(session: AsyncSession, task_id: str) -> TaskRecord | None:
    """Cancel a queued or running task; None if it is in any other status.

    A running task keeps executing in its worker, but with the lease cleared
    that worker's heartbeat and settlement become stale no-ops.
    """
    res = await session.execute(CANCEL_TASK_SQL, {'task_id': task_id})
    row = res.mappings().first()
    return TaskRecord.from_row(row) if row is not None else None


# Running is entered only by a claim and failed only through settlement,
# which also writes the dead letter.
REPORTABLE_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.QUEUED,
    TaskStatus.COMPLETED,
    TaskStatus.CANCELLED,
})


async def update_task_report(
    session: AsyncSession,
    task_id: str,
    *,
    status: TaskStatus | None = None,
    progress: float | None = None,
    result: Mapping[str, Any] | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
    error_context: Mapping[str, Any] | None = None,
) -> TaskRecord | None:
    """Record externally reported progress or outcome on a queued or running task.

    Without a status only progress and result change, and a running task keeps
    its lease. With a status (queued, completed or cancelled) the error fields
    are overwritten and the lease is dropped; queued also makes the task
    immediately claimable. A missing result keeps the stored one.

    Returns None when the task is missing or already terminal.

    Raises:
        ValueError: If ``status`` is running or failed.
    """
    if status is not None and status not in REPORTABLE_STATES:
        raise ValueError(
            f'cannot report status {status.value!r}; '
            f'allowed: {", ".join(sorted(s.value for s in REPORTABLE_STATES))}'
        )
    res = await session.execute(
        UPDATE_TASK_REPORT_SQL,
        {
            'task_id': task_id,
            'status': status.value if status is not None else None,
            'progress': progress,
            'result': Jsonb(dict(result)) if result is not None else None,
            'error_code': error_code,
            'error_message': error_message,
            'error_context': Jsonb(dict(error_context)) if error_context is not None else None,
            'clears_lease': status is not None and status in LEASE_CLEARING_STATES,
        },
    )
    row = res.mappings().first()
    return TaskRecord.from_row(row) if row is not None else None
