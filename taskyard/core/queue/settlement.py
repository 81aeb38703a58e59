# taskyard/core/queue/settlement.py
"""Settlement engine: lease-gated completion and failure handling."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any

from psycopg.types.json import Jsonb
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.logging import get_logger
from taskyard.core.models.records import SettleResult, TaskRecord
from taskyard.core.queue.sql import (
    COMPLETE_TASK_SQL,
    MARK_FAILED_ATTEMPT_SQL,
    REQUEUE_FAILED_ATTEMPT_SQL,
    SELECT_LEASED_TASK_FOR_UPDATE_SQL,
    UPSERT_DEAD_LETTER_SQL,
)
from taskyard.core.types.status import DeadReason, SettleOutcome

logger = get_logger('settlement')


def _json_or_none(value: Mapping[str, Any] | None) -> Jsonb | None:
    return Jsonb(dict(value)) if value is not None else None


async def complete_task(
    session: AsyncSession,
    task_id: str,
    lease_token: str,
    result: Mapping[str, Any],
) -> TaskRecord | None:
    """Mark a leased task completed and store its result.

    Returns None when the lease is stale: the result is discarded and nothing
    is written. That is an expected race, not an error.
    """
    res = await session.execute(
        COMPLETE_TASK_SQL,
        {'task_id': task_id, 'lease_token': lease_token, 'result': Jsonb(dict(result))},
    )
    row = res.mappings().first()
    return TaskRecord.from_row(row) if row is not None else None


async def upsert_dead_letter(
    session: AsyncSession,
    task_id: str,
    *,
    attempts: int,
    max_attempts: int,
    dead_reason: DeadReason,
) -> None:
    """Snapshot the task row into its dead letter, replacing any previous one."""
    await session.execute(
        UPSERT_DEAD_LETTER_SQL,
        {
            'id': str(uuid.uuid4()),
            'task_id': task_id,
            'attempts': attempts,
            'max_attempts': max_attempts,
            'dead_reason': dead_reason.value,
        },
    )


async def settle_failure(
    session: AsyncSession,
    task_id: str,
    *,
    lease_token: str,
    error_code: str,
    error_message: str,
    error_context: Mapping[str, Any] | None,
    retryable: bool,
    backoff_ms: float,
) -> SettleResult:
    """Record a failed attempt: requeue with backoff or fail into the dead letters.

    The task row is locked under the lease predicate first. If the lease is
    no longer valid the outcome is STALE and nothing is written.
    A retryable error with attempts left requeues; anything else fails the
    task and writes a dead letter whose reason records which rule stopped it.
    """
    res = await session.execute(
        SELECT_LEASED_TASK_FOR_UPDATE_SQL,
        {'task_id': task_id, 'lease_token': lease_token},
    )
    active_row = res.mappings().first()
    if active_row is None:
        return SettleResult(task=None, outcome=SettleOutcome.STALE)

    active = TaskRecord.from_row(active_row)
    attempts = max(1, active.attempt_count)
    max_attempts = max(1, active.max_attempts)
    params = {
        'task_id': task_id,
        'lease_token': lease_token,
        'error_code': error_code,
        'error_message': error_message,
        'error_context': _json_or_none(error_context),
    }

    if retryable and attempts < max_attempts:
        res = await session.execute(
            REQUEUE_FAILED_ATTEMPT_SQL,
            {**params, 'backoff_ms': max(0, round(backoff_ms))},
        )
        row = res.mappings().first()
        return SettleResult(
            task=TaskRecord.from_row(row) if row is not None else None,
            outcome=SettleOutcome.RETRIED,
        )

    res = await session.execute(MARK_FAILED_ATTEMPT_SQL, params)
    row = res.mappings().first()
    failed_task = TaskRecord.from_row(row) if row is not None else None
    if failed_task is not None:
        dead_reason = (
            DeadReason.MAX_ATTEMPTS_EXCEEDED if retryable else DeadReason.NON_RETRYABLE
        )
        await upsert_dead_letter(
            session,
            task_id,
            attempts=attempts,
            max_attempts=max_attempts,
            dead_reason=dead_reason,
        )
        logger.debug(f'Dead-lettered task {task_id} reason={dead_reason.value}')
    return SettleResult(
        task=failed_task,
        outcome=SettleOutcome.FAILED,
        dead_lettered=failed_task is not None,
    )
