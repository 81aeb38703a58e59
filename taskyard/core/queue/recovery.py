# taskyard/core/queue/recovery.py
"""Recovery sweeper: reclaim running tasks whose lease expired unsettled."""

from __future__ import annotations

from psycopg.types.json import Jsonb
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.executor.errors import TaskErrorCode
from taskyard.core.logging import get_logger
from taskyard.core.models.records import RecoveryResult, TaskRecord
from taskyard.core.queue.backoff import compute_backoff_ms
from taskyard.core.queue.settlement import upsert_dead_letter
from taskyard.core.queue.sql import (
    FAIL_EXPIRED_SQL,
    REQUEUE_EXPIRED_SQL,
    SELECT_EXPIRED_RUNNING_SQL,
)
from taskyard.core.types.status import DeadReason

logger = get_logger('recovery')

LEASE_EXPIRED_REQUEUE_MESSAGE = 'Worker lease expired before completion'
LEASE_EXPIRED_FAILED_MESSAGE = 'Worker lease expired and max attempts reached'


async def recover_expired_running(
    session: AsyncSession,
    *,
    limit: int,
    backoff_base_ms: int,
    backoff_max_ms: int,
) -> RecoveryResult:
    """Requeue or dead-letter up to ``limit`` running tasks with an expired lease.

    Rows are taken oldest expiry first with SKIP LOCKED, so several workers may
    sweep at once without blocking each other or double-processing a row.
    """
    limit = max(1, min(200, round(limit)))
    base_ms = max(100, round(backoff_base_ms))
    max_ms = max(base_ms, round(backoff_max_ms))

    res = await session.execute(SELECT_EXPIRED_RUNNING_SQL, {'limit': limit})
    expired = [TaskRecord.from_row(row) for row in res.mappings().all()]

    result = RecoveryResult(processed=len(expired))
    for task in expired:
        attempts = max(1, task.attempt_count)
        max_attempts = max(1, task.max_attempts)
        context = {
            'reason': 'lease_expired',
            'traceId': task.trace_id,
            'attempt': attempts,
            'maxAttempts': max_attempts,
        }

        if attempts < max_attempts:
            await session.execute(
                REQUEUE_EXPIRED_SQL,
                {
                    'task_id': task.id,
                    'error_code': TaskErrorCode.EXECUTION_FAILED.value,
                    'error_message': LEASE_EXPIRED_REQUEUE_MESSAGE,
                    'error_context': Jsonb(context),
                    'backoff_ms': compute_backoff_ms(attempts, base_ms, max_ms),
                },
            )
            result.requeued += 1
            continue

        await session.execute(
            FAIL_EXPIRED_SQL,
            {
                'task_id': task.id,
                'error_code': TaskErrorCode.EXECUTION_FAILED.value,
                'error_message': LEASE_EXPIRED_FAILED_MESSAGE,
                'error_context': Jsonb(context),
            },
        )
        await upsert_dead_letter(
            session,
            task.id,
            attempts=attempts,
            max_attempts=max_attempts,
            dead_reason=DeadReason.LEASE_EXPIRED_MAX_ATTEMPTS,
        )
        result.failed += 1

    return result
