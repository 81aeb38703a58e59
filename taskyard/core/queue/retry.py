# taskyard/core/queue/retry.py
"""Operator retries: single task, dead-letter batch and batch preview."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.logging import get_logger
from taskyard.core.models.records import (
    BulkRetryResult,
    DeadLetterPreview,
    TaskRecord,
)
from taskyard.core.queue.audit import insert_audit_log
from taskyard.core.queue.filters import (
    SAMPLE_SIZE,
    DeadLetterFilters,
    TaskFilters,
    build_dead_letter_where,
    normalize_actor,
    normalize_filter_string,
    normalize_limit,
    normalize_reason,
    normalize_task_ids,
)
from taskyard.core.queue.sql import (
    DELETE_DEAD_LETTER_SQL,
    RESET_TASK_FOR_RETRY_SQL,
    SELECT_TASK_FOR_UPDATE_SQL,
)
from taskyard.core.types.status import AuditAction, RunMode, TaskStatus

logger = get_logger('retry')

DEFAULT_RETRY_REASON = 'manual_retry'
DEFAULT_BULK_RETRY_REASON = 'manual_bulk_retry'


async def retry_task(
    session: AsyncSession,
    task_id: str,
    *,
    actor: str | None = None,
    reason: str | None = None,
    batch_id: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> TaskRecord | None:
    """Requeue a failed or cancelled task with a fresh attempt budget.

    Returns None, writing nothing, when the task is missing or in any other
    status. On success the dead letter (if any) is removed and a
    TASK_RETRY_SINGLE audit row is written in the same transaction.
    """
    actor = normalize_actor(actor)
    reason = normalize_reason(reason, DEFAULT_RETRY_REASON)

    res = await session.execute(SELECT_TASK_FOR_UPDATE_SQL, {'task_id': task_id})
    row = res.mappings().first()
    if row is None:
        return None
    previous = TaskRecord.from_row(row)
    if not previous.status.is_retryable:
        return None

    res = await session.execute(RESET_TASK_FOR_RETRY_SQL, {'task_id': task_id})
    row = res.mappings().first()
    if row is None:
        return None
    task = TaskRecord.from_row(row)

    res = await session.execute(DELETE_DEAD_LETTER_SQL, {'task_id': task_id})
    had_dead_letter = len(res.fetchall()) > 0

    await insert_audit_log(
        session,
        batch_id=batch_id,
        task_id=task.id,
        episode_id=task.episode_id,
        trace_id=task.trace_id,
        job_kind=task.job_kind,
        action=AuditAction.TASK_RETRY_SINGLE,
        actor=actor,
        message='Task retried from failed/cancelled state',
        metadata={
            'reason': reason,
            'previousStatus': previous.status.value,
            'hadDeadLetter': had_dead_letter,
            'previousAttemptCount': previous.attempt_count,
            'previousMaxAttempts': previous.max_attempts,
            **(metadata or {}),
        },
    )
    logger.info(f'Task {task.id} requeued by {actor} (was {previous.status.value})')
    return task


async def bulk_retry_dead_letters(
    session: AsyncSession,
    filters: DeadLetterFilters,
    *,
    limit: int | None = None,
    actor: str | None = None,
    reason: str | None = None,
    dry_run: bool = False,
) -> BulkRetryResult:
    """Retry dead-lettered tasks matching ``filters`` as one batch.

    Selection locks dead letter and task rows with SKIP LOCKED, so two
    operators running overlapping batches retry disjoint sets. Every audit
    row written by the batch shares one batch_id.
    """
    batch_id = str(uuid.uuid4())
    actor = normalize_actor(actor)
    reason = normalize_reason(reason, DEFAULT_BULK_RETRY_REASON)
    task_ids = normalize_task_ids(filters.task_ids)
    batch_limit = normalize_limit(limit, len(task_ids) or 100, 1, 500)

    scoped = DeadLetterFilters(
        episode_id=filters.episode_id,
        job_kind=filters.job_kind,
        trace_id=filters.trace_id,
        dead_reason=filters.dead_reason,
        error_code=filters.error_code,
        task_ids=task_ids,
    )
    where = build_dead_letter_where(scoped, alias='d')
    res = await session.execute(
        text(
            f"""
            SELECT d.*, t.status AS task_status
            FROM taskyard_task_dead_letters d
            INNER JOIN taskyard_tasks t ON t.id = d.task_id
            WHERE t.status IN ('failed', 'cancelled')
            {where.and_sql()}
            ORDER BY d.created_at ASC
            LIMIT :limit
            FOR UPDATE OF d, t SKIP LOCKED
            """
        ),
        {**where.params, 'limit': batch_limit},
    )
    candidates = list(res.mappings().all())
    selected_task_ids = [c['task_id'] for c in candidates]

    if dry_run:
        return BulkRetryResult(
            mode=RunMode.DRY_RUN,
            batch_id=batch_id,
            selected=len(candidates),
            retried=0,
            skipped=0,
            selected_task_ids=selected_task_ids,
        )

    retried_task_ids: list[str] = []
    skipped = 0
    for candidate in candidates:
        res = await session.execute(
            RESET_TASK_FOR_RETRY_SQL, {'task_id': candidate['task_id']}
        )
        row = res.mappings().first()
        if row is None:
            skipped += 1
            await insert_audit_log(
                session,
                batch_id=batch_id,
                task_id=candidate['task_id'],
                episode_id=candidate['episode_id'],
                trace_id=candidate['trace_id'],
                job_kind=candidate['job_kind'],
                action=AuditAction.TASK_RETRY_BATCH_SKIPPED,
                actor=actor,
                message='Task skipped during dead-letter bulk retry',
                metadata={
                    'reason': reason,
                    'deadReason': candidate['dead_reason'],
                    'errorCode': candidate['error_code'],
                },
            )
            continue

        task = TaskRecord.from_row(row)
        await session.execute(DELETE_DEAD_LETTER_SQL, {'task_id': task.id})
        retried_task_ids.append(task.id)
        await insert_audit_log(
            session,
            batch_id=batch_id,
            task_id=task.id,
            episode_id=task.episode_id,
            trace_id=task.trace_id,
            job_kind=task.job_kind,
            action=AuditAction.TASK_RETRY_BATCH_ITEM,
            actor=actor,
            message='Task retried from dead-letter batch',
            metadata={
                'reason': reason,
                'deadReason': candidate['dead_reason'],
                'errorCode': candidate['error_code'],
                'attempts': candidate['attempts'],
                'maxAttempts': candidate['max_attempts'],
            },
        )

    await insert_audit_log(
        session,
        batch_id=batch_id,
        episode_id=normalize_filter_string(filters.episode_id),
        trace_id=normalize_filter_string(filters.trace_id),
        job_kind=normalize_filter_string(filters.job_kind),
        action=AuditAction.TASK_RETRY_BATCH_SUMMARY,
        actor=actor,
        message='Dead-letter bulk retry finished',
        metadata={
            'reason': reason,
            'selected': len(candidates),
            'retried': len(retried_task_ids),
            'skipped': skipped,
            'filters': {
                'episodeId': filters.episode_id or None,
                'jobKind': filters.job_kind or None,
                'traceId': filters.trace_id or None,
                'deadReason': filters.dead_reason or None,
                'errorCode': filters.error_code or None,
                'taskIdsCount': len(task_ids),
                'taskIdsSample': task_ids[:SAMPLE_SIZE] if task_ids else None,
                'limit': batch_limit,
            },
        },
    )
    logger.info(
        f'Bulk retry batch {batch_id} by {actor}: '
        f'selected={len(candidates)} retried={len(retried_task_ids)} skipped={skipped}'
    )

    return BulkRetryResult(
        mode=RunMode.EXECUTED,
        batch_id=batch_id,
        selected=len(candidates),
        retried=len(retried_task_ids),
        skipped=skipped,
        selected_task_ids=selected_task_ids,
        retried_task_ids=retried_task_ids,
    )


async def preview_dead_letter_matches(
    session: AsyncSession,
    filters: TaskFilters,
    *,
    page: int | None = None,
    page_size: int | None = None,
) -> DeadLetterPreview:
    """Page through the task ids a bulk retry with these filters would consider.

    Explicit task ids are not part of the preview scope. Read only.
    """
    size = normalize_limit(page_size, 100, 1, 500)
    page_no = normalize_limit(page, 1, 1, 5000)
    offset = (page_no - 1) * size

    scope = filters
    if isinstance(filters, DeadLetterFilters):
        scope = DeadLetterFilters(
            episode_id=filters.episode_id,
            job_kind=filters.job_kind,
            trace_id=filters.trace_id,
            dead_reason=filters.dead_reason,
            error_code=filters.error_code,
        )
    where = build_dead_letter_where(scope, alias='d')

    base_sql = f"""
        FROM taskyard_task_dead_letters d
        INNER JOIN taskyard_tasks t ON t.id = d.task_id
        WHERE t.status IN ('failed', 'cancelled')
        {where.and_sql()}
    """
    res = await session.execute(text(f'SELECT COUNT(*) AS total {base_sql}'), where.params)
    total = int(res.scalar_one() or 0)

    res = await session.execute(
        text(
            f"""
            SELECT d.task_id
            {base_sql}
            ORDER BY d.created_at ASC
            LIMIT :limit
            OFFSET :offset
            """
        ),
        {**where.params, 'limit': size, 'offset': offset},
    )
    task_ids = [row[0] for row in res.fetchall()]

    return DeadLetterPreview(
        total=total,
        page=page_no,
        page_size=size,
        has_more=offset + len(task_ids) < total,
        task_ids=task_ids,
    )
