# taskyard/core/queue/audit.py
"""Audit log writer, queries and the retention pruner."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from psycopg.types.json import Jsonb
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.logging import get_logger
from taskyard.core.models.records import AuditLogRecord, PruneResult
from taskyard.core.queue.filters import (
    SAMPLE_SIZE,
    AuditLogFilters,
    build_audit_where,
    normalize_actor,
    normalize_filter_string,
    normalize_limit,
    normalize_reason,
)
from taskyard.core.queue.sql import DELETE_AUDIT_LOGS_BY_ID_SQL, INSERT_AUDIT_LOG_SQL
from taskyard.core.types.status import AuditAction, RunMode

logger = get_logger('audit')

DEFAULT_PRUNE_REASON = 'audit_log_retention'


async def insert_audit_log(
    session: AsyncSession,
    *,
    action: AuditAction,
    actor: str,
    message: str,
    metadata: Mapping[str, Any] | None = None,
    batch_id: str | None = None,
    task_id: str | None = None,
    episode_id: str | None = None,
    trace_id: str | None = None,
    job_kind: str | None = None,
) -> str:
    """Append one audit row inside the caller's transaction. Returns its id."""
    audit_id = str(uuid.uuid4())
    await session.execute(
        INSERT_AUDIT_LOG_SQL,
        {
            'id': audit_id,
            'batch_id': batch_id,
            'task_id': task_id,
            'episode_id': episode_id,
            'trace_id': trace_id,
            'job_kind': job_kind,
            'action': action.value,
            'actor': actor,
            'message': message,
            'metadata': Jsonb(dict(metadata or {})),
        },
    )
    return audit_id


async def count_audit_logs(session: AsyncSession, filters: AuditLogFilters) -> int:
    where = build_audit_where(filters)
    res = await session.execute(
        text(f'SELECT COUNT(*) AS total FROM taskyard_task_audit_logs {where.where_sql()}'),
        where.params,
    )
    return int(res.scalar_one() or 0)


async def list_audit_logs(
    session: AsyncSession,
    filters: AuditLogFilters,
    *,
    limit: int | None = None,
    offset: int | None = None,
) -> list[AuditLogRecord]:
    """Newest first; limit defaults to 50 (1..5000), offset to 0."""
    where = build_audit_where(filters)
    res = await session.execute(
        text(
            f"""
            SELECT *
            FROM taskyard_task_audit_logs
            {where.where_sql()}
            ORDER BY created_at DESC
            LIMIT :limit
            OFFSET :offset
            """
        ),
        {
            **where.params,
            'limit': normalize_limit(limit, 50, 1, 5000),
            'offset': normalize_limit(offset, 0, 0, 1_000_000),
        },
    )
    return [AuditLogRecord.from_row(row) for row in res.mappings().all()]


async def prune_audit_logs(
    session: AsyncSession,
    filters: AuditLogFilters,
    *,
    older_than_days: int | None = None,
    limit: int | None = None,
    actor: str | None = None,
    reason: str | None = None,
    dry_run: bool = False,
) -> PruneResult:
    """Delete up to ``limit`` audit rows older than the cutoff, oldest first.

    Rows are selected with SKIP LOCKED, so concurrent pruners take disjoint
    sets. An executed run writes one TASK_AUDIT_PRUNE_SUMMARY row, which is
    newer than the cutoff and so never a candidate of the same run.
    """
    days = normalize_limit(older_than_days, 30, 0, 3650)
    batch_size = normalize_limit(limit, 500, 1, 5000)
    actor = normalize_actor(actor)
    reason = normalize_reason(reason, DEFAULT_PRUNE_REASON)
    batch_id = str(uuid.uuid4())
    cutoff_at = datetime.now(timezone.utc) - timedelta(days=days)

    where = build_audit_where(filters)
    where.add('created_at < :cutoff_at', cutoff_at=cutoff_at)

    res = await session.execute(
        text(f'SELECT COUNT(*) AS total FROM taskyard_task_audit_logs {where.where_sql()}'),
        where.params,
    )
    matched = int(res.scalar_one() or 0)

    res = await session.execute(
        text(
            f"""
            SELECT id
            FROM taskyard_task_audit_logs
            {where.where_sql()}
            ORDER BY created_at ASC
            LIMIT :limit
            FOR UPDATE SKIP LOCKED
            """
        ),
        {**where.params, 'limit': batch_size},
    )
    selected_ids = [row[0] for row in res.fetchall()]

    if dry_run:
        return PruneResult(
            mode=RunMode.DRY_RUN,
            batch_id=batch_id,
            cutoff_at=cutoff_at,
            matched=matched,
            selected=len(selected_ids),
            deleted=0,
            sample_ids=selected_ids[:SAMPLE_SIZE],
        )

    deleted = 0
    if selected_ids:
        res = await session.execute(DELETE_AUDIT_LOGS_BY_ID_SQL, {'ids': selected_ids})
        deleted = len(res.fetchall())

    await insert_audit_log(
        session,
        batch_id=batch_id,
        episode_id=normalize_filter_string(filters.episode_id),
        trace_id=normalize_filter_string(filters.trace_id),
        job_kind=normalize_filter_string(filters.job_kind),
        action=AuditAction.TASK_AUDIT_PRUNE_SUMMARY,
        actor=actor,
        message=(
            'Task audit logs pruned'
            if deleted > 0
            else 'Task audit prune executed with no matched rows'
        ),
        metadata={
            'reason': reason,
            'olderThanDays': days,
            'cutoffAt': cutoff_at.isoformat(),
            'matched': matched,
            'selected': len(selected_ids),
            'deleted': deleted,
            'filters': {
                'episodeId': filters.episode_id or None,
                'jobKind': filters.job_kind or None,
                'traceId': filters.trace_id or None,
                'auditAction': filters.action or None,
                'auditActor': filters.actor or None,
                'batchId': filters.batch_id or None,
                'limit': batch_size,
            },
        },
    )
    if deleted:
        logger.debug(f'Pruned {deleted} audit rows older than {cutoff_at.isoformat()}')

    return PruneResult(
        mode=RunMode.EXECUTED,
        batch_id=batch_id,
        cutoff_at=cutoff_at,
        matched=matched,
        selected=len(selected_ids),
        deleted=deleted,
        sample_ids=selected_ids[:SAMPLE_SIZE],
    )
