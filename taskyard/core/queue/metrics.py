# taskyard/core/queue/metrics.py
"""Read-only operator views: queue counters, ops snapshot and dead letters."""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.models.records import (
    AuditPagination,
    DeadLetterRecord,
    KindSummary,
    OpsSnapshot,
    QueueMetrics,
    TaskRecord,
)
from taskyard.core.queue.audit import count_audit_logs, list_audit_logs
from taskyard.core.queue.filters import (
    AuditLogFilters,
    TaskFilters,
    build_dead_letter_where,
    build_task_where,
    normalize_limit,
)
from taskyard.core.queue.sql import QUEUE_METRICS_SQL


async def get_queue_metrics(session: AsyncSession) -> QueueMetrics:
    res = await session.execute(QUEUE_METRICS_SQL)
    row = res.mappings().first()
    if row is None:
        return QueueMetrics()
    return QueueMetrics(**{name: int(row[name] or 0) for name in QueueMetrics.__dataclass_fields__})


async def list_dead_letters(
    session: AsyncSession,
    filters: TaskFilters,
    *,
    limit: int | None = None,
) -> list[DeadLetterRecord]:
    """Newest dead letters first; limit defaults to 500 (1..500)."""
    where = build_dead_letter_where(filters)
    res = await session.execute(
        text(
            f"""
            SELECT *
            FROM taskyard_task_dead_letters
            {where.where_sql()}
            ORDER BY created_at DESC
            LIMIT :limit
            """
        ),
        {**where.params, 'limit': normalize_limit(limit, 500, 1, 500)},
    )
    return [DeadLetterRecord.from_row(row) for row in res.mappings().all()]


async def _summary_by_kind(session: AsyncSession, filters: TaskFilters) -> list[KindSummary]:
    task_where = build_task_where(filters)
    res = await session.execute(
        text(
            f"""
            SELECT
              job_kind,
              COUNT(*) FILTER (WHERE status = 'queued') AS queued,
              COUNT(*) FILTER (WHERE status = 'running') AS running,
              COUNT(*) FILTER (WHERE status = 'completed') AS completed,
              COUNT(*) FILTER (WHERE status = 'failed') AS failed,
              COUNT(*) FILTER (WHERE status = 'cancelled') AS cancelled
            FROM taskyard_tasks
            {task_where.where_sql()}
            GROUP BY job_kind
            """
        ),
        task_where.params,
    )
    by_kind: dict[str, KindSummary] = {}
    for row in res.mappings().all():
        by_kind[row['job_kind']] = KindSummary(
            job_kind=row['job_kind'],
            queued=int(row['queued'] or 0),
            running=int(row['running'] or 0),
            completed=int(row['completed'] or 0),
            failed=int(row['failed'] or 0),
            cancelled=int(row['cancelled'] or 0),
        )

    dead_where = build_dead_letter_where(filters)
    res = await session.execute(
        text(
            f"""
            SELECT job_kind, COUNT(*) AS dead_letter
            FROM taskyard_task_dead_letters
            {dead_where.where_sql()}
            GROUP BY job_kind
            """
        ),
        dead_where.params,
    )
    for row in res.mappings().all():
        summary = by_kind.setdefault(row['job_kind'], KindSummary(job_kind=row['job_kind']))
        summary.dead_letter = int(row['dead_letter'] or 0)

    return [by_kind[kind] for kind in sorted(by_kind)]


async def get_ops_snapshot(
    session: AsyncSession,
    filters: AuditLogFilters,
    *,
    limit: int | None = None,
    audit_page: int | None = None,
    audit_page_size: int | None = None,
) -> OpsSnapshot:
    """Everything an operator dashboard shows, scoped by one filter set.

    ``limit`` (default 50, 1..200) bounds the recent failed tasks and dead
    letters; the audit log is paged separately.
    """
    row_limit = normalize_limit(limit, 50, 1, 200)
    page_size = normalize_limit(audit_page_size, row_limit, 1, 200)
    page = normalize_limit(audit_page, 1, 1, 5000)
    offset = (page - 1) * page_size

    summary = await _summary_by_kind(session, filters)

    task_where = build_task_where(filters)
    task_where.add("status = 'failed'")
    res = await session.execute(
        text(
            f"""
            SELECT *
            FROM taskyard_tasks
            {task_where.where_sql()}
            ORDER BY updated_at DESC
            LIMIT :limit
            """
        ),
        {**task_where.params, 'limit': row_limit},
    )
    recent_failed = [TaskRecord.from_row(row) for row in res.mappings().all()]

    recent_dead = await list_dead_letters(session, filters, limit=row_limit)

    audit_filters = AuditLogFilters(
        episode_id=filters.episode_id,
        job_kind=filters.job_kind,
        trace_id=filters.trace_id,
        action=filters.action,
        actor=filters.actor,
    )
    audit_total = await count_audit_logs(session, audit_filters)
    audit_rows = await list_audit_logs(session, audit_filters, limit=page_size, offset=offset)

    return OpsSnapshot(
        summary_by_kind=summary,
        recent_failed_tasks=recent_failed,
        recent_dead_letters=recent_dead,
        recent_audit_logs=audit_rows,
        audit_pagination=AuditPagination(
            page=page,
            page_size=page_size,
            total=audit_total,
            has_more=offset + len(audit_rows) < audit_total,
        ),
    )
