# taskyard/core/queue/filters.py
"""Input normalization and dynamic WHERE builders for operator queries.

Operator-facing operations accept loosely shaped input (blank strings,
out-of-range limits, duplicated ids). Everything is normalized here, so the
SQL layer only sees clean values.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

DEFAULT_ACTOR = 'ops-console'
MAX_TASK_IDS = 500
SAMPLE_SIZE = 20


def normalize_filter_string(value: str | None) -> str | None:
    """Trim a filter value; blank means no filter."""
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def normalize_actor(value: str | None) -> str:
    return normalize_filter_string(value) or DEFAULT_ACTOR


def normalize_reason(value: str | None, fallback: str) -> str:
    return normalize_filter_string(value) or fallback


def normalize_limit(value: float | int | None, fallback: int, lo: int, hi: int) -> int:
    """Round and clamp a numeric option; missing or non-finite uses the fallback."""
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, float) and not math.isfinite(value):
        return fallback
    return max(lo, min(hi, round(value)))


def normalize_max_attempts(value: int | None) -> int:
    return normalize_limit(value, 3, 1, 10)


def normalize_task_ids(values: Iterable[str] | None) -> list[str]:
    """Trim, drop blanks and duplicates (first occurrence wins), cap the list."""
    if not values:
        return []
    seen: set[str] = set()
    task_ids: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        task_ids.append(trimmed)
        if len(task_ids) >= MAX_TASK_IDS:
            break
    return task_ids


@dataclass
class TaskFilters:
    """Scope shared by task, dead-letter and audit queries.

    trace_id is matched as a case-insensitive substring; the rest are exact.
    """

    episode_id: str | None = None
    job_kind: str | None = None
    trace_id: str | None = None


@dataclass
class DeadLetterFilters(TaskFilters):
    dead_reason: str | None = None
    error_code: str | None = None
    task_ids: list[str] = field(default_factory=lambda: [])


@dataclass
class AuditLogFilters(TaskFilters):
    action: str | None = None
    actor: str | None = None  # case-insensitive substring
    batch_id: str | None = None


@dataclass
class WhereClause:
    """A list of AND-ed SQL conditions plus their named bind parameters."""

    conditions: list[str] = field(default_factory=lambda: [])
    params: dict[str, Any] = field(default_factory=lambda: {})

    def add(self, condition: str, **params: Any) -> None:
        self.conditions.append(condition)
        self.params.update(params)

    def where_sql(self) -> str:
        if not self.conditions:
            return ''
        return 'WHERE ' + ' AND '.join(self.conditions)

    def and_sql(self) -> str:
        if not self.conditions:
            return ''
        return 'AND ' + ' AND '.join(self.conditions)


def _col(alias: str, name: str) -> str:
    return f'{alias}.{name}' if alias else name


def _apply_task_scope(clause: WhereClause, filters: TaskFilters, alias: str) -> None:
    episode_id = normalize_filter_string(filters.episode_id)
    job_kind = normalize_filter_string(filters.job_kind)
    trace_id = normalize_filter_string(filters.trace_id)
    if episode_id:
        clause.add(f"{_col(alias, 'episode_id')} = :f_episode_id", f_episode_id=episode_id)
    if job_kind:
        clause.add(f"{_col(alias, 'job_kind')} = :f_job_kind", f_job_kind=job_kind)
    if trace_id:
        clause.add(f"{_col(alias, 'trace_id')} ILIKE :f_trace_id", f_trace_id=f'%{trace_id}%')


def build_task_where(filters: TaskFilters, alias: str = '') -> WhereClause:
    clause = WhereClause()
    _apply_task_scope(clause, filters, alias)
    return clause


def build_dead_letter_where(filters: TaskFilters, alias: str = '') -> WhereClause:
    """Scope for dead-letter rows; the extra dead-letter fields apply when present."""
    clause = WhereClause()
    _apply_task_scope(clause, filters, alias)
    if isinstance(filters, DeadLetterFilters):
        dead_reason = normalize_filter_string(filters.dead_reason)
        error_code = normalize_filter_string(filters.error_code)
        task_ids = normalize_task_ids(filters.task_ids)
        if dead_reason:
            clause.add(f"{_col(alias, 'dead_reason')} = :f_dead_reason", f_dead_reason=dead_reason)
        if error_code:
            clause.add(f"{_col(alias, 'error_code')} = :f_error_code", f_error_code=error_code)
        if task_ids:
            clause.add(
                f"{_col(alias, 'task_id')} = ANY(CAST(:f_task_ids AS TEXT[]))",
                f_task_ids=task_ids,
            )
    return clause


def build_audit_where(filters: AuditLogFilters) -> WhereClause:
    clause = WhereClause()
    _apply_task_scope(clause, filters, '')
    action = normalize_filter_string(filters.action)
    actor = normalize_filter_string(filters.actor)
    batch_id = normalize_filter_string(filters.batch_id)
    if action:
        clause.add('action = :f_action', f_action=action)
    if actor:
        clause.add('actor ILIKE :f_actor', f_actor=f'%{actor}%')
    if batch_id:
        clause.add('batch_id = :f_batch_id', f_batch_id=batch_id)
    return clause
