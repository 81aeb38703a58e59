# taskyard/core/models/records.py
"""Plain records returned by queue operations."""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from taskyard.core.types.status import RunMode, SettleOutcome, TaskStatus


@dataclass
class TaskRecord:
    """One row of taskyard_tasks."""

    id: str
    episode_id: str
    shot_id: str | None
    type: str
    job_kind: str
    status: TaskStatus
    progress: float | None
    attempt_count: int
    max_attempts: int
    next_attempt_at: datetime.datetime
    last_attempt_at: datetime.datetime | None
    lease_token: str | None
    lease_expires_at: datetime.datetime | None
    trace_id: str
    idempotency_key: str | None
    payload_json: Any
    result_json: Any
    error_code: str | None
    error_message: str | None
    error_context_json: dict[str, Any] | None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> TaskRecord:
        return cls(
            id=row['id'],
            episode_id=row['episode_id'],
            shot_id=row['shot_id'],
            type=row['type'],
            job_kind=row['job_kind'],
            status=TaskStatus(row['status']),
            progress=row['progress'],
            attempt_count=int(row['attempt_count'] or 0),
            max_attempts=int(row['max_attempts'] or 1),
            next_attempt_at=row['next_attempt_at'],
            last_attempt_at=row['last_attempt_at'],
            lease_token=row['lease_token'],
            lease_expires_at=row['lease_expires_at'],
            trace_id=row['trace_id'],
            idempotency_key=row['idempotency_key'],
            payload_json=row['payload_json'],
            result_json=row['result_json'],
            error_code=row['error_code'],
            error_message=row['error_message'],
            error_context_json=row['error_context_json'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )


@dataclass
class DeadLetterRecord:
    """One row of taskyard_task_dead_letters."""

    id: str
    task_id: str
    episode_id: str
    shot_id: str | None
    type: str
    job_kind: str
    attempts: int
    max_attempts: int
    trace_id: str
    dead_reason: str
    error_code: str | None
    error_message: str | None
    error_context_json: dict[str, Any] | None
    payload_json: Any
    result_json: Any
    created_at: datetime.datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> DeadLetterRecord:
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})


@dataclass
class AuditLogRecord:
    """One row of taskyard_task_audit_logs."""

    id: str
    batch_id: str | None
    task_id: str | None
    episode_id: str | None
    trace_id: str | None
    job_kind: str | None
    action: str
    actor: str
    message: str
    metadata_json: dict[str, Any]
    created_at: datetime.datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> AuditLogRecord:
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})


@dataclass
class SettleResult:
    task: TaskRecord | None
    outcome: SettleOutcome
    dead_lettered: bool = False


@dataclass
class RecoveryResult:
    processed: int = 0
    requeued: int = 0
    failed: int = 0


@dataclass
class BulkRetryResult:
    mode: RunMode
    batch_id: str
    selected: int
    retried: int
    skipped: int
    selected_task_ids: list[str] = field(default_factory=lambda: [])
    retried_task_ids: list[str] = field(default_factory=lambda: [])


@dataclass
class DeadLetterPreview:
    total: int
    page: int
    page_size: int
    has_more: bool
    task_ids: list[str] = field(default_factory=lambda: [])


@dataclass
class PruneResult:
    mode: RunMode
    batch_id: str
    cutoff_at: datetime.datetime
    matched: int
    selected: int
    deleted: int
    sample_ids: list[str] = field(default_factory=lambda: [])


@dataclass
class QueueMetrics:
    queued_total: int = 0
    queued_ready: int = 0
    queued_delayed: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    dead_letter_count: int = 0


@dataclass
class KindSummary:
    job_kind: str
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    dead_letter: int = 0


@dataclass
class AuditPagination:
    page: int
    page_size: int
    total: int
    has_more: bool


@dataclass
class OpsSnapshot:
    summary_by_kind: list[KindSummary]
    recent_failed_tasks: list[TaskRecord]
    recent_dead_letters: list[DeadLetterRecord]
    recent_audit_logs: list[AuditLogRecord]
    audit_pagination: AuditPagination
