from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    Float,
    Index,
    UniqueConstraint,
    Enum as SQLAlchemyEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from taskyard.core.types.status import TaskStatus


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class TaskModel(Base):
    """
    A unit of asynchronous work.

    - id: str # uuid4
    - episode_id / shot_id: str # owning domain objects, shot_id optional
    - type: str # coarse TaskType category
    - job_kind: str # executor dispatch key; also the concurrency/rate-limit key
    - status: TaskStatus # queued, running, completed, failed, cancelled
    - progress: float # 0 at claim, 1 when settled terminally
    - attempt_count: int # incremented by every claim
    - max_attempts: int # 1..10
    - next_attempt_at: datetime # earliest time the task may be claimed
    - last_attempt_at: datetime # time of the latest claim, drives the rate gate
    - lease_token / lease_expires_at # both set while running, both NULL otherwise
    - trace_id: str # correlation id
    - idempotency_key: str # unique together with (episode_id, job_kind)
    - payload_json / result_json: dict # opaque to the engine
    - error_code / error_message / error_context_json # last failure diagnostics
    - created_at / updated_at: datetime
    """

    __tablename__ = 'taskyard_tasks'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    episode_id: Mapped[str] = mapped_column(String(255), nullable=False)
    shot_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    job_kind: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[TaskStatus] = mapped_column(
        SQLAlchemyEnum(
            TaskStatus,
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=TaskStatus.QUEUED,
        server_default=text("'queued'"),
    )
    progress: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default=text('3'),
    )
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    lease_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    trace_id: Mapped[str] = mapped_column(String(255), nullable=False)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    payload_json: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )
    result_json: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_context_json: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )

    __table_args__ = (
        UniqueConstraint(
            'episode_id',
            'job_kind',
            'idempotency_key',
            name='uq_taskyard_tasks_idempotency',
        ),
        # Claim scan: queued rows by readiness
        Index('idx_taskyard_tasks_status_next_attempt', 'status', 'next_attempt_at'),
        # Per-kind running counts and rate gate
        Index('idx_taskyard_tasks_kind_status', 'job_kind', 'status'),
        Index('idx_taskyard_tasks_kind_last_attempt', 'job_kind', 'last_attempt_at'),
        # Recovery sweep: expired leases
        Index('idx_taskyard_tasks_status_lease', 'status', 'lease_expires_at'),
        Index('idx_taskyard_tasks_episode', 'episode_id'),
    )


class TaskDeadLetterModel(Base):
    """
    Frozen snapshot of a task that stopped being retried.

    Exactly one row per failed task (task_id is unique). Upserted on terminal
    failure, deleted when the task is requeued by a manual or bulk retry.
    """

    __tablename__ = 'taskyard_task_dead_letters'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    episode_id: Mapped[str] = mapped_column(String(255), nullable=False)
    shot_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    job_kind: Mapped[str] = mapped_column(String(255), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    trace_id: Mapped[str] = mapped_column(String(255), nullable=False)
    dead_reason: Mapped[str] = mapped_column(String(64), nullable=False)
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_context_json: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True,
    )
    payload_json: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )
    result_json: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )

    __table_args__ = (
        Index('idx_taskyard_dead_letters_created', 'created_at'),
        Index('idx_taskyard_dead_letters_kind', 'job_kind'),
    )


class TaskAuditLogModel(Base):
    """Append-only record of operator-driven queue events."""

    __tablename__ = 'taskyard_task_audit_logs'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    task_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    episode_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    trace_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    job_kind: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )

    __table_args__ = (
        Index('idx_taskyard_audit_created', 'created_at'),
        Index('idx_taskyard_audit_batch', 'batch_id'),
        Index('idx_taskyard_audit_action', 'action'),
    )
