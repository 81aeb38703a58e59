# taskyard/core/types/status.py
"""
Core enums shared by the store, the engine and the worker.
This module should not import from other taskyard modules.
"""

from enum import Enum


class TaskStatus(Enum):
    """Task scheduling status. Values are what the tasks table stores."""

    QUEUED = 'queued'  # Eligible once next_attempt_at has passed.
    RUNNING = 'running'  # Claimed and leased by exactly one worker.
    COMPLETED = 'completed'
    FAILED = 'failed'  # Terminal; always paired with a dead-letter row.
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        """Whether no worker will touch this task again without operator action."""
        return self in TASK_TERMINAL_STATES

    @property
    def is_retryable(self) -> bool:
        """Whether a manual retry may requeue a task in this status."""
        return self in TASK_RETRYABLE_STATES


TASK_TERMINAL_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

TASK_RETRYABLE_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

# Statuses that drop any lease when a task is moved into them.
LEASE_CLEARING_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.QUEUED,
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})


class TaskType(str, Enum):
    """Coarse task category, used for reporting only."""

    LLM = 'LLM'
    IMAGE = 'IMAGE'
    VIDEO = 'VIDEO'
    EXPORT = 'EXPORT'
    SYSTEM = 'SYSTEM'


class DeadReason(str, Enum):
    """Why a task stopped being retried."""

    MAX_ATTEMPTS_EXCEEDED = 'max_attempts_exceeded'
    NON_RETRYABLE = 'non_retryable'
    LEASE_EXPIRED_MAX_ATTEMPTS = 'lease_expired_max_attempts'


class AuditAction(str, Enum):
    """Kinds of rows written to the audit log."""

    TASK_RETRY_SINGLE = 'TASK_RETRY_SINGLE'
    TASK_RETRY_BATCH_ITEM = 'TASK_RETRY_BATCH_ITEM'
    TASK_RETRY_BATCH_SUMMARY = 'TASK_RETRY_BATCH_SUMMARY'
    TASK_RETRY_BATCH_SKIPPED = 'TASK_RETRY_BATCH_SKIPPED'
    TASK_AUDIT_PRUNE_SUMMARY = 'TASK_AUDIT_PRUNE_SUMMARY'


class SettleOutcome(str, Enum):
    """Result of settling a failed attempt."""

    STALE = 'stale'  # Lease no longer valid; nothing was written.
    RETRIED = 'retried'
    FAILED = 'failed'


class RunMode(str, Enum):
    """Whether an operator batch operation mutated anything."""

    DRY_RUN = 'dry_run'
    EXECUTED = 'executed'
