# taskyard/core/executor/errors.py
"""Task-level error taxonomy shared by executors and the worker loop."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional


class TaskErrorCode(str, Enum):
    """
    Codes stored in ``error_code`` when an attempt fails.

    Only EXECUTION_FAILED is worth retrying: every other code describes a
    problem with the task itself that another attempt would hit again.
    """

    PAYLOAD_MISSING = 'TASK_PAYLOAD_MISSING'
    PAYLOAD_INVALID = 'TASK_PAYLOAD_INVALID'
    PAYLOAD_UNSUPPORTED = 'TASK_PAYLOAD_UNSUPPORTED'
    PRECONDITION_FAILED = 'TASK_PRECONDITION_FAILED'
    ENTITY_NOT_FOUND = 'TASK_ENTITY_NOT_FOUND'
    EXECUTION_FAILED = 'TASK_EXECUTION_FAILED'

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_CODES


RETRYABLE_CODES: frozenset[TaskErrorCode] = frozenset({TaskErrorCode.EXECUTION_FAILED})


def is_retryable_error_code(code: TaskErrorCode | str) -> bool:
    """Unknown codes are treated as non-retryable."""
    try:
        return TaskErrorCode(code).retryable
    except ValueError:
        return False


class TaskWorkerError(Exception):
    """Raised by job handlers to fail an attempt with a specific code."""

    def __init__(
        self,
        code: TaskErrorCode,
        message: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = TaskErrorCode(code)
        self.message = message
        self.context: Optional[dict[str, Any]] = dict(context) if context is not None else None

    @property
    def retryable(self) -> bool:
        return self.code.retryable

    def __repr__(self) -> str:
        return f'TaskWorkerError({self.code.value!r}, {self.message!r})'


def to_task_worker_error(
    exc: BaseException,
    fallback_message: str,
    context: Optional[Mapping[str, Any]] = None,
) -> TaskWorkerError:
    """Normalize any exception; a TaskWorkerError passes through unchanged."""
    if isinstance(exc, TaskWorkerError):
        return exc
    message = str(exc) or fallback_message
    return TaskWorkerError(TaskErrorCode.EXECUTION_FAILED, message, context)
