# taskyard/core/executor/__init__.py
"""
Job execution: handler registry, error taxonomy and built-in job kinds.

Example usage:
    from taskyard.core.executor import ExecutorRegistry

    registry = ExecutorRegistry()

    @registry.job('EXPORT_EPISODE')
    async def export_episode(payload: dict, task: TaskRecord) -> dict:
        ...
"""

from taskyard.core.executor.errors import (
    TaskErrorCode,
    TaskWorkerError,
    is_retryable_error_code,
    to_task_worker_error,
)
from taskyard.core.executor.result import JobResult
from taskyard.core.executor.registry import (
    DuplicateJobKindError,
    ExecutorRegistry,
    JobHandler,
    NotRegistered,
)
from taskyard.core.executor.builtin import SYSTEM_JOB_KINDS, register_system_jobs

__all__ = [
    'TaskErrorCode',
    'TaskWorkerError',
    'is_retryable_error_code',
    'to_task_worker_error',
    'JobResult',
    'DuplicateJobKindError',
    'ExecutorRegistry',
    'JobHandler',
    'NotRegistered',
    'SYSTEM_JOB_KINDS',
    'register_system_jobs',
]
