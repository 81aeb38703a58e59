# taskyard/core/executor/builtin.py
"""System job kinds used for smoke tests and retry/dead-letter drills."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import BaseModel, Field

from taskyard.core.executor.errors import TaskErrorCode, TaskWorkerError
from taskyard.core.executor.registry import ExecutorRegistry
from taskyard.core.models.records import TaskRecord

NOOP = 'NOOP'
SYSTEM_HEALTH_CHECK = 'SYSTEM_HEALTH_CHECK'
SYSTEM_SLEEP = 'SYSTEM_SLEEP'
SYSTEM_FAIL_ALWAYS = 'SYSTEM_FAIL_ALWAYS'

SYSTEM_JOB_KINDS = (NOOP, SYSTEM_HEALTH_CHECK, SYSTEM_SLEEP, SYSTEM_FAIL_ALWAYS)


class SleepPayload(BaseModel):
    ms: Annotated[float, Field(ge=1, le=120_000, strict=True)]


def register_system_jobs(registry: ExecutorRegistry, *, worker_name: str = 'taskyard') -> None:
    """Add the built-in kinds to ``registry``."""

    async def noop(payload: dict[str, Any], task: TaskRecord) -> dict[str, Any]:
        return {'ok': True, 'payload': payload}

    async def health_check(payload: dict[str, Any], task: TaskRecord) -> dict[str, Any]:
        return {
            'ok': True,
            'worker': worker_name,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    async def sleep(payload: SleepPayload, task: TaskRecord) -> dict[str, Any]:
        slept_ms = round(payload.ms)
        await asyncio.sleep(slept_ms / 1000.0)
        return {'ok': True, 'sleptMs': slept_ms}

    async def fail_always(payload: dict[str, Any], task: TaskRecord) -> dict[str, Any]:
        raise TaskWorkerError(
            TaskErrorCode.EXECUTION_FAILED,
            'Forced failure for retry/dead-letter validation',
            {'taskId': task.id},
        )

    registry.register(NOOP, noop)
    registry.register(SYSTEM_HEALTH_CHECK, health_check)
    registry.register(SYSTEM_SLEEP, sleep, SleepPayload)
    registry.register(SYSTEM_FAIL_ALWAYS, fail_always)
