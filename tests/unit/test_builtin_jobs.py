"""Unit tests for the built-in system job kinds."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from taskyard.core.executor.builtin import (
    NOOP,
    SYSTEM_FAIL_ALWAYS,
    SYSTEM_HEALTH_CHECK,
    SYSTEM_JOB_KINDS,
    SYSTEM_SLEEP,
    register_system_jobs,
)
from taskyard.core.executor.errors import TaskErrorCode
from taskyard.core.executor.registry import ExecutorRegistry
from taskyard.core.models.records import TaskRecord
from taskyard.core.types.status import TaskStatus


def _task(job_kind: str, payload: Any = None) -> TaskRecord:
    now = datetime.now(timezone.utc)
    return TaskRecord(
        id='task-1',
        episode_id='ep-1',
        shot_id=None,
        type='SYSTEM',
        job_kind=job_kind,
        status=TaskStatus.RUNNING,
        progress=0,
        attempt_count=1,
        max_attempts=3,
        next_attempt_at=now,
        last_attempt_at=now,
        lease_token='tok',
        lease_expires_at=now,
        trace_id='trace-1',
        idempotency_key=None,
        payload_json=payload,
        result_json={},
        error_code=None,
        error_message=None,
        error_context_json=None,
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def registry() -> ExecutorRegistry:
    reg = ExecutorRegistry()
    register_system_jobs(reg, worker_name='worker-a')
    return reg


@pytest.mark.unit
class TestSystemJobs:
    """Tests for NOOP, SYSTEM_HEALTH_CHECK, SYSTEM_SLEEP and SYSTEM_FAIL_ALWAYS."""

    def test_all_kinds_registered(self, registry: ExecutorRegistry) -> None:
        assert sorted(SYSTEM_JOB_KINDS) == registry.kinds()

    def test_registering_twice_is_idempotent(self, registry: ExecutorRegistry) -> None:
        register_system_jobs(registry, worker_name='worker-a')
        assert len(registry) == len(SYSTEM_JOB_KINDS)

    @pytest.mark.asyncio
    async def test_noop_echoes_payload(self, registry: ExecutorRegistry) -> None:
        result = await registry.execute(_task(NOOP, {'x': 1}))
        assert result.unwrap() == {'ok': True, 'payload': {'x': 1}}

    @pytest.mark.asyncio
    async def test_noop_missing_payload_is_empty_object(self, registry: ExecutorRegistry) -> None:
        result = await registry.execute(_task(NOOP, None))
        assert result.unwrap() == {'ok': True, 'payload': {}}

    @pytest.mark.asyncio
    async def test_health_check(self, registry: ExecutorRegistry) -> None:
        out = (await registry.execute(_task(SYSTEM_HEALTH_CHECK, {}))).unwrap()
        assert out['ok'] is True
        assert out['worker'] == 'worker-a'
        assert datetime.fromisoformat(out['timestamp']).tzinfo is not None

    @pytest.mark.asyncio
    async def test_sleep_rounds_ms(self, registry: ExecutorRegistry) -> None:
        with patch('taskyard.core.executor.builtin.asyncio.sleep', new=AsyncMock()) as sleep:
            out = (await registry.execute(_task(SYSTEM_SLEEP, {'ms': 12.4}))).unwrap()
        assert out == {'ok': True, 'sleptMs': 12}
        sleep.assert_awaited_once_with(0.012)

    @pytest.mark.asyncio
    @pytest.mark.parametrize('payload', [{}, {'ms': 0}, {'ms': 120_001}, {'ms': '50'}])
    async def test_sleep_rejects_bad_ms(
        self, registry: ExecutorRegistry, payload: dict[str, Any]
    ) -> None:
        err = (await registry.execute(_task(SYSTEM_SLEEP, payload))).unwrap_err()
        assert err.code is TaskErrorCode.PAYLOAD_INVALID
        assert err.retryable is False

    @pytest.mark.asyncio
    async def test_fail_always_is_retryable(self, registry: ExecutorRegistry) -> None:
        err = (await registry.execute(_task(SYSTEM_FAIL_ALWAYS, {}))).unwrap_err()
        assert err.code is TaskErrorCode.EXECUTION_FAILED
        assert err.message == 'Forced failure for retry/dead-letter validation'
        assert err.context == {'taskId': 'task-1'}
        assert err.retryable is True
