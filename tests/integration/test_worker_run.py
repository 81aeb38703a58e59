"""End-to-end: a Worker drains real tasks through the built-in system jobs."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.brokers.postgres import PostgresBroker
from taskyard.core.executor.builtin import register_system_jobs
from taskyard.core.executor.registry import ExecutorRegistry
from taskyard.core.models.limits import KindLimitsConfig
from taskyard.core.models.records import TaskRecord
from taskyard.core.types.status import TaskStatus
from taskyard.core.worker.config import WorkerConfig
from taskyard.core.worker.worker import Worker

from .conftest import dead_letter_reason

pytestmark = [pytest.mark.integration, pytest.mark.usefixtures('clean_tables')]


def _worker(broker: PostgresBroker, **overrides: object) -> Worker:
    registry = ExecutorRegistry()
    register_system_jobs(registry, worker_name='it-worker')
    options: dict[str, object] = {
        'concurrency': 2,
        'limits': KindLimitsConfig(default_kind_concurrency=4),
    }
    options.update(overrides)
    return Worker(broker, registry, WorkerConfig(**options))


@pytest.mark.integration
class TestWorkerRunOnce:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_drains_success_failure_and_unknown(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        ok = await broker.create_task(episode_id='ep-1', job_kind='NOOP', payload={'n': 1})
        health = await broker.create_task(episode_id='ep-1', job_kind='SYSTEM_HEALTH_CHECK')
        failing = await broker.create_task(
            episode_id='ep-1', job_kind='SYSTEM_FAIL_ALWAYS', max_attempts=1
        )
        unknown = await broker.create_task(episode_id='ep-1', job_kind='NOT_REGISTERED')
        bad_sleep = await broker.create_task(
            episode_id='ep-1', job_kind='SYSTEM_SLEEP', payload={'ms': 0}
        )

        handled = await _worker(broker).run_once()
        assert handled == 5

        done = await broker.get_task(ok.id)
        assert done is not None
        assert done.status is TaskStatus.COMPLETED
        assert done.result_json == {'ok': True, 'payload': {'n': 1}}

        checked = await broker.get_task(health.id)
        assert checked is not None
        assert checked.result_json['worker'] == 'it-worker'

        failed = await broker.get_task(failing.id)
        assert failed is not None
        assert failed.status is TaskStatus.FAILED
        assert failed.error_code == 'TASK_EXECUTION_FAILED'
        assert await dead_letter_reason(session, failing.id) == 'max_attempts_exceeded'

        rejected = await broker.get_task(unknown.id)
        assert rejected is not None
        assert rejected.status is TaskStatus.FAILED
        assert rejected.error_code == 'TASK_PAYLOAD_UNSUPPORTED'
        assert await dead_letter_reason(session, unknown.id) == 'non_retryable'

        invalid = await broker.get_task(bad_sleep.id)
        assert invalid is not None
        assert invalid.error_code == 'TASK_PAYLOAD_INVALID'

    @pytest.mark.asyncio(loop_scope='function')
    async def test_retryable_failure_is_requeued_not_redrained(
        self, broker: PostgresBroker
    ) -> None:
        task = await broker.create_task(
            episode_id='ep-1', job_kind='SYSTEM_FAIL_ALWAYS', max_attempts=3
        )
        handled = await _worker(broker).run_once()
        # The requeue backoff pushes it past this drain.
        assert handled == 1

        current = await broker.get_task(task.id)
        assert current is not None
        assert current.status is TaskStatus.QUEUED
        assert current.attempt_count == 1
        assert current.error_context_json['attempt'] == 1
        assert current.error_context_json['jobKind'] == 'SYSTEM_FAIL_ALWAYS'

    @pytest.mark.asyncio(loop_scope='function')
    async def test_run_forever_processes_until_stopped(self, broker: PostgresBroker) -> None:
        task = await broker.create_task(episode_id='ep-1', job_kind='NOOP')
        worker = _worker(broker, interval_ms=50)

        runner = asyncio.create_task(worker.run_forever(init_schema=True))
        try:
            for _ in range(100):
                current = await broker.get_task(task.id)
                if current is not None and current.status is TaskStatus.COMPLETED:
                    break
                await asyncio.sleep(0.05)
            else:
                pytest.fail('worker did not complete the task in time')
        finally:
            worker.request_stop()
            await asyncio.wait_for(runner, timeout=10)

        assert worker.stopping is True

    @pytest.mark.asyncio(loop_scope='function')
    async def test_non_json_result_types_are_stored(self, broker: PostgresBroker) -> None:
        stamped = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        worker = _worker(broker)

        @worker.registry.job('STAMP')
        async def stamp(payload: dict[str, object], task: TaskRecord) -> dict[str, object]:
            return {'at': stamped, 'id': uuid.UUID(int=1), 'tags': {'a'}}

        task = await broker.create_task(episode_id='ep-1', job_kind='STAMP')
        assert await worker.run_once() == 1

        done = await broker.get_task(task.id)
        assert done is not None
        assert done.status is TaskStatus.COMPLETED
        assert done.result_json['at'].startswith('2026-01-02T03:04:05')
        assert done.result_json['id'] == str(uuid.UUID(int=1))
        assert done.result_json['tags'] == ['a']
