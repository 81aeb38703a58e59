"""Integration tests for settlement, dead-lettering and lease recovery."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.brokers.postgres import PostgresBroker
from taskyard.core.executor.errors import TaskErrorCode
from taskyard.core.models.records import SettleResult
from taskyard.core.types.status import SettleOutcome, TaskStatus

from .conftest import claim, dead_letter_reason, expire_lease, fetch_one, make_ready

pytestmark = [pytest.mark.integration, pytest.mark.usefixtures('clean_tables')]

EXECUTION_FAILED = TaskErrorCode.EXECUTION_FAILED.value


async def _fail(
    broker: PostgresBroker,
    task_id: str,
    token: str,
    *,
    retryable: bool = True,
    code: str = EXECUTION_FAILED,
) -> SettleResult:
    return await broker.settle_failure(
        task_id,
        lease_token=token,
        error_code=code,
        error_message='boom',
        error_context={'step': 'render'},
        retryable=retryable,
        backoff_ms=2_000,
    )


async def _assert_dead_letter_totality(session: AsyncSession) -> None:
    """Every failed task has a dead letter and every dead letter points at a failed task."""
    row = await fetch_one(
        session,
        """
        SELECT
          (SELECT COUNT(*) FROM taskyard_tasks t
             WHERE t.status = 'failed'
               AND NOT EXISTS (SELECT 1 FROM taskyard_task_dead_letters d WHERE d.task_id = t.id)
          ) AS orphan_failed,
          (SELECT COUNT(*) FROM taskyard_task_dead_letters d
             INNER JOIN taskyard_tasks t ON t.id = d.task_id
             WHERE t.status <> 'failed'
          ) AS stray_dead
        """,
    )
    assert row['orphan_failed'] == 0
    assert row['stray_dead'] == 0


# =============================================================================
# Completion
# =============================================================================


@pytest.mark.integration
class TestComplete:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_complete_stores_result_and_clears_lease(self, broker: PostgresBroker) -> None:
        await broker.create_task(episode_id='ep-1', job_kind='NOOP')
        task = await claim(broker, 'tok')
        assert task is not None

        done = await broker.complete_task(task.id, 'tok', {'frames': 24})
        assert done is not None
        assert done.status is TaskStatus.COMPLETED
        assert done.progress == 1
        assert done.result_json == {'frames': 24}
        assert done.lease_token is None
        assert done.lease_expires_at is None
        assert done.error_code is None

    @pytest.mark.asyncio(loop_scope='function')
    async def test_complete_with_wrong_token_is_noop(self, broker: PostgresBroker) -> None:
        await broker.create_task(episode_id='ep-1', job_kind='NOOP')
        task = await claim(broker, 'owner')
        assert task is not None

        assert await broker.complete_task(task.id, 'other', {'x': 1}) is None
        current = await broker.get_task(task.id)
        assert current is not None
        assert current.status is TaskStatus.RUNNING
        assert current.lease_token == 'owner'

    @pytest.mark.asyncio(loop_scope='function')
    async def test_complete_after_expiry_is_noop(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        await broker.create_task(episode_id='ep-1', job_kind='NOOP')
        task = await claim(broker, 'owner')
        assert task is not None
        await expire_lease(session, task.id)

        assert await broker.complete_task(task.id, 'owner', {'x': 1}) is None


# =============================================================================
# Failure settlement
# =============================================================================


@pytest.mark.integration
class TestSettleFailure:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_retry_then_dead_letter_after_max_attempts(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        """Three retryable failures with max_attempts=3 end in the dead-letter table."""
        created = await broker.create_task(
            episode_id='ep-1', job_kind='SYSTEM_FAIL_ALWAYS', max_attempts=3
        )

        for attempt, token in enumerate(('t1', 't2'), start=1):
            task = await claim(broker, token)
            assert task is not None
            assert task.attempt_count == attempt

            settled = await _fail(broker, created.id, token)
            assert settled.outcome is SettleOutcome.RETRIED
            assert settled.dead_lettered is False
            assert settled.task.status is TaskStatus.QUEUED
            assert settled.task.lease_token is None
            assert settled.task.error_code == EXECUTION_FAILED

            delayed = await fetch_one(
                session,
                'SELECT next_attempt_at > NOW() AS delayed FROM taskyard_tasks WHERE id = :id',
                id=created.id,
            )
            assert delayed['delayed'] is True
            # backoff keeps it out of reach until it is due
            assert await claim(broker, 'too-early') is None
            await make_ready(session, created.id)

        task = await claim(broker, 't3')
        assert task is not None
        assert task.attempt_count == 3

        settled = await _fail(broker, created.id, 't3')
        assert settled.outcome is SettleOutcome.FAILED
        assert settled.dead_lettered is True
        assert settled.task.status is TaskStatus.FAILED
        assert settled.task.error_context_json == {'step': 'render'}
        assert await dead_letter_reason(session, created.id) == 'max_attempts_exceeded'

        dead = await broker.list_dead_letters()
        assert len(dead) == 1
        assert dead[0].attempts == 3
        assert dead[0].max_attempts == 3
        assert dead[0].error_code == EXECUTION_FAILED
        assert dead[0].error_message == 'boom'
        await _assert_dead_letter_totality(session)

    @pytest.mark.asyncio(loop_scope='function')
    async def test_non_retryable_dead_letters_on_first_attempt(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        created = await broker.create_task(episode_id='ep-1', job_kind='X', max_attempts=5)
        task = await claim(broker, 'tok')
        assert task is not None

        settled = await _fail(
            broker,
            created.id,
            'tok',
            retryable=False,
            code=TaskErrorCode.PAYLOAD_INVALID.value,
        )
        assert settled.outcome is SettleOutcome.FAILED
        assert settled.task.attempt_count == 1
        assert await dead_letter_reason(session, created.id) == 'non_retryable'
        await _assert_dead_letter_totality(session)

    @pytest.mark.asyncio(loop_scope='function')
    async def test_stale_settlement_writes_nothing(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        created = await broker.create_task(episode_id='ep-1', job_kind='X', max_attempts=1)
        task = await claim(broker, 'owner')
        assert task is not None

        settled = await _fail(broker, created.id, 'intruder')
        assert settled.outcome is SettleOutcome.STALE
        assert settled.task is None

        current = await broker.get_task(created.id)
        assert current is not None
        assert current.status is TaskStatus.RUNNING
        assert current.error_code is None
        assert await dead_letter_reason(session, created.id) is None

    @pytest.mark.asyncio(loop_scope='function')
    async def test_settling_twice_only_applies_once(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        created = await broker.create_task(episode_id='ep-1', job_kind='X', max_attempts=3)
        assert await claim(broker, 'tok') is not None

        first = await _fail(broker, created.id, 'tok')
        second = await _fail(broker, created.id, 'tok')
        assert first.outcome is SettleOutcome.RETRIED
        assert second.outcome is SettleOutcome.STALE

        current = await broker.get_task(created.id)
        assert current is not None
        assert current.attempt_count == 1


# =============================================================================
# Recovery
# =============================================================================


@pytest.mark.integration
class TestRecovery:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_requeues_expired_task_with_attempts_left(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        created = await broker.create_task(episode_id='ep-1', job_kind='X', max_attempts=3)
        task = await claim(broker, 'crashed')
        assert task is not None
        await expire_lease(session, created.id)

        result = await broker.recover_expired_running(
            limit=10, backoff_base_ms=1_000, backoff_max_ms=60_000
        )
        assert (result.processed, result.requeued, result.failed) == (1, 1, 0)

        current = await broker.get_task(created.id)
        assert current is not None
        assert current.status is TaskStatus.QUEUED
        assert current.attempt_count == 1
        assert current.lease_token is None
        assert current.error_code == EXECUTION_FAILED
        assert current.error_context_json['reason'] == 'lease_expired'
        assert current.error_context_json['attempt'] == 1

        delayed = await fetch_one(
            session,
            'SELECT next_attempt_at > NOW() AS delayed FROM taskyard_tasks WHERE id = :id',
            id=created.id,
        )
        assert delayed['delayed'] is True

        # The crashed owner can no longer settle.
        stale = await _fail(broker, created.id, 'crashed')
        assert stale.outcome is SettleOutcome.STALE

    @pytest.mark.asyncio(loop_scope='function')
    async def test_fails_expired_task_on_last_attempt(
        self, broker: PostgresBroker, session: AsyncSession
    ) -> None:
        created = await broker.create_task(episode_id='ep-1', job_kind='X', max_attempts=3)
        for token in ('a', 'b'):
            assert await claim(broker, token) is not None
            await _fail(broker, created.id, token)
            await make_ready(session, created.id)

        task = await claim(broker, 'c')
        assert task is not None
        assert task.attempt_count == 3
        await expire_lease(session, created.id)

        result = await broker.recover_expired_running(
            limit=10, backoff_base_ms=1_000, backoff_max_ms=60_000
        )
        assert (result.processed, result.requeued, result.failed) == (1, 0, 1)

        current = await broker.get_task(created.id)
        assert current is not None
        assert current.status is TaskStatus.FAILED
        assert current.lease_token is None
        assert await dead_letter_reason(session, created.id) == 'lease_expired_max_attempts'
        await _assert_dead_letter_totality(session)

    @pytest.mark.asyncio(loop_scope='function')
    async def test_live_leases_untouched(self, broker: PostgresBroker) -> None:
        await broker.create_task(episode_id='ep-1', job_kind='X')
        assert await claim(broker, 'alive') is not None

        result = await broker.recover_expired_running(
            limit=10, backoff_base_ms=1_000, backoff_max_ms=60_000
        )
        assert result.processed == 0

    @pytest.mark.asyncio(loop_scope='function')
    async def test_respects_limit(self, broker: PostgresBroker, session: AsyncSession) -> None:
        for i in range(3):
            await broker.create_task(episode_id='ep-1', job_kind=f'K{i}')
        for i in range(3):
            task = await claim(broker, f'tok-{i}')
            assert task is not None
            await expire_lease(session, task.id)

        first = await broker.recover_expired_running(
            limit=2, backoff_base_ms=1_000, backoff_max_ms=60_000
        )
        second = await broker.recover_expired_running(
            limit=2, backoff_base_ms=1_000, backoff_max_ms=60_000
        )
        assert first.processed == 2
        assert second.processed == 1
