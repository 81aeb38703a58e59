# taskyard/core/queue/claim.py
"""Claim engine: atomically pick, lease and start the next eligible task."""

from __future__ import annotations

from collections.abc import Mapping

from psycopg.types.json import Jsonb
from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.logging import get_logger
from taskyard.core.models.records import TaskRecord
from taskyard.core.queue.sql import CLAIM_NEXT_TASK_SQL, KIND_GATE_RECHECK_SQL

logger = get_logger('claim')

# Each round excludes one more kind that lost the gate re-check.
MAX_CLAIM_ROUNDS = 3


class _KindGateLost(Exception):
    """Raised inside the claim savepoint to undo a claim that broke a kind gate."""

    def __init__(self, job_kind: str) -> None:
        super().__init__(job_kind)
        self.job_kind = job_kind


async def claim_next_task(
    session: AsyncSession,
    *,
    lease_token: str,
    lease_ms: int,
    default_kind_concurrency: int,
    default_kind_min_interval_ms: int,
    kind_concurrency: Mapping[str, int] | None = None,
    kind_min_interval_ms: Mapping[str, int] | None = None,
) -> TaskRecord | None:
    """Claim one queued task whose kind has spare concurrency and is not rate limited.

    Candidates are ordered by (next_attempt_at, created_at). The winning row
    moves to running with attempt_count + 1 and a lease that expires
    lease_ms from now. Returns None when nothing is eligible.

    The claim statement reads with a snapshot taken before the kind lock is
    granted, so under READ COMMITTED it can miss a claim committed by the
    previous lock holder. Each claim runs in a savepoint and the kind gates
    are re-checked by a fresh statement while the lock is held. A claim
    that breaks them is rolled back and its kind skipped for the next round.

    The caller must commit before executing the task so the kind lock and
    row lock are released.
    """
    concurrency = dict(kind_concurrency or {})
    intervals = dict(kind_min_interval_ms or {})
    default_concurrency = max(1, round(default_kind_concurrency))
    default_interval = max(0, round(default_kind_min_interval_ms))
    params = {
        'lease_token': lease_token,
        'lease_ms': max(1, round(lease_ms)),
        'kind_concurrency': Jsonb(concurrency),
        'default_kind_concurrency': default_concurrency,
        'kind_min_interval_ms': Jsonb(intervals),
        'default_kind_min_interval_ms': default_interval,
    }
    skip_kinds: list[str] = []

    for _ in range(MAX_CLAIM_ROUNDS):
        try:
            async with session.begin_nested():
                res = await session.execute(
                    CLAIM_NEXT_TASK_SQL, {**params, 'skip_kinds': list(skip_kinds)}
                )
                row = res.mappings().first()
                if row is None:
                    return None
                task = TaskRecord.from_row(row)

                limit = max(1, round(concurrency.get(task.job_kind, default_concurrency)))
                interval = max(0, round(intervals.get(task.job_kind, default_interval)))
                check = await session.execute(
                    KIND_GATE_RECHECK_SQL,
                    {
                        'job_kind': task.job_kind,
                        'task_id': task.id,
                        'min_interval_ms': interval,
                    },
                )
                gate = check.mappings().one()
                if gate['running_others'] >= limit or gate['rate_limited']:
                    raise _KindGateLost(task.job_kind)
        except _KindGateLost as lost:
            logger.debug(f'Claim of kind {lost.job_kind} undone: kind gate closed on re-check')
            skip_kinds.append(lost.job_kind)
            continue

        logger.debug(
            f'Claimed task {task.id} kind={task.job_kind} '
            f'attempt={task.attempt_count}/{task.max_attempts}'
        )
        return task

    return None
