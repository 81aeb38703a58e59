# taskyard/core/queue/lease.py
"""Lease extension and the per-execution heartbeat."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from taskyard.core.logging import get_logger
from taskyard.core.queue.sql import EXTEND_LEASE_SQL

logger = get_logger('heartbeat')

ExtendLease = Callable[[str, str, int], Awaitable[bool]]


async def extend_lease(
    session: AsyncSession,
    task_id: str,
    lease_token: str,
    lease_ms: int,
) -> bool:
    """Push lease_expires_at to now + lease_ms.

    Only succeeds while the task is running, the token matches and the current
    lease has not already expired. False means the caller no longer owns the task.
    """
    res = await session.execute(
        EXTEND_LEASE_SQL,
        {'task_id': task_id, 'lease_token': lease_token, 'lease_ms': max(1, round(lease_ms))},
    )
    return res.fetchone() is not None


class LeaseHeartbeat:
    """Periodically extends one task's lease while it executes.

    Each tick awaits its extension before sleeping again, so ticks never
    overlap. The heartbeat stops by itself the first time an extension
    reports the lease stale; extension errors are logged and retried on the
    next tick. ``stop()`` must be called once execution ends.
    """

    def __init__(
        self,
        extend: ExtendLease,
        *,
        task_id: str,
        lease_token: str,
        lease_ms: int,
        interval_ms: int,
    ) -> None:
        self._extend = extend
        self.task_id = task_id
        self.lease_token = lease_token
        self.lease_ms = lease_ms
        self.interval_s = max(0.001, interval_ms / 1000.0)
        self._stale = False
        self._task: asyncio.Task[None] | None = None

    @property
    def stale(self) -> bool:
        """True once an extension found the lease no longer valid."""
        return self._stale

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(
            self._run(), name=f'heartbeat-{self.task_id}'
        )

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                ok = await self._extend(self.task_id, self.lease_token, self.lease_ms)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f'Lease extension failed for task {self.task_id}: {exc}')
                continue
            if not ok:
                self._stale = True
                logger.warning(
                    f'Lease for task {self.task_id} is stale; '
                    'another owner reclaimed or settled it'
                )
                return
