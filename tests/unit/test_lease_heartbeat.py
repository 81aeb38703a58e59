"""Unit tests for LeaseHeartbeat."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from taskyard.core.queue.lease import LeaseHeartbeat


def _heartbeat(extend: AsyncMock, interval_ms: int = 5) -> LeaseHeartbeat:
    return LeaseHeartbeat(
        extend,
        task_id='task-1',
        lease_token='tok',
        lease_ms=30_000,
        interval_ms=interval_ms,
    )


async def _wait_for(predicate, timeout: float = 1.0) -> None:  # type: ignore[no-untyped-def]
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError('condition not reached in time')
        await asyncio.sleep(0.001)


@pytest.mark.unit
class TestLeaseHeartbeat:
    """Tests for heartbeat ticking, staleness and shutdown."""

    @pytest.mark.asyncio
    async def test_extends_repeatedly_while_valid(self) -> None:
        extend = AsyncMock(return_value=True)
        hb = _heartbeat(extend)
        hb.start()
        await _wait_for(lambda: extend.await_count >= 3)
        await hb.stop()

        extend.assert_awaited_with('task-1', 'tok', 30_000)
        assert hb.stale is False
        assert hb.running is False

    @pytest.mark.asyncio
    async def test_stops_itself_when_lease_stale(self) -> None:
        extend = AsyncMock(return_value=False)
        hb = _heartbeat(extend)
        hb.start()
        await _wait_for(lambda: hb.stale)
        await _wait_for(lambda: not hb.running)

        assert extend.await_count == 1
        await hb.stop()

    @pytest.mark.asyncio
    async def test_extension_errors_do_not_stop_ticking(self) -> None:
        extend = AsyncMock(side_effect=[ConnectionError('down'), True, True])
        hb = _heartbeat(extend)
        hb.start()
        await _wait_for(lambda: extend.await_count >= 3)
        await hb.stop()
        assert hb.stale is False

    @pytest.mark.asyncio
    async def test_no_tick_before_interval(self) -> None:
        extend = AsyncMock(return_value=True)
        hb = _heartbeat(extend, interval_ms=60_000)
        hb.start()
        await asyncio.sleep(0.01)
        await hb.stop()
        extend.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_without_start_and_double_start(self) -> None:
        extend = AsyncMock(return_value=True)
        hb = _heartbeat(extend, interval_ms=60_000)
        await hb.stop()
        hb.start()
        first = hb._task
        hb.start()
        assert hb._task is first
        await hb.stop()
