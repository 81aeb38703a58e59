"""Integration test fixtures for the Postgres task queue."""

from __future__ import annotations

import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from taskyard.core.brokers.postgres import PostgresBroker
from taskyard.core.models.broker import PostgresConfig
from taskyard.core.models.records import TaskRecord


# Database URL
DB_URL = os.environ.get('TASKYARD_TEST_DATABASE_URL') or (
    f'postgresql+psycopg://postgres:{os.environ.get("DB_PASSWORD", "")}@localhost:5432/taskyard'
)

LEASE_MS = 30_000


@pytest.fixture(scope='session')
def db_url() -> str:
    """Database connection URL."""
    return DB_URL


@pytest_asyncio.fixture
async def engine(db_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """SQLAlchemy async engine for direct fixture queries."""
    eng = create_async_engine(db_url, echo=False)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Database session for direct queries."""
    async with AsyncSession(engine, expire_on_commit=False) as sess:
        yield sess


@pytest_asyncio.fixture
async def broker(db_url: str) -> AsyncGenerator[PostgresBroker, None]:
    """PostgresBroker instance with schema initialized."""
    brk = PostgresBroker(PostgresConfig(database_url=db_url))
    await brk.ensure_schema_initialized()
    yield brk
    await brk.close_async()


@pytest_asyncio.fixture
async def clean_tables(
    broker: PostgresBroker, session: AsyncSession
) -> AsyncGenerator[None, None]:
    """Truncate queue tables before each test."""
    await session.execute(
        text('TRUNCATE taskyard_task_audit_logs, taskyard_task_dead_letters, taskyard_tasks')
    )
    await session.commit()
    yield


# =============================================================================
# Helpers
# =============================================================================


async def execute(session: AsyncSession, sql: str, **params: Any) -> None:
    """Run one statement and commit."""
    await session.execute(text(sql), params)
    await session.commit()


async def fetch_one(session: AsyncSession, sql: str, **params: Any) -> Any:
    res = await session.execute(text(sql), params)
    row = res.mappings().first()
    await session.commit()
    return row


async def claim(broker: PostgresBroker, token: str, **limits: Any) -> TaskRecord | None:
    """Claim with permissive defaults unless overridden."""
    options: dict[str, Any] = {
        'default_kind_concurrency': 16,
        'default_kind_min_interval_ms': 0,
    }
    options.update(limits)
    return await broker.claim_next_task(lease_token=token, lease_ms=LEASE_MS, **options)


async def make_ready(session: AsyncSession, task_id: str) -> None:
    """Skip a requeue backoff so the task is claimable now."""
    await execute(
        session,
        "UPDATE taskyard_tasks SET next_attempt_at = NOW() - INTERVAL '1 second' WHERE id = :id",
        id=task_id,
    )


async def expire_lease(session: AsyncSession, task_id: str) -> None:
    await execute(
        session,
        "UPDATE taskyard_tasks SET lease_expires_at = NOW() - INTERVAL '1 second' WHERE id = :id",
        id=task_id,
    )


async def dead_letter_reason(session: AsyncSession, task_id: str) -> str | None:
    row = await fetch_one(
        session,
        'SELECT dead_reason FROM taskyard_task_dead_letters WHERE task_id = :id',
        id=task_id,
    )
    return row['dead_reason'] if row is not None else None
