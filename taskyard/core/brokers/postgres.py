# taskyard/core/brokers/postgres.py
from __future__ import annotations
import hashlib
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Optional, TypeVar
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy import text
from taskyard.core.models.broker import PostgresConfig
from taskyard.core.models.task_pg import Base
from taskyard.core.models.records import (
    AuditLogRecord,
    BulkRetryResult,
    DeadLetterPreview,
    DeadLetterRecord,
    OpsSnapshot,
    PruneResult,
    QueueMetrics,
    RecoveryResult,
    SettleResult,
    TaskRecord,
)
from taskyard.core.queue import audit, claim, lease, metrics, recovery, retry, settlement, tasks
from taskyard.core.queue.filters import (
    AuditLogFilters,
    DeadLetterFilters,
    TaskFilters,
)
from taskyard.core.queue.sql import SCHEMA_ADVISORY_LOCK_SQL
from taskyard.core.types.status import TaskStatus, TaskType
from taskyard.core.logging import get_logger

T = TypeVar('T')


class PostgresBroker:
    """
    Postgres-backed task queue handle.

    Owns the async engine and session factory. Every queue operation runs in
    exactly one transaction: committed when the operation returns, rolled back
    when it raises. Cross-process coordination is entirely in the database,
    so any number of brokers may point at the same tables.

    Lifecycle:
      - ``await broker.open()`` checks connectivity
      - ``await broker.ensure_schema_initialized()`` creates missing tables
      - ``await broker.close_async()`` disposes the pool

    ``async with PostgresBroker(cfg) as broker:`` does open/close for you.
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.logger = get_logger('broker')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self._initialized = False
        self._closed = False

        self.logger.info('PostgresBroker initialized')

    @classmethod
    def from_url(cls, database_url: str, **options: Any) -> PostgresBroker:
        return cls(PostgresConfig(database_url=database_url, **options))

    def _schema_advisory_key(self) -> int:
        """
        Compute a stable 64-bit advisory lock key for schema initialization.

        Uses the database URL as a basis so that different clusters do not
        contend on the same advisory lock key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'taskyard-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            # Serialize concurrent bootstraps from several workers/producers.
            await conn.execute(
                SCHEMA_ADVISORY_LOCK_SQL,
                {'key': self._schema_advisory_key()},
            )
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True
        self.logger.info('Task queue schema ready')

    async def ensure_schema_initialized(self) -> None:
        """
        Create the task, dead-letter and audit tables if missing.

        Safe to call multiple times and from multiple processes; internally
        guarded by a PostgreSQL advisory lock to avoid DDL races.
        """
        await self._ensure_initialized()

    async def open(self) -> None:
        """Verify the database is reachable. Raises the driver error if not."""
        async with self.async_engine.connect() as conn:
            await conn.execute(text('SELECT 1'))
        self._closed = False

    async def close_async(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.async_engine.dispose()

    async def __aenter__(self) -> PostgresBroker:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close_async()

    async def _in_transaction(
        self,
        op: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        async with self.session_factory() as session:
            result = await op(session, *args, **kwargs)
            await session.commit()
            return result

    async def run_in_session(self, op: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run a caller-supplied coroutine in one committed transaction."""
        return await self._in_transaction(op)

    # ----------------- Worker-side API -----------------

    async def claim_next_task(
        self,
        *,
        lease_token: str,
        lease_ms: int,
        default_kind_concurrency: int,
        default_kind_min_interval_ms: int,
        kind_concurrency: Optional[Mapping[str, int]] = None,
        kind_min_interval_ms: Optional[Mapping[str, int]] = None,
    ) -> Optional[TaskRecord]:
        return await self._in_transaction(
            claim.claim_next_task,
            lease_token=lease_token,
            lease_ms=lease_ms,
            default_kind_concurrency=default_kind_concurrency,
            default_kind_min_interval_ms=default_kind_min_interval_ms,
            kind_concurrency=kind_concurrency,
            kind_min_interval_ms=kind_min_interval_ms,
        )

    async def extend_lease(self, task_id: str, lease_token: str, lease_ms: int) -> bool:
        return await self._in_transaction(lease.extend_lease, task_id, lease_token, lease_ms)

    async def complete_task(
        self,
        task_id: str,
        lease_token: str,
        result: Mapping[str, Any],
    ) -> Optional[TaskRecord]:
        return await self._in_transaction(
            settlement.complete_task, task_id, lease_token, result
        )

    async def settle_failure(
        self,
        task_id: str,
        *,
        lease_token: str,
        error_code: str,
        error_message: str,
        error_context: Optional[Mapping[str, Any]],
        retryable: bool,
        backoff_ms: float,
    ) -> SettleResult:
        return await self._in_transaction(
            settlement.settle_failure,
            task_id,
            lease_token=lease_token,
            error_code=error_code,
            error_message=error_message,
            error_context=error_context,
            retryable=retryable,
            backoff_ms=backoff_ms,
        )

    async def recover_expired_running(
        self,
        *,
        limit: int,
        backoff_base_ms: int,
        backoff_max_ms: int,
    ) -> RecoveryResult:
        return await self._in_transaction(
            recovery.recover_expired_running,
            limit=limit,
            backoff_base_ms=backoff_base_ms,
            backoff_max_ms=backoff_max_ms,
        )

    # ----------------- Producer API -----------------

    async def create_task(
        self,
        *,
        episode_id: str,
        job_kind: str,
        type: TaskType | str = TaskType.SYSTEM,
        shot_id: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        max_attempts: Optional[int] = None,
        trace_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> TaskRecord:
        await self._ensure_initialized()
        return await self._in_transaction(
            tasks.create_task,
            episode_id=episode_id,
            job_kind=job_kind,
            type=type,
            shot_id=shot_id,
            payload=payload,
            max_attempts=max_attempts,
            trace_id=trace_id,
            idempotency_key=idempotency_key,
        )

    async def get_task(self, task_id: str) -> Optional[TaskRecord]:
        return await self._in_transaction(tasks.get_task, task_id)

    async def list_tasks(
        self,
        *,
        episode_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[TaskRecord]:
        return await self._in_transaction(
            tasks.list_tasks, episode_id=episode_id, status=status
        )

    async def cancel_task(self, task_id: str) -> Optional[TaskRecord]:
        return await self._in_transaction(tasks.cancel_task, task_id)

    async def update_task_report(
        self,
        task_id: str,
        *,
        status: Optional[TaskStatus] = None,
        progress: Optional[float] = None,
        result: Optional[Mapping[str, Any]] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        error_context: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TaskRecord]:
        return await self._in_transaction(
            tasks.update_task_report,
            task_id,
            status=status,
            progress=progress,
            result=result,
            error_code=error_code,
            error_message=error_message,
            error_context=error_context,
        )

    # ------------- Operator API -------------

    async def retry_task(
        self,
        task_id: str,
        *,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        batch_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[TaskRecord]:
        return await self._in_transaction(
            retry.retry_task,
            task_id,
            actor=actor,
            reason=reason,
            batch_id=batch_id,
            metadata=metadata,
        )

    async def bulk_retry_dead_letters(
        self,
        filters: Optional[DeadLetterFilters] = None,
        *,
        limit: Optional[int] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        dry_run: bool = False,
    ) -> BulkRetryResult:
        return await self._in_transaction(
            retry.bulk_retry_dead_letters,
            filters or DeadLetterFilters(),
            limit=limit,
            actor=actor,
            reason=reason,
            dry_run=dry_run,
        )

    async def preview_dead_letter_matches(
        self,
        filters: Optional[TaskFilters] = None,
        *,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> DeadLetterPreview:
        return await self._in_transaction(
            retry.preview_dead_letter_matches,
            filters or DeadLetterFilters(),
            page=page,
            page_size=page_size,
        )

    async def prune_audit_logs(
        self,
        filters: Optional[AuditLogFilters] = None,
        *,
        older_than_days: Optional[int] = None,
        limit: Optional[int] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        dry_run: bool = False,
    ) -> PruneResult:
        return await self._in_transaction(
            audit.prune_audit_logs,
            filters or AuditLogFilters(),
            older_than_days=older_than_days,
            limit=limit,
            actor=actor,
            reason=reason,
            dry_run=dry_run,
        )

    async def count_audit_logs(self, filters: Optional[AuditLogFilters] = None) -> int:
        return await self._in_transaction(
            audit.count_audit_logs, filters or AuditLogFilters()
        )

    async def list_audit_logs(
        self,
        filters: Optional[AuditLogFilters] = None,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[AuditLogRecord]:
        return await self._in_transaction(
            audit.list_audit_logs,
            filters or AuditLogFilters(),
            limit=limit,
            offset=offset,
        )

    async def get_queue_metrics(self) -> QueueMetrics:
        return await self._in_transaction(metrics.get_queue_metrics)

    async def get_ops_snapshot(
        self,
        filters: Optional[AuditLogFilters] = None,
        *,
        limit: Optional[int] = None,
        audit_page: Optional[int] = None,
        audit_page_size: Optional[int] = None,
    ) -> OpsSnapshot:
        return await self._in_transaction(
            metrics.get_ops_snapshot,
            filters or AuditLogFilters(),
            limit=limit,
            audit_page=audit_page,
            audit_page_size=audit_page_size,
        )

    async def list_dead_letters(
        self,
        filters: Optional[TaskFilters] = None,
        *,
        limit: Optional[int] = None,
    ) -> list[DeadLetterRecord]:
        return await self._in_transaction(
            metrics.list_dead_letters, filters or TaskFilters(), limit=limit
        )
