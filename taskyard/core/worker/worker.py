# taskyard/core/worker/worker.py
from __future__ import annotations
import asyncio
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Coroutine
from taskyard.core.brokers.postgres import PostgresBroker
from taskyard.core.executor.errors import TaskErrorCode, TaskWorkerError, to_task_worker_error
from taskyard.core.executor.registry import ExecutorRegistry
from taskyard.core.logging import get_logger
from taskyard.core.models.resilience import WorkerResilienceConfig
from taskyard.core.queue.backoff import compute_backoff_ms
from taskyard.core.queue.filters import AuditLogFilters
from taskyard.core.queue.lease import LeaseHeartbeat
from taskyard.core.types.status import SettleOutcome
from taskyard.core.utils.db import is_retryable_connection_error
from taskyard.core.worker.config import WorkerConfig

logger = get_logger('worker')

AUDIT_PRUNE_ACTOR = 'task-worker'
AUDIT_PRUNE_REASON = 'worker_audit_retention'


@dataclass
class _RetryBackoff:
    initial_ms: int
    max_ms: int
    max_attempts: int
    jitter_ratio: float = 0.25
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        match self.max_attempts:
            case 0:
                return True
            case _:
                return self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        exponent = max(0, self.attempts - 1)
        base_ms = min(self.max_ms, int(self.initial_ms * (2**exponent)))
        jitter_range = base_ms * self.jitter_ratio
        delay_ms = base_ms + random.uniform(-jitter_range, jitter_range)
        return max(0.1, delay_ms / 1000.0)


class Worker:
    """
    Async worker process:
      - N slot loops, each claiming one task at a time through the broker
      - A lease heartbeat per execution
      - Settlement (complete, requeue with backoff, or dead-letter)
      - A recovery loop for expired leases and an audit-log prune loop

    All coordination with other workers happens in Postgres; nothing here
    assumes it is the only worker.
    """

    def __init__(
        self,
        broker: PostgresBroker,
        registry: ExecutorRegistry,
        cfg: WorkerConfig,
    ):
        self.broker = broker
        self.registry = registry
        self.cfg = cfg
        self._resilience: WorkerResilienceConfig = cfg.resilience
        self._stop = asyncio.Event()
        self._slot_tasks: set[asyncio.Task[Any]] = set()
        self._service_tasks: set[asyncio.Task[Any]] = set()
        self._slot_failure: BaseException | None = None

    @property
    def worker_id(self) -> str:
        return self.cfg.worker_id

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Request worker to stop gracefully."""
        self._stop.set()

    def _spawn_background(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str,
        slot: bool = False,
    ) -> asyncio.Task[Any]:
        """Create a tracked background task with automatic cleanup."""
        task_group = self._slot_tasks if slot else self._service_tasks
        task = asyncio.create_task(coro, name=name)
        task_group.add(task)

        def _on_done(t: asyncio.Task[Any]) -> None:
            task_group.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is None:
                return
            if slot and not self._stop.is_set():
                # A dead slot stops the worker instead of leaving it short.
                logger.error(
                    f'Slot task {t.get_name()!r} failed: {exc}; stopping worker '
                    f'({len(self._slot_tasks)}/{self.cfg.concurrency} slot(s) still running)'
                )
                if self._slot_failure is None:
                    self._slot_failure = exc
                self._stop.set()
                return
            logger.error(f'Background task {t.get_name()!r} failed: {exc}')

        task.add_done_callback(_on_done)
        return task

    def _make_retry_backoff(self) -> _RetryBackoff:
        return _RetryBackoff(
            initial_ms=self._resilience.db_retry_initial_ms,
            max_ms=self._resilience.db_retry_max_ms,
            max_attempts=self._resilience.db_retry_max_attempts,
            jitter_ratio=self._resilience.jitter_ratio,
        )

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    # ----------------- Single task -----------------

    async def process_one(self, slot: int = 0) -> bool:
        """Claim, execute and settle at most one task. Returns False when idle."""
        lease_token = str(uuid.uuid4())
        limits = self.cfg.limits
        task = await self.broker.claim_next_task(
            lease_token=lease_token,
            lease_ms=self.cfg.lease_ms,
            default_kind_concurrency=limits.default_kind_concurrency,
            default_kind_min_interval_ms=limits.default_kind_min_interval_ms,
            kind_concurrency=limits.kind_concurrency,
            kind_min_interval_ms=limits.kind_min_interval_ms,
        )
        if task is None:
            return False

        started = time.monotonic()
        logger.info(
            f'Claimed task {task.id} kind={task.job_kind} '
            f'attempt={task.attempt_count}/{task.max_attempts} '
            f'trace={task.trace_id} slot={slot}'
        )

        heartbeat = LeaseHeartbeat(
            self.broker.extend_lease,
            task_id=task.id,
            lease_token=lease_token,
            lease_ms=self.cfg.lease_ms,
            interval_ms=self.cfg.heartbeat_ms,
        )
        heartbeat.start()
        try:
            outcome = await self.registry.execute(task)
            duration_ms = int((time.monotonic() - started) * 1000)

            if outcome.is_ok():
                try:
                    completed = await self.broker.complete_task(
                        task.id, lease_token, outcome.unwrap()
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    # A lost connection goes to the slot loop; the lease expires
                    # and recovery requeues the task.
                    if is_retryable_connection_error(exc):
                        raise
                    logger.error(
                        f'Could not store result of task {task.id} kind={task.job_kind}: '
                        f'{type(exc).__name__}: {exc} (trace={task.trace_id} slot={slot})'
                    )
                    error = TaskWorkerError(
                        TaskErrorCode.EXECUTION_FAILED,
                        f'{task.job_kind} result could not be stored',
                        {'detail': f'{type(exc).__name__}: {exc}'},
                    )
                else:
                    if completed is None:
                        logger.warning(
                            f'Completion of task {task.id} was stale '
                            f'(attempt={task.attempt_count} lease_stale={heartbeat.stale} '
                            f'trace={task.trace_id} slot={slot}); result discarded'
                        )
                        return True
                    logger.info(
                        f'Completed task {task.id} kind={task.job_kind} '
                        f'attempt={task.attempt_count} in {duration_ms}ms '
                        f'trace={task.trace_id} slot={slot}'
                    )
                    return True
            else:
                error = to_task_worker_error(
                    outcome.unwrap_err(),
                    'Unknown task execution failure',
                )

            context: dict[str, Any] = {
                **(error.context or {}),
                'taskId': task.id,
                'jobKind': task.job_kind,
                'traceId': task.trace_id,
                'attempt': task.attempt_count,
                'maxAttempts': task.max_attempts,
                'slot': slot,
                'leaseStale': heartbeat.stale,
            }
            retryable = error.retryable
            backoff_ms = compute_backoff_ms(
                task.attempt_count,
                self.cfg.recovery.backoff_base_ms,
                self.cfg.recovery.backoff_max_ms,
            )
            settled = await self.broker.settle_failure(
                task.id,
                lease_token=lease_token,
                error_code=error.code.value,
                error_message=error.message,
                error_context=context,
                retryable=retryable,
                backoff_ms=backoff_ms,
            )

            match settled.outcome:
                case SettleOutcome.STALE:
                    logger.warning(
                        f'Failure of task {task.id} was stale '
                        f'(code={error.code.value} trace={task.trace_id} slot={slot})'
                    )
                case SettleOutcome.RETRIED:
                    next_at = settled.task.next_attempt_at if settled.task else None
                    logger.warning(
                        f'Requeued task {task.id} kind={task.job_kind} '
                        f'code={error.code.value} attempt={task.attempt_count}/{task.max_attempts} '
                        f'backoff={backoff_ms}ms next_attempt_at={next_at} '
                        f'trace={task.trace_id} slot={slot}'
                    )
                case SettleOutcome.FAILED:
                    logger.error(
                        f'Task {task.id} kind={task.job_kind} failed: '
                        f'{error.code.value}: {error.message} '
                        f'(retryable={retryable} dead_lettered={settled.dead_lettered} '
                        f'attempt={task.attempt_count}/{task.max_attempts} '
                        f'duration={duration_ms}ms trace={task.trace_id} slot={slot})'
                    )
            return True
        finally:
            await heartbeat.stop()

    async def run_once(self) -> int:
        """Drain ready work with ``concurrency`` parallel claims per round.

        Stops at the first round in which no slot handled a task, or when a
        stop was requested. Returns the number of tasks handled.
        """
        handled = 0
        while not self._stop.is_set():
            results = await asyncio.gather(
                *(self.process_one(slot) for slot in range(self.cfg.concurrency))
            )
            count = sum(1 for r in results if r)
            if count == 0:
                break
            handled += count
        logger.info(f'Worker {self.worker_id} drained {handled} task(s)')
        return handled

    # ----------------- Long-running loops -----------------

    async def _slot_loop(self, slot: int) -> None:
        idle_s = self.cfg.interval_ms / 1000.0
        backoff = self._make_retry_backoff()
        while not self._stop.is_set():
            try:
                handled = await self.process_one(slot)
                backoff.reset()
                if not handled:
                    await self._sleep_with_stop(idle_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_retryable_connection_error(exc):
                    if not backoff.can_retry():
                        logger.error(
                            f'Slot {slot} giving up after {backoff.attempts} '
                            f'consecutive database errors: {exc}'
                        )
                        raise
                    delay = backoff.next_delay_seconds()
                    logger.error(
                        f'Slot {slot} database error: {exc}. Retrying in {delay:.1f}s '
                        f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
                    )
                    await self._sleep_with_stop(delay)
                    continue
                logger.error(f'Slot {slot} error: {exc}')
                await self._sleep_with_stop(idle_s)

    async def _recovery_loop(self) -> None:
        recovery = self.cfg.recovery
        while not self._stop.is_set():
            try:
                result = await self.broker.recover_expired_running(
                    limit=recovery.batch_size,
                    backoff_base_ms=recovery.backoff_base_ms,
                    backoff_max_ms=recovery.backoff_max_ms,
                )
                if result.processed > 0:
                    logger.warning(
                        f'Recovered {result.processed} expired lease(s): '
                        f'requeued={result.requeued} failed={result.failed}'
                    )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f'Recovery sweep error: {exc}')
            await self._sleep_with_stop(recovery.interval_ms / 1000.0)

    async def _audit_prune_loop(self) -> None:
        retention = self.cfg.retention
        if not retention.enabled:
            logger.info('Audit log pruning disabled (ttl_days=0)')
            return
        while not self._stop.is_set():
            try:
                pruned = await self.broker.prune_audit_logs(
                    AuditLogFilters(),
                    older_than_days=retention.ttl_days,
                    limit=retention.prune_batch_size,
                    actor=AUDIT_PRUNE_ACTOR,
                    reason=AUDIT_PRUNE_REASON,
                )
                if pruned.deleted > 0:
                    logger.warning(
                        f'Pruned {pruned.deleted} audit row(s) older than '
                        f'{pruned.cutoff_at.isoformat()} '
                        f'(matched={pruned.matched} selected={pruned.selected} '
                        f'sample={pruned.sample_ids[:5]})'
                    )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f'Audit prune error: {exc}')
            await self._sleep_with_stop(retention.prune_interval_ms / 1000.0)

    async def start(self, *, init_schema: bool = True) -> None:
        """Check connectivity and create missing tables, retrying transient errors."""
        backoff = self._make_retry_backoff()
        while not self._stop.is_set():
            try:
                await self.broker.open()
                if init_schema:
                    await self.broker.ensure_schema_initialized()
                return
            except Exception as exc:
                if not is_retryable_connection_error(exc) or not backoff.can_retry():
                    raise
                delay = backoff.next_delay_seconds()
                logger.error(
                    f'Worker start failed: {exc}. Retrying in {delay:.1f}s '
                    f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
                )
                await self._sleep_with_stop(delay)

    async def run_forever(self, *, init_schema: bool = True) -> None:
        """Run slot, recovery and prune loops until request_stop()."""
        await self.start(init_schema=init_schema)
        if self._stop.is_set():
            return
        cfg = self.cfg
        logger.info(
            f'Worker {self.worker_id} started: concurrency={cfg.concurrency} '
            f'interval={cfg.interval_ms}ms lease={cfg.lease_ms}ms heartbeat={cfg.heartbeat_ms}ms '
            f'recovery_interval={cfg.recovery.interval_ms}ms '
            f'default_kind_concurrency={cfg.limits.default_kind_concurrency} '
            f'audit_ttl_days={cfg.retention.ttl_days}'
        )
        try:
            for slot in range(cfg.concurrency):
                self._spawn_background(self._slot_loop(slot), name=f'slot-{slot}', slot=True)
            self._spawn_background(self._recovery_loop(), name='recovery')
            self._spawn_background(self._audit_prune_loop(), name='audit-prune')
            await self._stop.wait()
        finally:
            await self.stop()
        if self._slot_failure is not None:
            raise self._slot_failure

    async def stop(self, *, timeout_s: float | None = None) -> None:
        """Finish in-flight executions (bounded), then cancel everything else."""
        self._stop.set()
        if timeout_s is None:
            timeout_s = self.cfg.shutdown_timeout_ms / 1000.0

        if self._slot_tasks:
            slot_tasks = tuple(self._slot_tasks)
            done, pending = await asyncio.wait(slot_tasks, timeout=max(0.0, timeout_s))
            if pending:
                logger.warning(
                    f'Worker stop timed out with {len(pending)} execution(s) still running; '
                    'cancelling them (their leases will expire and be recovered)'
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            if done:
                await asyncio.gather(*done, return_exceptions=True)
            self._slot_tasks.clear()

        # Service loops are safe to cancel.
        if self._service_tasks:
            service_tasks = tuple(self._service_tasks)
            for task in service_tasks:
                task.cancel()
            await asyncio.gather(*service_tasks, return_exceptions=True)
            self._service_tasks.clear()

        logger.info(f'Worker {self.worker_id} stopped')
