"""Worker configuration dataclass."""

from __future__ import annotations

import json
import math
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from taskyard.core.errors import ConfigurationError, ErrorCode
from taskyard.core.models.limits import KindLimitsConfig
from taskyard.core.models.recovery import RecoveryConfig
from taskyard.core.models.resilience import WorkerResilienceConfig
from taskyard.core.models.retention import AuditRetentionConfig

DEFAULT_INTERVAL_MS = 1_500
DEFAULT_LEASE_MS = 600_000
DEFAULT_SHUTDOWN_TIMEOUT_MS = 30_000
MAX_CONCURRENCY = 16


def default_worker_id() -> str:
    return f'{os.getpid()}-{uuid.uuid4().hex[:8]}'


def _clamp(value: float, lo: int, hi: int) -> int:
    return max(lo, min(hi, round(value)))


def env_int(environ: Mapping[str, str], name: str, default: int, lo: int, hi: int) -> int:
    """Read an integer knob; missing, blank or non-numeric values use the default."""
    raw = (environ.get(name) or '').strip()
    value: float = default
    if raw:
        try:
            value = float(raw)
        except ValueError:
            value = default
        if not math.isfinite(value):
            value = default
    return _clamp(value, lo, hi)


def env_int_map(environ: Mapping[str, str], name: str, lo: int, hi: int) -> dict[str, int]:
    """Read a JSON object of ints. Invalid JSON yields {}; invalid entries are dropped."""
    raw = (environ.get(name) or '').strip()
    if not raw:
        return {}
    try:
        parsed: Any = json.loads(raw)
    except ValueError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    result: dict[str, int] = {}
    for raw_key, raw_value in parsed.items():
        key = str(raw_key).strip()
        if not key:
            continue
        if isinstance(raw_value, bool) or not isinstance(raw_value, (int, float)):
            continue
        if not math.isfinite(raw_value):
            continue
        result[key] = _clamp(raw_value, lo, hi)
    return result


@dataclass
class WorkerConfig:
    worker_id: str = field(default_factory=default_worker_id)
    concurrency: int = 1  # parallel slot loops, 1..16
    interval_ms: int = DEFAULT_INTERVAL_MS  # idle sleep per slot
    lease_ms: int = DEFAULT_LEASE_MS
    # Must stay below lease_ms so a live execution never loses its lease.
    heartbeat_ms: int = DEFAULT_LEASE_MS // 3
    # How long stop() waits for in-flight executions before cancelling them.
    shutdown_timeout_ms: int = DEFAULT_SHUTDOWN_TIMEOUT_MS
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    retention: AuditRetentionConfig = field(default_factory=AuditRetentionConfig)
    limits: KindLimitsConfig = field(default_factory=KindLimitsConfig)
    resilience: WorkerResilienceConfig = field(default_factory=WorkerResilienceConfig)

    def __post_init__(self) -> None:
        problems: list[str] = []
        if not 1 <= self.concurrency <= MAX_CONCURRENCY:
            problems.append(f'concurrency={self.concurrency} (expected 1..{MAX_CONCURRENCY})')
        if self.interval_ms < 1:
            problems.append(f'interval_ms={self.interval_ms} (expected >= 1)')
        if self.lease_ms < 1:
            problems.append(f'lease_ms={self.lease_ms} (expected >= 1)')
        if self.heartbeat_ms >= self.lease_ms:
            problems.append(
                f'heartbeat_ms={self.heartbeat_ms} must be < lease_ms={self.lease_ms}'
            )
        if problems:
            raise ConfigurationError(
                message='invalid worker configuration',
                code=ErrorCode.CONFIG_INVALID_WORKER,
                notes=problems,
                help_text='heartbeat_ms is usually about lease_ms / 3',
            )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> WorkerConfig:
        """Build a config from TASK_WORKER_* / TASK_AUDIT_* variables.

        Every value is clamped into its valid range, so this never raises for
        out-of-range input.
        """
        interval_ms = env_int(environ, 'TASK_WORKER_INTERVAL_MS', DEFAULT_INTERVAL_MS, 50, 30_000)
        lease_ms = env_int(environ, 'TASK_WORKER_LEASE_MS', DEFAULT_LEASE_MS, 5_000, 7_200_000)
        heartbeat_ms = env_int(
            environ,
            'TASK_WORKER_HEARTBEAT_MS',
            lease_ms // 3,
            1_000,
            max(1_000, lease_ms - 500),
        )
        concurrency = env_int(environ, 'TASK_WORKER_CONCURRENCY', 1, 1, MAX_CONCURRENCY)
        backoff_base_ms = env_int(environ, 'TASK_WORKER_BACKOFF_BASE_MS', 2_000, 100, 60_000)
        backoff_max_ms = env_int(
            environ, 'TASK_WORKER_BACKOFF_MAX_MS', 60_000, backoff_base_ms, 3_600_000
        )

        recovery = RecoveryConfig(
            interval_ms=env_int(
                environ, 'TASK_WORKER_RECOVERY_INTERVAL_MS', interval_ms, 250, 120_000
            ),
            batch_size=env_int(environ, 'TASK_WORKER_RECOVERY_BATCH_SIZE', 50, 1, 500),
            backoff_base_ms=backoff_base_ms,
            backoff_max_ms=backoff_max_ms,
        )
        limits = KindLimitsConfig(
            default_kind_concurrency=env_int(
                environ, 'TASK_WORKER_DEFAULT_KIND_CONCURRENCY', concurrency, 1, concurrency
            ),
            kind_concurrency=env_int_map(
                environ, 'TASK_WORKER_KIND_CONCURRENCY', 1, concurrency
            ),
            default_kind_min_interval_ms=env_int(
                environ, 'TASK_WORKER_DEFAULT_KIND_RATE_LIMIT_MS', 0, 0, 3_600_000
            ),
            kind_min_interval_ms=env_int_map(
                environ, 'TASK_WORKER_KIND_RATE_LIMIT_MS', 0, 3_600_000
            ),
        )
        retention = AuditRetentionConfig(
            ttl_days=env_int(environ, 'TASK_AUDIT_LOG_TTL_DAYS', 30, 0, 3650),
            prune_interval_ms=env_int(
                environ, 'TASK_AUDIT_PRUNE_INTERVAL_MS', 60_000, 1_000, 3_600_000
            ),
            prune_batch_size=env_int(environ, 'TASK_AUDIT_PRUNE_BATCH_SIZE', 500, 1, 5_000),
        )

        worker_id = (environ.get('TASK_WORKER_ID') or '').strip() or default_worker_id()
        return cls(
            worker_id=worker_id,
            concurrency=concurrency,
            interval_ms=interval_ms,
            lease_ms=lease_ms,
            heartbeat_ms=heartbeat_ms,
            recovery=recovery,
            retention=retention,
            limits=limits,
        )
