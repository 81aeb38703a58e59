"""taskyard - a Postgres-backed persistent task queue"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.brokers.postgres import PostgresBroker
from .core.models.broker import PostgresConfig
from .core.models.limits import KindLimitsConfig
from .core.models.recovery import RecoveryConfig
from .core.models.resilience import WorkerResilienceConfig
from .core.models.retention import AuditRetentionConfig
from .core.models.records import (
    TaskRecord,
    DeadLetterRecord,
    AuditLogRecord,
    SettleResult,
    RecoveryResult,
    BulkRetryResult,
    DeadLetterPreview,
    PruneResult,
    QueueMetrics,
    KindSummary,
    OpsSnapshot,
    AuditPagination,
)
from .core.types.status import (
    TaskStatus,
    TaskType,
    DeadReason,
    AuditAction,
    SettleOutcome,
    RunMode,
    TASK_TERMINAL_STATES,
)
from .core.queue.filters import TaskFilters, DeadLetterFilters, AuditLogFilters
from .core.queue.backoff import compute_backoff_ms
from .core.executor import (
    ExecutorRegistry,
    JobResult,
    TaskErrorCode,
    TaskWorkerError,
    NotRegistered,
    DuplicateJobKindError,
    register_system_jobs,
)
from .core.worker.config import WorkerConfig
from .core.worker.worker import Worker
from .core.errors import (
    ErrorCode,
    TaskyardError,
    ConfigurationError,
    RegistryError,
    ValidationReport,
    MultipleValidationErrors,
)

__all__ = [
    # Core
    'PostgresBroker',
    'Worker',
    'WorkerConfig',
    # Configuration
    'PostgresConfig',
    'KindLimitsConfig',
    'RecoveryConfig',
    'WorkerResilienceConfig',
    'AuditRetentionConfig',
    # Records
    'TaskRecord',
    'DeadLetterRecord',
    'AuditLogRecord',
    'SettleResult',
    'RecoveryResult',
    'BulkRetryResult',
    'DeadLetterPreview',
    'PruneResult',
    'QueueMetrics',
    'KindSummary',
    'OpsSnapshot',
    'AuditPagination',
    # Enums
    'TaskStatus',
    'TaskType',
    'DeadReason',
    'AuditAction',
    'SettleOutcome',
    'RunMode',
    'TASK_TERMINAL_STATES',
    # Queries
    'TaskFilters',
    'DeadLetterFilters',
    'AuditLogFilters',
    'compute_backoff_ms',
    # Execution
    'ExecutorRegistry',
    'JobResult',
    'TaskErrorCode',
    'TaskWorkerError',
    'NotRegistered',
    'DuplicateJobKindError',
    'register_system_jobs',
    # Errors
    'ErrorCode',
    'TaskyardError',
    'ConfigurationError',
    'RegistryError',
    'ValidationReport',
    'MultipleValidationErrors',
]
