# taskyard/core/models/recovery.py
from __future__ import annotations
from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from taskyard.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class RecoveryConfig(BaseModel):
    """
    Configuration for the expired-lease sweeper and the retry backoff curve.

    The sweeper requeues running tasks whose lease expired without settlement
    (crashed or stalled workers) and dead-letters them once attempts run out.
    The same backoff bounds drive requeue delays after a failed attempt.

    Fields:
    - interval_ms: How often the sweeper runs
    - batch_size: Maximum expired tasks handled per sweep
    - backoff_base_ms: Delay after the first failed attempt
    - backoff_max_ms: Cap for the exponential delay
    """

    interval_ms: Annotated[int, Field(ge=250, le=120_000)] = Field(
        default=1_500,
        description='How often the sweeper looks for expired leases (250ms-2min)',
    )
    batch_size: Annotated[int, Field(ge=1, le=500)] = Field(
        default=50,
        description='Maximum expired tasks recovered per sweep (1-500)',
    )
    backoff_base_ms: Annotated[int, Field(ge=100, le=60_000)] = Field(
        default=2_000,
        description='Requeue delay after the first failed attempt (100ms-1min)',
    )
    backoff_max_ms: Annotated[int, Field(ge=100, le=3_600_000)] = Field(
        default=60_000,
        description='Upper bound for the exponential requeue delay (up to 1hr)',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('recovery')
        if self.backoff_max_ms < self.backoff_base_ms:
            report.add(
                ConfigurationError(
                    message='backoff_max_ms must be >= backoff_base_ms',
                    code=ErrorCode.CONFIG_INVALID_RECOVERY,
                    notes=[
                        f'backoff_base_ms={self.backoff_base_ms}ms',
                        f'backoff_max_ms={self.backoff_max_ms}ms',
                    ],
                    help_text='increase backoff_max_ms or reduce backoff_base_ms',
                )
            )
        raise_collected(report)
        return self
