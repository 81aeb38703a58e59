# taskyard/core/models/resilience.py
from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from taskyard.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class WorkerResilienceConfig(BaseModel):
    """
    Retry/backoff for transient database failures inside worker loops.

    A slot loop that hits a connection error backs off with jitter instead of
    sleeping the plain poll interval.
    """

    db_retry_initial_ms: Annotated[int, Field(ge=100, le=60_000)] = Field(
        default=500,
        description='Initial backoff for retrying transient DB errors (100ms-60s)',
    )
    db_retry_max_ms: Annotated[int, Field(ge=500, le=300_000)] = Field(
        default=30_000,
        description='Maximum backoff for retrying transient DB errors (500ms-5min)',
    )
    db_retry_max_attempts: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description=(
            'Consecutive transient DB errors tolerated per loop; 0 means infinite'
        ),
    )
    jitter_ratio: Annotated[float, Field(ge=0.0, le=1.0)] = Field(
        default=0.25,
        description='Fraction of each delay randomized in both directions (0-1)',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('resilience')
        if self.db_retry_max_ms < self.db_retry_initial_ms:
            report.add(
                ConfigurationError(
                    message='db_retry_max_ms must be >= db_retry_initial_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'db_retry_initial_ms={self.db_retry_initial_ms}ms',
                        f'db_retry_max_ms={self.db_retry_max_ms}ms',
                    ],
                    help_text='increase db_retry_max_ms or reduce db_retry_initial_ms',
                )
            )

        raise_collected(report)
        return self
