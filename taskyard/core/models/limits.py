# taskyard/core/models/limits.py
from __future__ import annotations
from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from taskyard.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class KindLimitsConfig(BaseModel):
    """
    Per-job-kind claim limits, enforced inside the claim transaction.

    - default_kind_concurrency: running tasks allowed per kind unless overridden
    - kind_concurrency: per-kind override of the above
    - default_kind_min_interval_ms: minimum gap between two claims of one kind; 0 = no limit
    - kind_min_interval_ms: per-kind override of the above
    """

    default_kind_concurrency: Annotated[int, Field(ge=1)] = 1
    kind_concurrency: dict[str, Annotated[int, Field(ge=1)]] = Field(
        default_factory=dict
    )
    default_kind_min_interval_ms: Annotated[int, Field(ge=0, le=3_600_000)] = 0
    kind_min_interval_ms: dict[str, Annotated[int, Field(ge=0, le=3_600_000)]] = Field(
        default_factory=dict
    )

    @model_validator(mode='after')
    def validate_kind_keys(self) -> Self:
        report = ValidationReport('kind limits')
        for field_name in ('kind_concurrency', 'kind_min_interval_ms'):
            blank = [k for k in getattr(self, field_name) if not k.strip()]
            if blank:
                report.add(
                    ConfigurationError(
                        message=f'{field_name} contains a blank job kind',
                        code=ErrorCode.CONFIG_INVALID_WORKER,
                        notes=[f'{len(blank)} blank key(s) in {field_name}'],
                        help_text='use the exact job_kind string as the map key',
                    )
                )
        raise_collected(report)
        return self
