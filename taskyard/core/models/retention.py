# taskyard/core/models/retention.py
from __future__ import annotations
from typing import Annotated
from pydantic import BaseModel, Field


class AuditRetentionConfig(BaseModel):
    """
    Background pruning of the task audit log.

    Rows older than ttl_days are removed in batches of prune_batch_size every
    prune_interval_ms, so a large backlog drains incrementally.
    ttl_days=0 disables the prune loop entirely.
    """

    ttl_days: Annotated[int, Field(ge=0, le=3650)] = Field(
        default=30,
        description='Age in days after which audit rows are pruned; 0 disables pruning',
    )
    prune_interval_ms: Annotated[int, Field(ge=1_000, le=3_600_000)] = Field(
        default=60_000,
        description='How often the prune loop runs (1s-1hr)',
    )
    prune_batch_size: Annotated[int, Field(ge=1, le=5_000)] = Field(
        default=500,
        description='Maximum audit rows deleted per prune pass (1-5000)',
    )

    @property
    def enabled(self) -> bool:
        return self.ttl_days > 0
