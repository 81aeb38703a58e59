# taskyard/core/queue/backoff.py
"""Requeue delay shared by failure settlement and the recovery sweeper."""

from __future__ import annotations


def compute_backoff_ms(attempt_count: int, base_ms: int, max_ms: int) -> int:
    """Exponential delay for a failure observed at ``attempt_count``.

    ``min(max_ms, base_ms * 2 ** max(0, attempt_count - 1))``: the first
    attempt waits base_ms, each further attempt doubles it, capped at max_ms.
    Non-decreasing in attempt_count and never above max_ms.
    """
    exponent = max(0, attempt_count - 1)
    return min(max_ms, base_ms * 2**exponent)
