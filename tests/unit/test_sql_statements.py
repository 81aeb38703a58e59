"""Structural checks on the queue SQL.

These pin the clauses the concurrency guarantees rest on, so an edit that
drops one fails fast without a database.
"""

from __future__ import annotations

import pytest

from taskyard.core.queue import sql


def _flat(stmt: object) -> str:
    return ' '.join(str(getattr(stmt, 'text')).split())


@pytest.mark.unit
class TestClaimStatement:
    """CLAIM_NEXT_TASK_SQL."""

    def test_skips_locked_rows(self) -> None:
        assert 'FOR UPDATE OF t SKIP LOCKED' in _flat(sql.CLAIM_NEXT_TASK_SQL)

    def test_per_kind_try_lock(self) -> None:
        assert 'pg_try_advisory_xact_lock(hashtext(t.job_kind))' in _flat(
            sql.CLAIM_NEXT_TASK_SQL
        )

    def test_orders_by_readiness_then_age(self) -> None:
        assert 'ORDER BY t.next_attempt_at ASC, t.created_at ASC LIMIT 1' in _flat(
            sql.CLAIM_NEXT_TASK_SQL
        )

    def test_counts_only_live_leases(self) -> None:
        flat = _flat(sql.CLAIM_NEXT_TASK_SQL)
        assert "r.status = 'running'" in flat
        assert 'r.lease_expires_at > NOW()' in flat

    def test_increments_attempt_and_sets_lease(self) -> None:
        flat = _flat(sql.CLAIM_NEXT_TASK_SQL)
        assert 'attempt_count = COALESCE(t.attempt_count, 0) + 1' in flat
        assert 'lease_token = :lease_token' in flat
        assert 'last_attempt_at = NOW()' in flat

    def test_excludes_skipped_kinds(self) -> None:
        assert 'NOT (t.job_kind = ANY(CAST(:skip_kinds AS TEXT[])))' in _flat(
            sql.CLAIM_NEXT_TASK_SQL
        )


@pytest.mark.unit
class TestKindGateRecheck:
    """KIND_GATE_RECHECK_SQL ignores the row just claimed."""

    def test_excludes_claimed_row_from_both_gates(self) -> None:
        flat = _flat(sql.KIND_GATE_RECHECK_SQL)
        assert 'r.id <> :task_id' in flat
        assert 'recent.id <> :task_id' in flat

    def test_counts_only_live_leases(self) -> None:
        flat = _flat(sql.KIND_GATE_RECHECK_SQL)
        assert "r.status = 'running'" in flat
        assert 'r.lease_expires_at > NOW()' in flat


@pytest.mark.unit
class TestLeaseGatedStatements:
    """Owner-side writes are gated on a live lease."""

    @pytest.mark.parametrize(
        'stmt',
        [
            sql.EXTEND_LEASE_SQL,
            sql.COMPLETE_TASK_SQL,
            sql.SELECT_LEASED_TASK_FOR_UPDATE_SQL,
        ],
    )
    def test_lease_predicate_present(self, stmt: object) -> None:
        flat = _flat(stmt)
        assert "status = 'running'" in flat
        assert 'lease_token = :lease_token' in flat
        assert 'lease_expires_at > NOW()' in flat

    @pytest.mark.parametrize(
        'stmt',
        [
            sql.COMPLETE_TASK_SQL,
            sql.REQUEUE_FAILED_ATTEMPT_SQL,
            sql.MARK_FAILED_ATTEMPT_SQL,
            sql.REQUEUE_EXPIRED_SQL,
            sql.FAIL_EXPIRED_SQL,
            sql.RESET_TASK_FOR_RETRY_SQL,
            sql.CANCEL_TASK_SQL,
        ],
    )
    def test_leaving_running_clears_lease(self, stmt: object) -> None:
        flat = _flat(stmt)
        assert 'lease_token = NULL' in flat
        assert 'lease_expires_at = NULL' in flat


@pytest.mark.unit
class TestOperatorStatements:
    """Recovery, retry and dead-letter statements."""

    def test_recovery_takes_oldest_expiry_first(self) -> None:
        flat = _flat(sql.SELECT_EXPIRED_RUNNING_SQL)
        assert 'lease_expires_at <= NOW()' in flat
        assert 'ORDER BY lease_expires_at ASC' in flat
        assert 'FOR UPDATE SKIP LOCKED' in flat

    def test_retry_only_from_failed_or_cancelled(self) -> None:
        flat = _flat(sql.RESET_TASK_FOR_RETRY_SQL)
        assert "status IN ('failed', 'cancelled')" in flat
        assert 'attempt_count = 0' in flat

    def test_dead_letter_is_upserted_per_task(self) -> None:
        assert 'ON CONFLICT (task_id) DO UPDATE' in _flat(sql.UPSERT_DEAD_LETTER_SQL)

    def test_cancel_only_live_tasks(self) -> None:
        assert "status IN ('queued', 'running')" in _flat(sql.CANCEL_TASK_SQL)

    def test_idempotent_insert(self) -> None:
        assert 'ON CONFLICT (episode_id, job_kind, idempotency_key)' in _flat(
            sql.INSERT_TASK_SQL
        )


@pytest.mark.unit
class TestTaskReportStatement:
    """UPDATE_TASK_REPORT_SQL leaves terminal rows alone."""

    def test_only_touches_queued_or_running(self) -> None:
        assert "WHERE id = :task_id AND status IN ('queued', 'running')" in _flat(
            sql.UPDATE_TASK_REPORT_SQL
        )

    def test_missing_status_keeps_current(self) -> None:
        assert 'status = COALESCE(CAST(:status AS TEXT), status)' in _flat(
            sql.UPDATE_TASK_REPORT_SQL
        )
