"""Unit tests for operator input normalization and WHERE builders."""

from __future__ import annotations

import math

import pytest

from taskyard.core.queue.filters import (
    DEFAULT_ACTOR,
    MAX_TASK_IDS,
    AuditLogFilters,
    DeadLetterFilters,
    TaskFilters,
    WhereClause,
    build_audit_where,
    build_dead_letter_where,
    build_task_where,
    normalize_actor,
    normalize_filter_string,
    normalize_limit,
    normalize_max_attempts,
    normalize_reason,
    normalize_task_ids,
)


@pytest.mark.unit
class TestNormalizeScalars:
    """Tests for string and numeric normalization."""

    def test_blank_filter_means_none(self) -> None:
        assert normalize_filter_string(None) is None
        assert normalize_filter_string('') is None
        assert normalize_filter_string('   ') is None
        assert normalize_filter_string('  ep-1 ') == 'ep-1'

    def test_actor_defaults(self) -> None:
        assert normalize_actor(None) == DEFAULT_ACTOR
        assert normalize_actor('  ') == DEFAULT_ACTOR
        assert normalize_actor(' alice ') == 'alice'

    def test_reason_fallback(self) -> None:
        assert normalize_reason(None, 'manual_retry') == 'manual_retry'
        assert normalize_reason('flaky upstream', 'manual_retry') == 'flaky upstream'

    def test_limit_rounds_and_clamps(self) -> None:
        assert normalize_limit(None, 50, 1, 500) == 50
        assert normalize_limit(0, 50, 1, 500) == 1
        assert normalize_limit(10_000, 50, 1, 500) == 500
        assert normalize_limit(12.6, 50, 1, 500) == 13

    def test_non_finite_limit_uses_fallback(self) -> None:
        assert normalize_limit(math.nan, 50, 1, 500) == 50
        assert normalize_limit(math.inf, 50, 1, 500) == 50

    def test_bool_is_not_a_limit(self) -> None:
        assert normalize_limit(True, 50, 1, 500) == 50

    def test_max_attempts_default_and_range(self) -> None:
        assert normalize_max_attempts(None) == 3
        assert normalize_max_attempts(0) == 1
        assert normalize_max_attempts(99) == 10
        assert normalize_max_attempts(5) == 5


@pytest.mark.unit
class TestNormalizeTaskIds:
    """Tests for normalize_task_ids."""

    def test_trims_and_dedupes_first_wins(self) -> None:
        ids = normalize_task_ids([' b ', 'a', 'b', '', '  ', 'c', 'a'])
        assert ids == ['b', 'a', 'c']

    def test_none_and_empty(self) -> None:
        assert normalize_task_ids(None) == []
        assert normalize_task_ids([]) == []

    def test_capped(self) -> None:
        ids = normalize_task_ids([f'id-{i}' for i in range(MAX_TASK_IDS + 25)])
        assert len(ids) == MAX_TASK_IDS
        assert ids[0] == 'id-0'

    def test_non_strings_dropped(self) -> None:
        assert normalize_task_ids(['x', 5, None, 'y']) == ['x', 'y']  # type: ignore[list-item]


@pytest.mark.unit
class TestWhereBuilders:
    """Tests for the dynamic WHERE clause builders."""

    def test_empty_clause_renders_nothing(self) -> None:
        clause = WhereClause()
        assert clause.where_sql() == ''
        assert clause.and_sql() == ''

    def test_task_where_blank_filters_ignored(self) -> None:
        clause = build_task_where(TaskFilters(episode_id='  ', job_kind=None))
        assert clause.conditions == []
        assert clause.params == {}

    def test_task_where_trace_is_substring_ilike(self) -> None:
        clause = build_task_where(TaskFilters(episode_id='ep-1', trace_id='abc'))
        assert clause.where_sql() == (
            'WHERE episode_id = :f_episode_id AND trace_id ILIKE :f_trace_id'
        )
        assert clause.params == {'f_episode_id': 'ep-1', 'f_trace_id': '%abc%'}

    def test_alias_prefixes_columns(self) -> None:
        clause = build_task_where(TaskFilters(job_kind='EXPORT'), alias='t')
        assert clause.and_sql() == 'AND t.job_kind = :f_job_kind'

    def test_dead_letter_where_with_task_ids(self) -> None:
        clause = build_dead_letter_where(
            DeadLetterFilters(
                dead_reason='non_retryable',
                error_code='TASK_PAYLOAD_INVALID',
                task_ids=['t1', ' t1 ', 't2'],
            ),
            alias='d',
        )
        assert 'd.dead_reason = :f_dead_reason' in clause.conditions
        assert 'd.error_code = :f_error_code' in clause.conditions
        assert 'd.task_id = ANY(CAST(:f_task_ids AS TEXT[]))' in clause.conditions
        assert clause.params['f_task_ids'] == ['t1', 't2']

    def test_dead_letter_where_plain_task_filters(self) -> None:
        """Plain TaskFilters only contribute the shared scope."""
        clause = build_dead_letter_where(TaskFilters(episode_id='ep-9'))
        assert clause.conditions == ['episode_id = :f_episode_id']

    def test_audit_where(self) -> None:
        clause = build_audit_where(
            AuditLogFilters(
                job_kind='NOOP',
                action='TASK_RETRY_SINGLE',
                actor='ali',
                batch_id='b-1',
            )
        )
        assert clause.conditions == [
            'job_kind = :f_job_kind',
            'action = :f_action',
            'actor ILIKE :f_actor',
            'batch_id = :f_batch_id',
        ]
        assert clause.params['f_actor'] == '%ali%'
