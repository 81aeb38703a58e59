"""SQL constants for the queue engine."""

from __future__ import annotations

from sqlalchemy import text

TASKS_TABLE = 'taskyard_tasks'
DEAD_LETTERS_TABLE = 'taskyard_task_dead_letters'
AUDIT_LOGS_TABLE = 'taskyard_task_audit_logs'

# A lease is valid while the task is running, the token matches and the
# expiry is still in the future. Every owner-side mutation is gated on it.
LEASE_VALID_PREDICATE = """
    status = 'running'
    AND lease_token = :lease_token
    AND lease_expires_at IS NOT NULL
    AND lease_expires_at > NOW()
"""


# ---------- Claim ----------
# The lateral try-lock serializes the per-kind running count across concurrent
# claimers of the same kind. The lock is transaction scoped and released on
# commit. A claimer that cannot take the lock skips that kind rather than wait.

CLAIM_NEXT_TASK_SQL = text("""
WITH candidate AS (
  SELECT t.id
  FROM taskyard_tasks t
  CROSS JOIN LATERAL (
    SELECT pg_try_advisory_xact_lock(hashtext(t.job_kind)) AS kind_lock_acquired
  ) lk
  WHERE t.status = 'queued'
    AND t.next_attempt_at <= NOW()
    AND NOT (t.job_kind = ANY(CAST(:skip_kinds AS TEXT[])))
    AND lk.kind_lock_acquired
    AND (
      SELECT COUNT(*)
      FROM taskyard_tasks r
      WHERE r.status = 'running'
        AND r.job_kind = t.job_kind
        AND r.lease_expires_at IS NOT NULL
        AND r.lease_expires_at > NOW()
    ) < GREATEST(
      1,
      COALESCE(
        CAST(CAST(:kind_concurrency AS JSONB) ->> t.job_kind AS INTEGER),
        CAST(:default_kind_concurrency AS INTEGER)
      )
    )
    AND (
      COALESCE(
        CAST(CAST(:kind_min_interval_ms AS JSONB) ->> t.job_kind AS INTEGER),
        CAST(:default_kind_min_interval_ms AS INTEGER)
      ) <= 0
      OR NOT EXISTS (
        SELECT 1
        FROM taskyard_tasks recent
        WHERE recent.job_kind = t.job_kind
          AND recent.last_attempt_at IS NOT NULL
          AND recent.last_attempt_at > NOW() - (
            COALESCE(
              CAST(CAST(:kind_min_interval_ms AS JSONB) ->> t.job_kind AS INTEGER),
              CAST(:default_kind_min_interval_ms AS INTEGER)
            ) * INTERVAL '1 millisecond'
          )
      )
    )
  ORDER BY t.next_attempt_at ASC, t.created_at ASC
  LIMIT 1
  FOR UPDATE OF t SKIP LOCKED
)
UPDATE taskyard_tasks AS t
SET status = 'running',
    progress = 0,
    attempt_count = COALESCE(t.attempt_count, 0) + 1,
    last_attempt_at = NOW(),
    lease_token = :lease_token,
    lease_expires_at = NOW() + (CAST(:lease_ms AS INTEGER) * INTERVAL '1 millisecond'),
    updated_at = NOW()
FROM candidate
WHERE t.id = candidate.id
RETURNING t.*
""")

# Runs as its own statement after the claim, so it sees every claim of this
# kind committed before the kind lock was granted.
KIND_GATE_RECHECK_SQL = text("""
SELECT
  (
    SELECT COUNT(*)
    FROM taskyard_tasks r
    WHERE r.status = 'running'
      AND r.job_kind = :job_kind
      AND r.id <> :task_id
      AND r.lease_expires_at IS NOT NULL
      AND r.lease_expires_at > NOW()
  ) AS running_others,
  EXISTS (
    SELECT 1
    FROM taskyard_tasks recent
    WHERE CAST(:min_interval_ms AS INTEGER) > 0
      AND recent.job_kind = :job_kind
      AND recent.id <> :task_id
      AND recent.last_attempt_at IS NOT NULL
      AND recent.last_attempt_at > NOW() - (
        CAST(:min_interval_ms AS INTEGER) * INTERVAL '1 millisecond'
      )
  ) AS rate_limited
""")


# ---------- Lease ----------

EXTEND_LEASE_SQL = text(f"""
UPDATE taskyard_tasks
SET lease_expires_at = NOW() + (CAST(:lease_ms AS INTEGER) * INTERVAL '1 millisecond'),
    updated_at = NOW()
WHERE id = :task_id
  AND {LEASE_VALID_PREDICATE}
RETURNING id
""")


# ---------- Settlement ----------

COMPLETE_TASK_SQL = text(f"""
UPDATE taskyard_tasks
SET status = 'completed',
    progress = 1,
    result_json = CAST(:result AS JSONB),
    error_code = NULL,
    error_message = NULL,
    error_context_json = NULL,
    lease_token = NULL,
    lease_expires_at = NULL,
    updated_at = NOW()
WHERE id = :task_id
  AND {LEASE_VALID_PREDICATE}
RETURNING *
""")

SELECT_LEASED_TASK_FOR_UPDATE_SQL = text(f"""
SELECT *
FROM taskyard_tasks
WHERE id = :task_id
  AND {LEASE_VALID_PREDICATE}
FOR UPDATE
""")

REQUEUE_FAILED_ATTEMPT_SQL = text("""
UPDATE taskyard_tasks
SET status = 'queued',
    progress = NULL,
    error_code = :error_code,
    error_message = :error_message,
    error_context_json = CAST(:error_context AS JSONB),
    next_attempt_at = NOW() + (CAST(:backoff_ms AS INTEGER) * INTERVAL '1 millisecond'),
    lease_token = NULL,
    lease_expires_at = NULL,
    updated_at = NOW()
WHERE id = :task_id AND lease_token = :lease_token
RETURNING *
""")

MARK_FAILED_ATTEMPT_SQL = text("""
UPDATE taskyard_tasks
SET status = 'failed',
    progress = 1,
    error_code = :error_code,
    error_message = :error_message,
    error_context_json = CAST(:error_context AS JSONB),
    lease_token = NULL,
    lease_expires_at = NULL,
    updated_at = NOW()
WHERE id = :task_id AND lease_token = :lease_token
RETURNING *
""")

# Snapshot is taken from the task row after its failure update, so the dead
# letter carries the final error fields.
UPSERT_DEAD_LETTER_SQL = text("""
INSERT INTO taskyard_task_dead_letters (
  id, task_id, episode_id, shot_id, type, job_kind,
  attempts, max_attempts, trace_id, dead_reason,
  error_code, error_message, error_context_json,
  payload_json, result_json, created_at
)
SELECT
  :id, t.id, t.episode_id, t.shot_id, t.type, t.job_kind,
  CAST(:attempts AS INTEGER), CAST(:max_attempts AS INTEGER), t.trace_id, :dead_reason,
  t.error_code, t.error_message, t.error_context_json,
  COALESCE(t.payload_json, CAST('{}' AS JSONB)), COALESCE(t.result_json, CAST('{}' AS JSONB)), NOW()
FROM taskyard_tasks t
WHERE t.id = :task_id
ON CONFLICT (task_id)
DO UPDATE SET
  attempts = EXCLUDED.attempts,
  max_attempts = EXCLUDED.max_attempts,
  dead_reason = EXCLUDED.dead_reason,
  error_code = EXCLUDED.error_code,
  error_message = EXCLUDED.error_message,
  error_context_json = EXCLUDED.error_context_json,
  payload_json = EXCLUDED.payload_json,
  result_json = EXCLUDED.result_json,
  created_at = EXCLUDED.created_at
""")


# ---------- Recovery ----------

SELECT_EXPIRED_RUNNING_SQL = text("""
SELECT *
FROM taskyard_tasks
WHERE status = 'running'
  AND lease_expires_at IS NOT NULL
  AND lease_expires_at <= NOW()
ORDER BY lease_expires_at ASC
LIMIT :limit
FOR UPDATE SKIP LOCKED
""")

REQUEUE_EXPIRED_SQL = text("""
UPDATE taskyard_tasks
SET status = 'queued',
    progress = NULL,
    error_code = :error_code,
    error_message = :error_message,
    error_context_json = CAST(:error_context AS JSONB),
    next_attempt_at = NOW() + (CAST(:backoff_ms AS INTEGER) * INTERVAL '1 millisecond'),
    lease_token = NULL,
    lease_expires_at = NULL,
    updated_at = NOW()
WHERE id = :task_id
""")

FAIL_EXPIRED_SQL = text("""
UPDATE taskyard_tasks
SET status = 'failed',
    progress = 1,
    error_code = :error_code,
    error_message = :error_message,
    error_context_json = CAST(:error_context AS JSONB),
    lease_token = NULL,
    lease_expires_at = NULL,
    updated_at = NOW()
WHERE id = :task_id
""")


# ---------- Manual retry ----------

SELECT_TASK_FOR_UPDATE_SQL = text("""
SELECT *
FROM taskyard_tasks
WHERE id = :task_id
FOR UPDATE
""")

RESET_TASK_FOR_RETRY_SQL = text("""
UPDATE taskyard_tasks
SET status = 'queued',
    progress = NULL,
    attempt_count = 0,
    next_attempt_at = NOW(),
    last_attempt_at = NULL,
    result_json = CAST('{}' AS JSONB),
    error_code = NULL,
    error_message = NULL,
    error_context_json = NULL,
    lease_token = NULL,
    lease_expires_at = NULL,
    updated_at = NOW()
WHERE id = :task_id AND status IN ('failed', 'cancelled')
RETURNING *
""")

DELETE_DEAD_LETTER_SQL = text("""
DELETE FROM taskyard_task_dead_letters
WHERE task_id = :task_id
RETURNING task_id
""")


# ---------- Audit log ----------

INSERT_AUDIT_LOG_SQL = text("""
INSERT INTO taskyard_task_audit_logs (
  id, batch_id, task_id, episode_id, trace_id, job_kind,
  action, actor, message, metadata_json, created_at
)
VALUES (
  :id, :batch_id, :task_id, :episode_id, :trace_id, :job_kind,
  :action, :actor, :message, CAST(:metadata AS JSONB), NOW()
)
""")

DELETE_AUDIT_LOGS_BY_ID_SQL = text("""
DELETE FROM taskyard_task_audit_logs
WHERE id = ANY(CAST(:ids AS TEXT[]))
RETURNING id
""")


# ---------- Producer / operator ----------

INSERT_TASK_SQL = text("""
INSERT INTO taskyard_tasks (
  id, episode_id, shot_id, type, job_kind,
  status, progress, attempt_count, max_attempts, next_attempt_at,
  trace_id, idempotency_key, payload_json, result_json, created_at, updated_at
)
VALUES (
  :id, :episode_id, :shot_id, :type, :job_kind,
  'queued', NULL, 0, :max_attempts, NOW(),
  :trace_id, :idempotency_key, CAST(:payload AS JSONB), CAST('{}' AS JSONB), NOW(), NOW()
)
ON CONFLICT (episode_id, job_kind, idempotency_key)
DO UPDATE SET idempotency_key = EXCLUDED.idempotency_key
RETURNING *
""")

GET_TASK_SQL = text("""
SELECT *
FROM taskyard_tasks
WHERE id = :task_id
LIMIT 1
""")

CANCEL_TASK_SQL = text("""
UPDATE taskyard_tasks
SET status = 'cancelled',
    lease_token = NULL,
    lease_expires_at = NULL,
    updated_at = NOW()
WHERE id = :task_id AND status IN ('queued', 'running')
RETURNING *
""")

# A report without a status keeps the status, lease and error fields and only
# touches progress and result. Terminal tasks are never changed.
UPDATE_TASK_REPORT_SQL = text("""
UPDATE taskyard_tasks
SET status = COALESCE(CAST(:status AS TEXT), status),
    progress = COALESCE(CAST(:progress AS DOUBLE PRECISION), progress),
    result_json = COALESCE(CAST(:result AS JSONB), result_json),
    error_code = CASE
      WHEN CAST(:status AS TEXT) IS NULL THEN error_code ELSE CAST(:error_code AS TEXT)
    END,
    error_message = CASE
      WHEN CAST(:status AS TEXT) IS NULL THEN error_message ELSE CAST(:error_message AS TEXT)
    END,
    error_context_json = CASE
      WHEN CAST(:status AS TEXT) IS NULL THEN error_context_json
      ELSE CAST(:error_context AS JSONB)
    END,
    lease_token = CASE WHEN CAST(:clears_lease AS BOOLEAN) THEN NULL ELSE lease_token END,
    lease_expires_at = CASE WHEN CAST(:clears_lease AS BOOLEAN) THEN NULL ELSE lease_expires_at END,
    next_attempt_at = CASE WHEN CAST(:status AS TEXT) = 'queued' THEN NOW() ELSE next_attempt_at END,
    updated_at = NOW()
WHERE id = :task_id
  AND status IN ('queued', 'running')
RETURNING *
""")

QUEUE_METRICS_SQL = text("""
SELECT
  COUNT(*) FILTER (WHERE status = 'queued') AS queued_total,
  COUNT(*) FILTER (WHERE status = 'queued' AND next_attempt_at <= NOW()) AS queued_ready,
  COUNT(*) FILTER (WHERE status = 'queued' AND next_attempt_at > NOW()) AS queued_delayed,
  COUNT(*) FILTER (WHERE status = 'running') AS running,
  COUNT(*) FILTER (WHERE status = 'completed') AS completed,
  COUNT(*) FILTER (WHERE status = 'failed') AS failed,
  COUNT(*) FILTER (WHERE status = 'cancelled') AS cancelled,
  (SELECT COUNT(*) FROM taskyard_task_dead_letters) AS dead_letter_count
FROM taskyard_tasks
""")


# ---------- Schema bootstrap ----------

SCHEMA_ADVISORY_LOCK_SQL = text("""
SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")
