# chatterbox/core/queue/sql.py
"""SQL statements for the lease-based task queue.

A task is available iff it has no completion row and no lease with
expires_at > now(). Claiming is two statements in one transaction: pick a
candidate with FOR UPDATE SKIP LOCKED, then insert the lease only if the
candidate is still available. The second statement runs on a fresh
READ COMMITTED snapshot, so it sees a lease committed by a concurrent
claimant that held the row lock while our candidate query was running.
"""

from sqlalchemy import text

SELECT_CLAIM_CANDIDATE_SQL = text("""
    SELECT t.id
    FROM chatterbox_tasks t
    WHERE t.scheduled_at <= now()
      AND NOT EXISTS (
          SELECT 1 FROM chatterbox_task_completions c
          WHERE c.task_id = t.id
      )
      AND NOT EXISTS (
          SELECT 1 FROM chatterbox_task_leases l
          WHERE l.task_id = t.id AND l.expires_at > now()
      )
    ORDER BY t.scheduled_at, t.id
    LIMIT 1
    FOR UPDATE OF t SKIP LOCKED
""")

INSERT_LEASE_SQL = text("""
    INSERT INTO chatterbox_task_leases (task_id, leased_at, expires_at)
    SELECT t.id, now(), now() + make_interval(secs => CAST(:lease_seconds AS double precision))
    FROM chatterbox_tasks t
    WHERE t.id = :task_id
      AND NOT EXISTS (
          SELECT 1 FROM chatterbox_task_completions c
          WHERE c.task_id = t.id
      )
      AND NOT EXISTS (
          SELECT 1 FROM chatterbox_task_leases l
          WHERE l.task_id = t.id AND l.expires_at > now()
      )
    RETURNING expires_at
""")

SELECT_TASK_SQL = text("""
    SELECT id, task_type, payload, enqueued_at, scheduled_at
    FROM chatterbox_tasks
    WHERE id = :task_id
""")

# Insert-or-ignore; RETURNING is empty for a repeat call or an unknown task.
COMPLETE_TASK_SQL = text("""
    INSERT INTO chatterbox_task_completions (task_id, completed_at)
    SELECT t.id, now()
    FROM chatterbox_tasks t
    WHERE t.id = :task_id
    ON CONFLICT (task_id) DO NOTHING
    RETURNING task_id
""")

# Unknown task ids are logged with a NULL task_id rather than rejected.
FAIL_TASK_SQL = text("""
    INSERT INTO chatterbox_task_errors (task_id, message, created_at)
    VALUES (
        (SELECT t.id FROM chatterbox_tasks t WHERE t.id = :task_id),
        :message,
        now()
    )
    RETURNING id
""")

TASK_INFO_SQL = text("""
    SELECT
        t.id,
        t.task_type,
        t.payload,
        t.enqueued_at,
        t.scheduled_at,
        c.completed_at,
        (SELECT count(*) FROM chatterbox_task_leases l WHERE l.task_id = t.id) AS lease_count,
        (
            SELECT max(l.expires_at) FROM chatterbox_task_leases l
            WHERE l.task_id = t.id AND l.expires_at > now()
        ) AS active_lease_expires_at
    FROM chatterbox_tasks t
    LEFT JOIN chatterbox_task_completions c ON c.task_id = t.id
    WHERE t.id = :task_id
""")

TASK_ERRORS_SQL = text("""
    SELECT message
    FROM chatterbox_task_errors
    WHERE task_id = :task_id
    ORDER BY id
""")

SCHEMA_ADVISORY_LOCK_SQL = text("""
    SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))
""")
