from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from .models import Job, JobStatus, Lane, RetryPolicy
from .storage import get_setting, set_setting
from .utils import json_dumps, json_loads, to_iso, utc_now

DEFAULT_PRIORITY = 1
DEFAULT_RETRY_POLICY = RetryPolicy(max_attempts=3, backoff_seconds=5.0)
PENDING_STATUSES = (
    JobStatus.WAITING.value,
    JobStatus.ACTIVE.value,
    JobStatus.DELAYED.value,
)

_JOB_COLUMNS = """
    id, lane, status, payload_json, priority, attempts, max_attempts,
    backoff_seconds, available_at, enqueued_at, started_at, finished_at,
    locked_by, locked_at, error, result_json
"""


def enqueue_job(
    conn: Any,
    lane: str,
    payload: dict[str, object] | None,
    priority: int = DEFAULT_PRIORITY,
    retry_policy: RetryPolicy | None = None,
    delay_seconds: float = 0,
    now: datetime | None = None,
) -> int:
    _check_lane(lane)
    policy = retry_policy or DEFAULT_RETRY_POLICY
    current = now or utc_now()
    status = JobStatus.DELAYED.value if delay_seconds > 0 else JobStatus.WAITING.value
    cursor = conn.execute(
        """
        INSERT INTO jobs
            (lane, status, payload_json, priority, attempts, max_attempts,
             backoff_seconds, available_at, enqueued_at)
        VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            lane,
            status,
            json_dumps(payload or {}),
            int(priority),
            max(1, int(policy.max_attempts)),
            float(policy.backoff_seconds),
            to_iso(current + timedelta(seconds=delay_seconds)),
            to_iso(current),
        ),
    )
    row = cursor.fetchone()
    conn.commit()
    return int(row[0])


def enqueue_jobs(
    conn: Any,
    lane: str,
    payloads: Iterable[dict[str, object]],
    priority: int = DEFAULT_PRIORITY,
    retry_policy: RetryPolicy | None = None,
    now: datetime | None = None,
) -> list[int]:
    """Enqueue one job per payload in a single transaction."""
    with conn.transaction():
        return [
            enqueue_job(
                conn, lane, payload, priority=priority, retry_policy=retry_policy, now=now
            )
            for payload in payloads
        ]


def lease_job(
    conn: Any,
    lane: str,
    worker_id: str,
    lease_timeout_seconds: float,
    now: datetime | None = None,
) -> Job | None:
    """Claim the next ready job of ``lane`` for ``worker_id``.

    Runs as one transaction: stale leases with attempts left are requeued, due
    delayed jobs are promoted, then the waiting job with the lowest priority
    value (oldest id first among equals) becomes active and its attempt
    counter is bumped. Returns ``None`` when nothing is ready or the lane is
    paused. Stale leases whose attempt budget is spent are left for
    :func:`expire_stale_leases`, whose caller runs the exhaustion handling.
    """
    _check_lane(lane)
    current = now or utc_now()
    now_iso = to_iso(current)
    with conn.transaction():
        if is_lane_paused(conn, lane):
            return None
        _requeue_stale_leases(
            conn, lane, now_iso, to_iso(current - timedelta(seconds=lease_timeout_seconds))
        )
        conn.execute(
            """
            UPDATE jobs SET status = 'waiting'
            WHERE lane = ? AND status = 'delayed' AND available_at <= ?
            """,
            (lane, now_iso),
        )
        cursor = conn.execute(
            """
            SELECT id FROM jobs
            WHERE lane = ? AND status = 'waiting' AND available_at <= ?
            ORDER BY priority ASC, id ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
            """,
            (lane, now_iso),
        )
        row = cursor.fetchone()
        if not row:
            return None
        cursor = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'active',
                attempts = attempts + 1,
                started_at = ?,
                locked_by = ?,
                locked_at = ?
            WHERE id = ? AND status = 'waiting'
            RETURNING {_JOB_COLUMNS}
            """,
            (now_iso, worker_id, now_iso, row[0]),
        )
        updated = cursor.fetchone()
        return _row_to_job(updated) if updated else None


def expire_stale_leases(
    conn: Any,
    lane: str,
    lease_timeout_seconds: float,
    now: datetime | None = None,
) -> list[Job]:
    """Release active jobs whose lease ran out.

    Jobs with attempts left go back to ``waiting``; the rest become ``failed``
    and are returned so the caller can run the lane's exhaustion handling.
    """
    current = now or utc_now()
    now_iso = to_iso(current)
    cutoff = to_iso(current - timedelta(seconds=lease_timeout_seconds))
    with conn.transaction():
        cursor = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'failed',
                finished_at = ?,
                locked_by = NULL,
                locked_at = NULL,
                error = 'lease_expired'
            WHERE lane = ? AND status = 'active' AND locked_at < ?
              AND attempts >= max_attempts
            RETURNING {_JOB_COLUMNS}
            """,
            (now_iso, lane, cutoff),
        )
        exhausted = [_row_to_job(row) for row in cursor.fetchall()]
        _requeue_stale_leases(conn, lane, now_iso, cutoff)
    return exhausted


def _requeue_stale_leases(conn: Any, lane: str, now_iso: str, cutoff: str) -> int:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'waiting',
            available_at = ?,
            started_at = NULL,
            locked_by = NULL,
            locked_at = NULL,
            error = 'lease_expired'
        WHERE lane = ? AND status = 'active' AND locked_at < ?
          AND attempts < max_attempts
        """,
        (now_iso, lane, cutoff),
    )
    return cursor.rowcount


def ack_job(
    conn: Any,
    job_id: int,
    result: dict[str, object] | None = None,
    worker_id: str | None = None,
) -> bool:
    """Mark an active job completed.

    With ``worker_id`` the job must still be leased by that worker; a lease
    that expired and went to someone else is left alone and ``False`` returned.
    """
    sql = """
        UPDATE jobs
        SET status = 'completed', finished_at = ?, locked_by = NULL, locked_at = NULL,
            error = NULL, result_json = ?
        WHERE id = ? AND status = 'active'
        """
    params: list[object] = [
        to_iso(utc_now()),
        json_dumps(result) if result is not None else None,
        job_id,
    ]
    if worker_id is not None:
        sql += " AND locked_by = ?"
        params.append(worker_id)
    cursor = conn.execute(sql, tuple(params))
    conn.commit()
    return cursor.rowcount == 1


def fail_job(
    conn: Any,
    job_id: int,
    error: str,
    retryable: bool = True,
    now: datetime | None = None,
    worker_id: str | None = None,
) -> str:
    """Record a failed attempt.

    Returns ``"retried"`` when the job was rescheduled with exponential
    backoff, ``"exhausted"`` when it is now terminally failed, and ``"stale"``
    when the job was no longer active or, given ``worker_id``, is now
    leased by another worker.
    """
    current = now or utc_now()
    with conn.transaction():
        sql = """
            SELECT attempts, max_attempts, backoff_seconds FROM jobs
            WHERE id = ? AND status = 'active'
        """
        params: list[object] = [job_id]
        if worker_id is not None:
            sql += " AND locked_by = ?"
            params.append(worker_id)
        cursor = conn.execute(sql, tuple(params))
        row = cursor.fetchone()
        if not row:
            return "stale"
        attempts, max_attempts, backoff_seconds = int(row[0]), int(row[1]), float(row[2])
        if retryable and attempts < max_attempts:
            policy = RetryPolicy(max_attempts=max_attempts, backoff_seconds=backoff_seconds)
            available_at = current + timedelta(seconds=policy.delay_for(attempts))
            conn.execute(
                """
                UPDATE jobs
                SET status = 'delayed', available_at = ?, locked_by = NULL,
                    locked_at = NULL, error = ?
                WHERE id = ?
                """,
                (to_iso(available_at), error, job_id),
            )
            return "retried"
        conn.execute(
            """
            UPDATE jobs
            SET status = 'failed', finished_at = ?, locked_by = NULL,
                locked_at = NULL, error = ?
            WHERE id = ?
            """,
            (to_iso(current), error, job_id),
        )
        return "exhausted"


def get_job(conn: Any, job_id: int) -> Job | None:
    cursor = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    lane: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[Job]:
    clauses = []
    params: list[object] = []
    if lane:
        clauses.append("lane = ?")
        params.append(lane)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY id DESC LIMIT ?",
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def has_pending_job(
    conn: Any, lane: str, match: dict[str, object] | None = None
) -> bool:
    placeholders = ",".join(["?"] * len(PENDING_STATUSES))
    cursor = conn.execute(
        f"""
        SELECT payload_json FROM jobs
        WHERE lane = ? AND status IN ({placeholders})
        """,
        (lane, *PENDING_STATUSES),
    )
    for (payload_json,) in cursor.fetchall():
        if not match:
            return True
        payload = json_loads(payload_json, {})
        if all(payload.get(key) == value for key, value in match.items()):
            return True
    return False


def queue_stats(conn: Any) -> dict[str, dict[str, int]]:
    stats = {
        lane.value: {status.value: 0 for status in JobStatus} for lane in Lane
    }
    cursor = conn.execute("SELECT lane, status, COUNT(*) FROM jobs GROUP BY lane, status")
    for lane, status, count in cursor.fetchall():
        stats.setdefault(lane, {})[status] = int(count)
    return stats


def purge_jobs(
    conn: Any,
    status: str,
    older_than_seconds: float,
    now: datetime | None = None,
) -> int:
    if status not in {JobStatus.COMPLETED.value, JobStatus.FAILED.value}:
        raise ValueError("only completed or failed jobs can be purged")
    cutoff = to_iso((now or utc_now()) - timedelta(seconds=older_than_seconds))
    cursor = conn.execute(
        "DELETE FROM jobs WHERE status = ? AND finished_at IS NOT NULL AND finished_at < ?",
        (status, cutoff),
    )
    conn.commit()
    return cursor.rowcount


def pause_lane(conn: Any, lane: str) -> None:
    _check_lane(lane)
    set_setting(conn, _pause_key(lane), True)


def resume_lane(conn: Any, lane: str) -> None:
    _check_lane(lane)
    set_setting(conn, _pause_key(lane), False)


def is_lane_paused(conn: Any, lane: str) -> bool:
    return bool(get_setting(conn, _pause_key(lane), False))


def _pause_key(lane: str) -> str:
    return f"queue.paused.{lane}"


def _check_lane(lane: str) -> None:
    if lane not in {item.value for item in Lane}:
        raise ValueError(f"unknown lane: {lane}")


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        lane,
        status,
        payload_json,
        priority,
        attempts,
        max_attempts,
        backoff_seconds,
        available_at,
        enqueued_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
        result_json,
    ) = row
    return Job(
        id=int(job_id),
        lane=lane,
        status=status,
        payload=json_loads(payload_json, {}),
        priority=int(priority),
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        backoff_seconds=float(backoff_seconds),
        available_at=available_at,
        enqueued_at=enqueued_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
        result=json_loads(result_json, None),
    )
