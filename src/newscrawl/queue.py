"""Durable crawl job queue.

Jobs move ``queued -> running -> completed`` or ``running -> failed``; the two
terminal states are never left. Ordering is strict priority tiers
(``high`` before ``normal`` before ``low``) and FIFO by creation time inside a
tier. A job is claimed with a conditional update inside one write transaction
so that exactly one concurrent caller wins it, and a job whose source already
has a running job is passed over until that job finishes.

Retry is a pure transition: :func:`on_failure` maps the attempt number onto
either another ``Queued`` attempt delayed by capped exponential backoff or a
terminal ``Failed``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .models import Job, JobPriority, JobStatus
from .utils import json_dumps, json_loads, log_event, to_iso, utc_now

logger = logging.getLogger("newscrawl.queue")

JOB_COLUMNS = """
    id, job_type, priority, status, payload_json, source_id, schedule_id, attempts,
    max_attempts, available_at, created_at, started_at, completed_at, failed_at,
    locked_by, locked_at, result_json, error, error_kind, retry_of
"""

DEFAULT_MAX_ATTEMPTS = 3


class JobNotFound(LookupError):
    pass


class JobNotRetryable(ValueError):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0

    def delay_for(self, attempt: int) -> float:
        exponent = max(attempt, 1) - 1
        return min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)


@dataclass(frozen=True)
class Queued:
    attempt: int
    available_at: datetime


@dataclass(frozen=True)
class Failed:
    error: str
    attempt: int


def on_failure(
    attempt: int,
    max_attempts: int,
    policy: RetryPolicy,
    now: datetime,
    error: str = "",
) -> Queued | Failed:
    if attempt < max_attempts:
        return Queued(attempt=attempt, available_at=now + timedelta(seconds=policy.delay_for(attempt)))
    return Failed(error=error, attempt=attempt)


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    *,
    priority: JobPriority | str = JobPriority.NORMAL,
    source_id: int | None = None,
    schedule_id: int | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    available_at: datetime | None = None,
    retry_of: str | None = None,
    now: datetime | None = None,
) -> str:
    priority = JobPriority(priority)
    now = now or utc_now()
    job_id = _new_job_id()
    conn.execute(
        """
        INSERT INTO queue_jobs
            (id, job_type, priority, priority_rank, status, payload_json, source_id,
             schedule_id, attempts, max_attempts, available_at, retry_of, created_at)
        VALUES (?, ?, ?, ?, 'queued', ?, ?, ?, 0, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            priority.value,
            priority.rank,
            json_dumps(payload) if payload else None,
            source_id,
            schedule_id,
            max(1, int(max_attempts)),
            to_iso(available_at or now),
            retry_of,
            to_iso(now),
        ),
    )
    conn.commit()
    log_event(
        logger,
        logging.INFO,
        "job_enqueued",
        job_id=job_id,
        job_type=job_type,
        priority=priority.value,
        source_id=source_id,
        schedule_id=schedule_id,
    )
    return job_id


def claim_next_job(
    conn: Any,
    worker_id: str,
    *,
    lock_timeout_seconds: int | None = None,
    now: datetime | None = None,
) -> Job | None:
    for _ in range(5):
        current = now or utc_now()
        now_iso = to_iso(current)
        with conn.transaction():
            if lock_timeout_seconds is not None:
                _requeue_stale(conn, current, lock_timeout_seconds)
            cursor = conn.execute(
                f"""
                SELECT q.id
                FROM queue_jobs q
                WHERE q.status = 'queued'
                  AND q.available_at <= ?
                  AND (
                    q.source_id IS NULL
                    OR NOT EXISTS (
                        SELECT 1 FROM queue_jobs r
                        WHERE r.source_id = q.source_id AND r.status = 'running'
                    )
                  )
                ORDER BY q.priority_rank DESC, q.created_at ASC, q.id ASC
                LIMIT 1{conn.lock_clause}
                """,
                (now_iso,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            job_id = row[0]
            cursor = conn.execute(
                """
                UPDATE queue_jobs
                SET status = 'running',
                    attempts = attempts + 1,
                    started_at = ?,
                    locked_by = ?,
                    locked_at = ?
                WHERE id = ? AND status = 'queued'
                """,
                (now_iso, worker_id, now_iso, job_id),
            )
            if cursor.rowcount != 1:
                continue
            job = get_job(conn, job_id)
        if job is not None:
            log_event(
                logger,
                logging.INFO,
                "job_claimed",
                job_id=job.id,
                worker_id=worker_id,
                attempt=job.attempts,
                priority=job.priority.value,
            )
        return job
    return None


def _requeue_stale(conn: Any, now: datetime, lock_timeout_seconds: int) -> int:
    cutoff = to_iso(now - timedelta(seconds=lock_timeout_seconds))
    cursor = conn.execute(
        """
        UPDATE queue_jobs
        SET status = 'queued',
            locked_by = NULL,
            locked_at = NULL,
            started_at = NULL,
            available_at = ?,
            error = 'stale_lock_requeued'
        WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
        """,
        (to_iso(now), cutoff),
    )
    if cursor.rowcount:
        log_event(logger, logging.WARNING, "jobs_stale_requeued", count=cursor.rowcount)
    return cursor.rowcount


def complete_job(
    conn: Any,
    job_id: str,
    result: dict[str, object] | None = None,
    *,
    now: datetime | None = None,
) -> bool:
    now_iso = to_iso(now or utc_now())
    cursor = conn.execute(
        """
        UPDATE queue_jobs
        SET status = 'completed',
            completed_at = ?,
            result_json = ?,
            error = NULL,
            error_kind = NULL,
            locked_by = NULL,
            locked_at = NULL
        WHERE id = ? AND status = 'running'
        """,
        (now_iso, json_dumps(result) if result is not None else None, job_id),
    )
    conn.commit()
    updated = cursor.rowcount == 1
    if updated:
        log_event(logger, logging.INFO, "job_succeeded", job_id=job_id)
    return updated


def fail_job(
    conn: Any,
    job_id: str,
    error: str,
    *,
    error_kind: str | None = None,
    policy: RetryPolicy | None = None,
    now: datetime | None = None,
) -> Queued | Failed | None:
    """Record a failed attempt; returns the next state, or None if the job was not running."""
    policy = policy or RetryPolicy()
    now = now or utc_now()
    now_iso = to_iso(now)
    with conn.transaction():
        row = conn.execute(
            "SELECT attempts, max_attempts FROM queue_jobs WHERE id = ? AND status = 'running'",
            (job_id,),
        ).fetchone()
        if not row:
            return None
        attempts, max_attempts = int(row[0]), int(row[1])
        state = on_failure(attempts, max_attempts, policy, now, error)
        if isinstance(state, Queued):
            conn.execute(
                """
                UPDATE queue_jobs
                SET status = 'queued',
                    available_at = ?,
                    error = ?,
                    error_kind = ?,
                    locked_by = NULL,
                    locked_at = NULL
                WHERE id = ? AND status = 'running'
                """,
                (to_iso(state.available_at), error, error_kind, job_id),
            )
        else:
            conn.execute(
                """
                UPDATE queue_jobs
                SET status = 'failed',
                    failed_at = ?,
                    error = ?,
                    error_kind = ?,
                    locked_by = NULL,
                    locked_at = NULL
                WHERE id = ? AND status = 'running'
                """,
                (now_iso, error, error_kind, job_id),
            )
    if isinstance(state, Queued):
        log_event(
            logger,
            logging.WARNING,
            "job_requeued",
            job_id=job_id,
            attempt=attempts,
            available_at=to_iso(state.available_at),
            error_kind=error_kind,
        )
    else:
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job_id,
            attempt=attempts,
            error_kind=error_kind,
            error=error,
        )
    return state


def retry_job(
    conn: Any,
    job_id: str,
    *,
    priority: JobPriority | str = JobPriority.HIGH,
) -> str:
    job = get_job(conn, job_id)
    if job is None:
        raise JobNotFound(job_id)
    if job.status is not JobStatus.FAILED:
        raise JobNotRetryable(f"job {job_id} is {job.status.value}, only failed jobs can be retried")
    return enqueue_job(
        conn,
        job.job_type,
        job.payload,
        priority=priority,
        source_id=job.source_id,
        schedule_id=job.schedule_id,
        max_attempts=job.max_attempts,
        retry_of=job.id,
    )


def get_job(conn: Any, job_id: str) -> Job | None:
    cursor = conn.execute(f"SELECT {JOB_COLUMNS} FROM queue_jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    *,
    status: JobStatus | str | None = None,
    source_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    clauses: list[str] = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(JobStatus(status).value)
    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cursor = conn.execute(
        f"""
        SELECT {JOB_COLUMNS}
        FROM queue_jobs
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def has_pending_job(
    conn: Any,
    *,
    schedule_id: int | None = None,
    source_id: int | None = None,
    exclude_job_id: str | None = None,
) -> bool:
    if schedule_id is None and source_id is None:
        raise ValueError("schedule_id or source_id is required")
    clauses = ["status IN ('queued', 'running')"]
    params: list[object] = []
    if schedule_id is not None:
        clauses.append("schedule_id = ?")
        params.append(schedule_id)
    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    if exclude_job_id:
        clauses.append("id != ?")
        params.append(exclude_job_id)
    cursor = conn.execute(
        f"SELECT 1 FROM queue_jobs WHERE {' AND '.join(clauses)} LIMIT 1",
        tuple(params),
    )
    return cursor.fetchone() is not None


def queue_stats(conn: Any) -> dict[str, object]:
    counts = {status.value: 0 for status in JobStatus}
    for status, count in conn.execute(
        "SELECT status, COUNT(*) FROM queue_jobs GROUP BY status"
    ).fetchall():
        counts[str(status)] = int(count)
    by_priority = {priority.value: 0 for priority in JobPriority}
    for priority, count in conn.execute(
        "SELECT priority, COUNT(*) FROM queue_jobs WHERE status = 'queued' GROUP BY priority"
    ).fetchall():
        by_priority[str(priority)] = int(count)
    oldest = conn.execute(
        "SELECT MIN(created_at) FROM queue_jobs WHERE status = 'queued'"
    ).fetchone()
    running = conn.execute(
        "SELECT id, source_id, locked_by, started_at FROM queue_jobs WHERE status = 'running'"
        " ORDER BY started_at"
    ).fetchall()
    return {
        "counts": counts,
        "queued_by_priority": by_priority,
        "oldest_queued_at": oldest[0] if oldest else None,
        "running": [
            {"id": row[0], "source_id": row[1], "worker_id": row[2], "started_at": row[3]}
            for row in running
        ],
    }


def purge_jobs(conn: Any, older_than_days: int, *, now: datetime | None = None) -> int:
    """Delete terminal jobs finished before the cutoff; queued/running jobs are never touched."""
    cutoff = to_iso((now or utc_now()) - timedelta(days=older_than_days))
    cursor = conn.execute(
        """
        DELETE FROM queue_jobs
        WHERE (status = 'completed' AND completed_at < ?)
           OR (status = 'failed' AND failed_at < ?)
        """,
        (cutoff, cutoff),
    )
    conn.commit()
    log_event(logger, logging.INFO, "jobs_purged", count=cursor.rowcount, cutoff=cutoff)
    return cursor.rowcount


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        priority,
        status,
        payload_json,
        source_id,
        schedule_id,
        attempts,
        max_attempts,
        available_at,
        created_at,
        started_at,
        completed_at,
        failed_at,
        locked_by,
        locked_at,
        result_json,
        error,
        error_kind,
        retry_of,
    ) = row
    return Job(
        id=job_id,
        job_type=job_type,
        priority=JobPriority(priority),
        status=JobStatus(status),
        payload=json_loads(payload_json, {}) or {},
        source_id=int(source_id) if source_id is not None else None,
        schedule_id=int(schedule_id) if schedule_id is not None else None,
        attempts=int(attempts),
        max_attempts=int(max_attempts),
        available_at=available_at,
        created_at=created_at,
        started_at=started_at,
        completed_at=completed_at,
        failed_at=failed_at,
        locked_by=locked_by,
        locked_at=locked_at,
        result=json_loads(result_json, None),
        error=error,
        error_kind=error_kind,
        retry_of=retry_of,
    )


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
