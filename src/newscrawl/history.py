from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .models import JobPriority, JobStatus
from .pipeline import CrawlOptions, crawl_payload
from .queue import enqueue_job, get_job, retry_job
from .storage import get_source
from .utils import json_dumps, json_loads, log_event, to_iso, utc_now, utc_now_iso

logger = logging.getLogger("newscrawl.history")

LOG_SORT_FIELDS = {
    "created_at": "cl.created_at",
    "source_name": "ns.name",
    "action": "cl.action",
    "status": "cl.status",
    "articles_found": "cl.articles_found",
    "articles_processed": "cl.articles_processed",
    "duration_ms": "cl.duration_ms",
}


class LogNotFound(LookupError):
    pass


class LogNotRetryable(ValueError):
    pass


@dataclass(frozen=True)
class LogFilters:
    source_id: int | None = None
    status: str | None = None
    action: str | None = None
    date_from: str | None = None
    date_to: str | None = None
    message: str | None = None
    sort: str = "created_at"
    order: str = "desc"
    limit: int = 50
    offset: int = 0


def record_job_outcome(
    conn: Any,
    *,
    job_id: str | None,
    source_id: int | None,
    started_at: datetime,
    finished_at: datetime,
    status: str,
    message: str,
    crawl_depth: int = 0,
    result: dict[str, Any] | None = None,
    error_kind: str | None = None,
) -> int:
    """Write the history row and the log row for one job attempt together."""
    result = result or {}
    duration_ms = int(result.get("duration_ms") or (finished_at - started_at).total_seconds() * 1000)
    history_status = "completed" if status == "success" else "failed"
    with conn.transaction():
        conn.execute(
            """
            INSERT INTO crawl_history
                (job_id, source_id, started_at, finished_at, duration_ms, total_found,
                 processed, new_articles, duplicates, errors, crawl_depth, status, message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                source_id,
                to_iso(started_at),
                to_iso(finished_at),
                duration_ms,
                int(result.get("total_found") or 0),
                int(result.get("processed") or 0),
                int(result.get("new_articles") or 0),
                int(result.get("duplicates") or 0),
                int(result.get("errors") or 0),
                crawl_depth,
                history_status,
                message,
            ),
        )
        cursor = conn.execute(
            """
            INSERT INTO crawl_logs
                (job_id, source_id, action, status, message, articles_found,
                 articles_processed, new_articles, duration_ms, error_kind, details_json,
                 created_at)
            VALUES (?, ?, 'crawl', ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                job_id,
                source_id,
                status,
                message,
                int(result.get("total_found") or 0),
                int(result.get("processed") or 0),
                int(result.get("new_articles") or 0),
                duration_ms,
                error_kind,
                json_dumps(result.get("failures") or []),
                to_iso(finished_at),
            ),
        )
        log_id = int(cursor.fetchone()[0])
    log_event(
        logger,
        logging.INFO,
        "crawl_recorded",
        log_id=log_id,
        job_id=job_id,
        source_id=source_id,
        status=status,
    )
    return log_id


def record_operation(
    conn: Any,
    entity: str,
    entity_id: object,
    action: str,
    status: str = "success",
    message: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO operation_logs (entity, entity_id, action, status, message, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (entity, str(entity_id) if entity_id is not None else None, action, status, message, utc_now_iso()),
    )
    conn.commit()


def list_operations(conn: Any, *, entity: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
    where = "WHERE entity = ?" if entity else ""
    params: tuple = (entity, limit) if entity else (limit,)
    cursor = conn.execute(
        f"""
        SELECT id, entity, entity_id, action, status, message, created_at
        FROM operation_logs
        {where}
        ORDER BY id DESC
        LIMIT ?
        """,
        params,
    )
    cols = ["id", "entity", "entity_id", "action", "status", "message", "created_at"]
    return [dict(zip(cols, row)) for row in cursor.fetchall()]


_LOG_SELECT = """
    SELECT cl.id, cl.job_id, cl.source_id, ns.name, cl.action, cl.status, cl.message,
           cl.articles_found, cl.articles_processed, cl.new_articles, cl.duration_ms,
           cl.error_kind, cl.details_json, cl.created_at
    FROM crawl_logs cl
    LEFT JOIN news_sources ns ON cl.source_id = ns.id
"""

_LOG_COLUMNS = [
    "id",
    "job_id",
    "source_id",
    "source_name",
    "action",
    "status",
    "message",
    "articles_found",
    "articles_processed",
    "new_articles",
    "duration_ms",
    "error_kind",
    "details",
    "created_at",
]


def list_logs(conn: Any, filters: LogFilters | None = None) -> tuple[list[dict[str, Any]], int]:
    filters = filters or LogFilters()
    clauses: list[str] = []
    params: list[object] = []
    if filters.source_id is not None:
        clauses.append("cl.source_id = ?")
        params.append(filters.source_id)
    if filters.status:
        clauses.append("cl.status = ?")
        params.append(filters.status)
    if filters.action:
        clauses.append("cl.action = ?")
        params.append(filters.action)
    if filters.date_from:
        clauses.append("cl.created_at >= ?")
        params.append(filters.date_from)
    if filters.date_to:
        clauses.append("cl.created_at <= ?")
        params.append(filters.date_to)
    if filters.message:
        clauses.append("LOWER(cl.message) LIKE ?")
        params.append(f"%{filters.message.lower()}%")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    sort_field = LOG_SORT_FIELDS.get(filters.sort, "cl.created_at")
    sort_order = "ASC" if str(filters.order).lower() == "asc" else "DESC"
    total = conn.execute(
        f"SELECT COUNT(*) FROM crawl_logs cl LEFT JOIN news_sources ns ON cl.source_id = ns.id {where}",
        tuple(params),
    ).fetchone()[0]
    cursor = conn.execute(
        f"{_LOG_SELECT} {where} ORDER BY {sort_field} {sort_order}, cl.id {sort_order} LIMIT ? OFFSET ?",
        (*params, filters.limit, filters.offset),
    )
    return [_row_to_log(row) for row in cursor.fetchall()], int(total)


def get_log(conn: Any, log_id: int) -> dict[str, Any] | None:
    cursor = conn.execute(f"{_LOG_SELECT} WHERE cl.id = ?", (log_id,))
    row = cursor.fetchone()
    return _row_to_log(row) if row else None


def delete_log(conn: Any, log_id: int) -> bool:
    cursor = conn.execute("DELETE FROM crawl_logs WHERE id = ?", (log_id,))
    conn.commit()
    deleted = cursor.rowcount == 1
    if deleted:
        record_operation(conn, "crawl_log", log_id, "delete")
    return deleted


def log_stats(
    conn: Any,
    *,
    source_id: int | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    clauses: list[str] = []
    params: list[object] = []
    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    if date_from:
        clauses.append("created_at >= ?")
        params.append(date_from)
    if date_to:
        clauses.append("created_at <= ?")
        params.append(date_to)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    total = conn.execute(f"SELECT COUNT(*) FROM crawl_logs {where}", tuple(params)).fetchone()[0]
    by_status = {
        str(status): int(count)
        for status, count in conn.execute(
            f"SELECT status, COUNT(*) FROM crawl_logs {where} GROUP BY status", tuple(params)
        ).fetchall()
    }
    by_action = {
        str(action): int(count)
        for action, count in conn.execute(
            f"SELECT action, COUNT(*) FROM crawl_logs {where} GROUP BY action", tuple(params)
        ).fetchall()
    }
    day_start = (now or utc_now()).replace(hour=0, minute=0, second=0, microsecond=0)
    today = conn.execute(
        "SELECT COUNT(*) FROM crawl_logs WHERE created_at >= ?", (to_iso(day_start),)
    ).fetchone()[0]
    return {
        "total": int(total),
        "today": int(today),
        "success": by_status.get("success", 0),
        "error": by_status.get("error", 0),
        "by_status": by_status,
        "by_action": by_action,
    }


def list_history(
    conn: Any, *, source_id: int | None = None, limit: int = 50
) -> list[dict[str, Any]]:
    where = "WHERE source_id = ?" if source_id is not None else ""
    params: tuple = (source_id, limit) if source_id is not None else (limit,)
    cols = [
        "id",
        "job_id",
        "source_id",
        "started_at",
        "finished_at",
        "duration_ms",
        "total_found",
        "processed",
        "new_articles",
        "duplicates",
        "errors",
        "crawl_depth",
        "status",
        "message",
    ]
    cursor = conn.execute(
        f"SELECT {', '.join(cols)} FROM crawl_history {where} ORDER BY id DESC LIMIT ?",
        params,
    )
    return [dict(zip(cols, row)) for row in cursor.fetchall()]


def purge_logs(conn: Any, retention_days: int, *, now: datetime | None = None) -> dict[str, int]:
    cutoff = to_iso((now or utc_now()) - timedelta(days=retention_days))
    logs = conn.execute("DELETE FROM crawl_logs WHERE created_at < ?", (cutoff,)).rowcount
    operations = conn.execute("DELETE FROM operation_logs WHERE created_at < ?", (cutoff,)).rowcount
    conn.commit()
    log_event(logger, logging.INFO, "logs_purged", crawl_logs=logs, operation_logs=operations)
    return {"crawl_logs": logs, "operation_logs": operations}


def retry_log(conn: Any, log_id: int, *, defaults: CrawlOptions | None = None) -> str:
    """Enqueue a fresh high-priority crawl for the source behind an error log."""
    log = get_log(conn, log_id)
    if log is None:
        raise LogNotFound(f"log {log_id} not found")
    if log["status"] != "error":
        raise LogNotRetryable(f"log {log_id} has status {log['status']}, only error logs can be retried")
    job = get_job(conn, log["job_id"]) if log.get("job_id") else None
    # A job still queued, running or since completed already covers this log.
    if job is not None and job.status is not JobStatus.FAILED:
        raise LogNotRetryable(
            f"log {log_id} belongs to job {job.id} which is {job.status.value}"
        )
    if job is not None:
        new_job_id = retry_job(conn, job.id)
    else:
        if log.get("source_id") is None:
            raise LogNotFound(f"log {log_id} has no source")
        source = get_source(conn, int(log["source_id"]))
        if source is None:
            raise LogNotFound("source_not_found")
        new_job_id = enqueue_job(
            conn,
            "crawl",
            crawl_payload(source, defaults or CrawlOptions()),
            priority=JobPriority.HIGH,
            source_id=source.id,
        )
    record_operation(conn, "crawl_log", log_id, "retry", "success", f"enqueued {new_job_id}")
    return new_job_id


def _row_to_log(row: tuple) -> dict[str, Any]:
    data = dict(zip(_LOG_COLUMNS, row))
    data["details"] = json_loads(data.get("details"), []) or []
    return data
