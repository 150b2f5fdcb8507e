from __future__ import annotations

from typing import Any

from ..errors import ValidationError
from ..history import record_operation
from ..models import Schedule
from ..pipeline import (
    MAX_ARTICLE_LIMIT,
    MAX_CRAWL_DEPTH,
    MAX_TIMEOUT_MS,
    MIN_TIMEOUT_MS,
    CrawlOptions,
    validate_crawl_options,
)
from ..scheduler import Scheduler, validate_cron
from ..storage import get_schedule, get_source, list_schedules
from ..utils import utc_now_iso


def schedule_to_dict(schedule: Schedule, source_name: str | None = None) -> dict[str, Any]:
    return {
        "id": schedule.id,
        "source_id": schedule.source_id,
        "source_name": source_name,
        "cron_expression": schedule.cron_expression,
        "active": schedule.active,
        "crawl_depth": schedule.crawl_depth,
        "article_limit": schedule.article_limit,
        "timeout_ms": schedule.timeout_ms,
        "full_content": schedule.full_content,
        "follow_links": schedule.follow_links,
        "last_run": schedule.last_run,
        "next_run": schedule.next_run,
        "created_at": schedule.created_at,
        "updated_at": schedule.updated_at,
    }


def list_schedule_dicts(conn: Any, source_id: int | None = None) -> list[dict[str, Any]]:
    names = {
        int(row[0]): row[1] for row in conn.execute("SELECT id, name FROM news_sources").fetchall()
    }
    return [
        schedule_to_dict(schedule, names.get(schedule.source_id))
        for schedule in list_schedules(conn, source_id=source_id)
    ]


def create_schedule(
    conn: Any,
    payload: dict[str, Any],
    *,
    scheduler: Scheduler | None = None,
    defaults: CrawlOptions | None = None,
) -> Schedule:
    scheduler = scheduler or Scheduler()
    defaults = defaults or CrawlOptions()
    source_id = _int_field(payload, "source_id", None)
    if source_id is None:
        raise ValidationError("source_id is required")
    if get_source(conn, source_id) is None:
        raise LookupError("source_not_found")
    cron_expression = validate_cron(payload.get("cron_expression") or "")
    params = _crawl_params(payload, defaults)
    active = bool(payload.get("active", True))
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO schedules
            (source_id, cron_expression, active, crawl_depth, article_limit, timeout_ms,
             full_content, follow_links, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            source_id,
            cron_expression,
            1 if active else 0,
            params.max_depth,
            params.article_limit,
            params.timeout_ms,
            1 if params.full_content else 0,
            1 if params.follow_links else 0,
            now,
            now,
        ),
    )
    schedule_id = int(cursor.fetchone()[0])
    conn.commit()
    scheduler.refresh(conn, schedule_id)
    record_operation(conn, "schedule", schedule_id, "create", "success", cron_expression)
    return get_schedule(conn, schedule_id)  # type: ignore[return-value]


def update_schedule(
    conn: Any,
    schedule_id: int,
    payload: dict[str, Any],
    *,
    scheduler: Scheduler | None = None,
) -> Schedule:
    """Apply an edit; any change re-derives next_run (deactivation clears it)."""
    scheduler = scheduler or Scheduler()
    current = get_schedule(conn, schedule_id)
    if current is None:
        raise LookupError("schedule_not_found")
    source_id = _int_field(payload, "source_id", current.source_id)
    if source_id != current.source_id and get_source(conn, source_id) is None:
        raise LookupError("source_not_found")
    cron_expression = validate_cron(payload.get("cron_expression") or current.cron_expression)
    params = _crawl_params(
        payload,
        CrawlOptions(
            article_limit=current.article_limit,
            max_depth=current.crawl_depth,
            timeout_ms=current.timeout_ms,
            full_content=current.full_content,
            follow_links=current.follow_links,
        ),
    )
    active = bool(payload.get("active", current.active))
    conn.execute(
        """
        UPDATE schedules
        SET source_id = ?, cron_expression = ?, active = ?, crawl_depth = ?, article_limit = ?,
            timeout_ms = ?, full_content = ?, follow_links = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            source_id,
            cron_expression,
            1 if active else 0,
            params.max_depth,
            params.article_limit,
            params.timeout_ms,
            1 if params.full_content else 0,
            1 if params.follow_links else 0,
            utc_now_iso(),
            schedule_id,
        ),
    )
    conn.commit()
    scheduler.refresh(conn, schedule_id)
    record_operation(conn, "schedule", schedule_id, "update", "success", cron_expression)
    return get_schedule(conn, schedule_id)  # type: ignore[return-value]


def delete_schedule(conn: Any, schedule_id: int) -> None:
    if get_schedule(conn, schedule_id) is None:
        raise LookupError("schedule_not_found")
    conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
    conn.commit()
    record_operation(conn, "schedule", schedule_id, "delete")


def _crawl_params(payload: dict[str, Any], defaults: CrawlOptions) -> CrawlOptions:
    options = CrawlOptions(
        article_limit=_int_field(payload, "article_limit", defaults.article_limit),
        max_depth=_int_field(payload, "crawl_depth", defaults.max_depth),
        timeout_ms=_int_field(payload, "timeout_ms", defaults.timeout_ms),
        full_content=bool(payload.get("full_content", defaults.full_content)),
        follow_links=bool(payload.get("follow_links", defaults.follow_links)),
    )
    try:
        return validate_crawl_options(options)
    except ValidationError as exc:
        raise ValidationError(
            f"{exc} (limit 1..{MAX_ARTICLE_LIMIT}, depth 0..{MAX_CRAWL_DEPTH}, "
            f"timeout_ms {MIN_TIMEOUT_MS}..{MAX_TIMEOUT_MS})"
        ) from exc


def _int_field(payload: dict[str, Any], key: str, default: int | None) -> int | None:
    value = payload.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{key} must be an integer") from exc
