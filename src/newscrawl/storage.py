from __future__ import annotations

from typing import Any

from .db import connect_db
from .models import Article, DriverKind, Schedule, Source
from .utils import json_dumps, json_loads, utc_now_iso

ARTICLE_COLUMNS = (
    "id, source_id, title, link, lead, content, hash, depth, is_read, created_at"
)


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    return json_loads(row[0], default)


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def get_schema_version(conn: Any) -> str | None:
    cursor = conn.execute(
        "SELECT version FROM schema_migrations ORDER BY version DESC LIMIT 1"
    )
    row = cursor.fetchone()
    return row[0] if row else None


def list_articles(
    conn: Any,
    *,
    source_id: int | None = None,
    is_read: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Article], int]:
    clauses: list[str] = []
    params: list[object] = []
    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    if is_read is not None:
        clauses.append("is_read = ?")
        params.append(1 if is_read else 0)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    total = conn.execute(f"SELECT COUNT(*) FROM articles {where}", tuple(params)).fetchone()[0]
    cursor = conn.execute(
        f"""
        SELECT {ARTICLE_COLUMNS}
        FROM articles
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    )
    return [_row_to_article(row) for row in cursor.fetchall()], int(total)


def get_article(conn: Any, article_id: int) -> Article | None:
    cursor = conn.execute(
        f"SELECT {ARTICLE_COLUMNS} FROM articles WHERE id = ?", (article_id,)
    )
    row = cursor.fetchone()
    return _row_to_article(row) if row else None


def mark_article_read(conn: Any, article_id: int, is_read: bool = True) -> bool:
    cursor = conn.execute(
        "UPDATE articles SET is_read = ?, updated_at = ? WHERE id = ?",
        (1 if is_read else 0, utc_now_iso(), article_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def count_table(conn: Any, table: str) -> int:
    cursor = conn.execute(f"SELECT COUNT(*) FROM {table}")
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def _row_to_article(row: tuple) -> Article:
    (
        article_id,
        source_id,
        title,
        link,
        lead,
        content,
        content_hash,
        depth,
        is_read,
        created_at,
    ) = row
    return Article(
        id=int(article_id),
        source_id=int(source_id),
        title=title,
        link=link,
        lead=lead,
        content=content,
        hash=content_hash,
        depth=int(depth),
        is_read=bool(is_read),
        created_at=created_at,
    )


SOURCE_COLUMNS = """
    id, name, base_url, list_selectors_json, title_selectors_json, lead_selectors_json,
    content_selectors_json, link_selectors_json, router_selectors_json, driver_type,
    active, created_at, updated_at
"""


def get_source(conn: Any, source_id: int) -> Source | None:
    cursor = conn.execute(f"SELECT {SOURCE_COLUMNS} FROM news_sources WHERE id = ?", (source_id,))
    row = cursor.fetchone()
    return _row_to_source(row) if row else None


def get_source_by_name(conn: Any, name: str) -> Source | None:
    cursor = conn.execute(f"SELECT {SOURCE_COLUMNS} FROM news_sources WHERE name = ?", (name,))
    row = cursor.fetchone()
    return _row_to_source(row) if row else None


def list_sources(conn: Any, active_only: bool = False) -> list[Source]:
    where = "WHERE active = 1" if active_only else ""
    cursor = conn.execute(f"SELECT {SOURCE_COLUMNS} FROM news_sources {where} ORDER BY id")
    return [_row_to_source(row) for row in cursor.fetchall()]


def _row_to_source(row: tuple) -> Source:
    (
        source_id,
        name,
        base_url,
        list_json,
        title_json,
        lead_json,
        content_json,
        link_json,
        router_json,
        driver_type,
        active,
        created_at,
        updated_at,
    ) = row
    selectors = {
        "list": json_loads(list_json, []) or [],
        "title": json_loads(title_json, []) or [],
        "lead": json_loads(lead_json, []) or [],
        "content": json_loads(content_json, []) or [],
        "link": json_loads(link_json, []) or [],
        "router": json_loads(router_json, []) or [],
    }
    return Source(
        id=int(source_id),
        name=name,
        base_url=base_url,
        selectors=selectors,
        driver_type=DriverKind(driver_type),
        active=bool(active),
        created_at=created_at,
        updated_at=updated_at,
    )


SCHEDULE_COLUMNS = """
    id, source_id, cron_expression, active, crawl_depth, article_limit, timeout_ms,
    full_content, follow_links, last_run, next_run, created_at, updated_at
"""


def get_schedule(conn: Any, schedule_id: int) -> Schedule | None:
    cursor = conn.execute(f"SELECT {SCHEDULE_COLUMNS} FROM schedules WHERE id = ?", (schedule_id,))
    row = cursor.fetchone()
    return _row_to_schedule(row) if row else None


def list_schedules(
    conn: Any, *, source_id: int | None = None, active_only: bool = False
) -> list[Schedule]:
    clauses: list[str] = []
    params: list[object] = []
    if source_id is not None:
        clauses.append("source_id = ?")
        params.append(source_id)
    if active_only:
        clauses.append("active = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    cursor = conn.execute(
        f"SELECT {SCHEDULE_COLUMNS} FROM schedules {where} ORDER BY id", tuple(params)
    )
    return [_row_to_schedule(row) for row in cursor.fetchall()]


def _row_to_schedule(row: tuple) -> Schedule:
    (
        schedule_id,
        source_id,
        cron_expression,
        active,
        crawl_depth,
        article_limit,
        timeout_ms,
        full_content,
        follow_links,
        last_run,
        next_run,
        created_at,
        updated_at,
    ) = row
    return Schedule(
        id=int(schedule_id),
        source_id=int(source_id),
        cron_expression=cron_expression,
        active=bool(active),
        crawl_depth=int(crawl_depth),
        article_limit=int(article_limit),
        timeout_ms=int(timeout_ms),
        full_content=bool(full_content),
        follow_links=bool(follow_links),
        last_run=last_run,
        next_run=next_run,
        created_at=created_at,
        updated_at=updated_at,
    )
