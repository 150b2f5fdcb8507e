from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    logger = logging.getLogger("newscrawl.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS news_sources (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            base_url TEXT NOT NULL,
            list_selectors_json TEXT NOT NULL DEFAULT '[]',
            title_selectors_json TEXT NOT NULL DEFAULT '[]',
            lead_selectors_json TEXT NOT NULL DEFAULT '[]',
            content_selectors_json TEXT NOT NULL DEFAULT '[]',
            link_selectors_json TEXT NOT NULL DEFAULT '[]',
            router_selectors_json TEXT NOT NULL DEFAULT '[]',
            driver_type TEXT NOT NULL DEFAULT 'playwright',
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id INTEGER NOT NULL REFERENCES news_sources(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            link TEXT NOT NULL UNIQUE,
            lead TEXT NULL,
            content TEXT NULL,
            hash TEXT NOT NULL UNIQUE,
            depth INTEGER NOT NULL DEFAULT 0,
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_source ON articles(source_id, created_at)"
    )


def _migration_schedules(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schedules (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_id INTEGER NOT NULL REFERENCES news_sources(id) ON DELETE CASCADE,
            cron_expression TEXT NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            crawl_depth INTEGER NOT NULL DEFAULT 0,
            article_limit INTEGER NOT NULL DEFAULT 10,
            timeout_ms INTEGER NOT NULL DEFAULT 300000,
            full_content INTEGER NOT NULL DEFAULT 1,
            follow_links INTEGER NOT NULL DEFAULT 1,
            last_run TEXT NULL,
            next_run TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_schedules_due ON schedules(active, next_run)"
    )


def _migration_queue_jobs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue_jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            priority TEXT NOT NULL DEFAULT 'normal',
            priority_rank INTEGER NOT NULL DEFAULT 1,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            source_id INTEGER NULL,
            schedule_id INTEGER NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            available_at TEXT NOT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            result_json TEXT NULL,
            error TEXT NULL,
            error_kind TEXT NULL,
            retry_of TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            completed_at TEXT NULL,
            failed_at TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_queue_jobs_claim
        ON queue_jobs(status, priority_rank DESC, created_at)
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_jobs_source ON queue_jobs(source_id, status)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_jobs_schedule ON queue_jobs(schedule_id, status)"
    )


def _migration_history_and_logs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS crawl_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NULL,
            source_id INTEGER NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            total_found INTEGER NOT NULL DEFAULT 0,
            processed INTEGER NOT NULL DEFAULT 0,
            new_articles INTEGER NOT NULL DEFAULT 0,
            duplicates INTEGER NOT NULL DEFAULT 0,
            errors INTEGER NOT NULL DEFAULT 0,
            crawl_depth INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            message TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS crawl_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_id TEXT NULL,
            source_id INTEGER NULL,
            action TEXT NOT NULL DEFAULT 'crawl',
            status TEXT NOT NULL,
            message TEXT NULL,
            articles_found INTEGER NOT NULL DEFAULT 0,
            articles_processed INTEGER NOT NULL DEFAULT 0,
            new_articles INTEGER NOT NULL DEFAULT 0,
            duration_ms INTEGER NOT NULL DEFAULT 0,
            error_kind TEXT NULL,
            details_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS operation_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity TEXT NOT NULL,
            entity_id TEXT NULL,
            action TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_crawl_logs_created ON crawl_logs(created_at DESC)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_crawl_history_source ON crawl_history(source_id, started_at)"
    )


def _migration_selector_configs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS selector_configs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            url TEXT NULL,
            selectors_json TEXT NOT NULL DEFAULT '{}',
            driver_type TEXT NOT NULL DEFAULT 'playwright',
            description TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_schedules", _migration_schedules),
        ("003_queue_jobs", _migration_queue_jobs),
        ("004_history_and_logs", _migration_history_and_logs),
        ("005_selector_configs", _migration_selector_configs),
    ]
