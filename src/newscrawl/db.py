from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

_MIGRATIONS_APPLIED: dict[str, set[str]] = {"sqlite": set(), "postgres": set()}
_MIGRATIONS_LOCK = threading.Lock()


DEFAULT_DATA_DIR = "/data"


def get_state_db_path() -> str:
    data_dir = os.environ.get("NC_DATA_DIR", DEFAULT_DATA_DIR)
    return os.path.join(data_dir, "state.sqlite3")


def get_db_url() -> str | None:
    url = os.environ.get("NC_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend
        self._depth = 0

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        if self.backend == "postgres":
            self._depth = 1
            try:
                with self._conn.transaction():
                    yield self
            finally:
                self._depth = 0
            return
        self._conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            self._conn.execute("ROLLBACK")
            raise
        self._depth = 0
        self._conn.execute("COMMIT")

    @property
    def lock_clause(self) -> str:
        return " FOR UPDATE SKIP LOCKED" if self.backend == "postgres" else ""

    def commit(self) -> None:
        # Statements inside transaction() are committed when the block exits.
        if self._depth:
            return
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str | None = None) -> DBConn:
    path = path or get_state_db_path()
    url = get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        raw = psycopg.connect(url, autocommit=True)
        conn = DBConn(raw, "postgres")
        with _MIGRATIONS_LOCK:
            if url not in _MIGRATIONS_APPLIED["postgres"]:
                apply_migrations_pg(conn)
                _MIGRATIONS_APPLIED["postgres"].add(url)
        return conn

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, isolation_level=None, check_same_thread=False, timeout=30)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=30000")
    raw.execute("PRAGMA foreign_keys=ON")
    key = os.path.abspath(path)
    with _MIGRATIONS_LOCK:
        if key not in _MIGRATIONS_APPLIED["sqlite"] or not _has_schema(raw):
            apply_migrations(raw)
            _MIGRATIONS_APPLIED["sqlite"].add(key)
    return DBConn(raw, "sqlite")


def _has_schema(raw: sqlite3.Connection) -> bool:
    row = raw.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_migrations'"
    ).fetchone()
    return row is not None


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    normalized = _convert_qmark_to_percent(normalized)
    return normalized


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    replaced = _replace_first_case_insensitive(sql, "INSERT OR IGNORE", "INSERT")
    if "ON CONFLICT" in replaced.upper():
        return replaced
    stripped = replaced.rstrip().rstrip(";")
    idx = stripped.upper().rfind("RETURNING")
    if idx != -1:
        return stripped[:idx] + "ON CONFLICT DO NOTHING " + stripped[idx:]
    return stripped + " ON CONFLICT DO NOTHING"


def _replace_first_case_insensitive(text: str, needle: str, replacement: str) -> str:
    idx = text.upper().find(needle.upper())
    if idx == -1:
        return text
    return text[:idx] + replacement + text[idx + len(needle) :]


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    escape = False
    for ch in sql:
        if ch == "\\" and not escape:
            escape = True
            out.append(ch)
            continue
        if ch == "'" and not in_double and not escape:
            in_single = not in_single
        elif ch == '"' and not in_single and not escape:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        elif ch == "%" and not in_single and not in_double:
            out.append("%%")
        else:
            out.append(ch)
        escape = False
    return "".join(out)
