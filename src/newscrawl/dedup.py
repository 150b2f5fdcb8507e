from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from .utils import normalize_text, normalize_url, sha256_hex, utc_now_iso


@dataclass(frozen=True)
class ArticleDraft:
    source_id: int
    title: str
    link: str
    lead: str | None
    content: str | None
    depth: int


@dataclass(frozen=True)
class DedupOutcome:
    is_new: bool
    article_id: int | None
    hash: str


def content_hash(link: str, title: str | None, content: str | None) -> str:
    parts = [
        normalize_url(link),
        normalize_text(title).lower(),
        normalize_text(content).lower(),
    ]
    return sha256_hex("\n".join(parts))


class DedupStore:
    """Article insert that treats a UNIQUE(link) or UNIQUE(hash) hit as "seen".

    The single ``INSERT OR IGNORE`` is the atomic check: two jobs racing on the
    same candidate both issue it and the storage engine lets exactly one row in.

    Calls block on the database. The pipeline runs them through
    ``asyncio.to_thread``; the lock serializes threads sharing one connection.
    """

    def __init__(self, conn: Any) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def check_and_insert(self, draft: ArticleDraft) -> DedupOutcome:
        digest = content_hash(draft.link, draft.title, draft.content)
        now = utc_now_iso()
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO articles
                    (source_id, title, link, lead, content, hash, depth, is_read,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                RETURNING id
                """,
                (
                    draft.source_id,
                    draft.title,
                    draft.link,
                    draft.lead,
                    draft.content,
                    digest,
                    draft.depth,
                    now,
                    now,
                ),
            )
            row = cursor.fetchone()
            self._conn.commit()
        if row is None:
            return DedupOutcome(is_new=False, article_id=None, hash=digest)
        return DedupOutcome(is_new=True, article_id=int(row[0]), hash=digest)

    def exists(self, link: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("SELECT 1 FROM articles WHERE link = ?", (link,))
            return cursor.fetchone() is not None
