from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DriverKind(str, Enum):
    PLAYWRIGHT = "playwright"
    SELENIUM = "selenium"
    STATIC = "static"


DRIVER_ALIASES = {
    "puppeteer": DriverKind.PLAYWRIGHT,
    "chromium": DriverKind.PLAYWRIGHT,
    "cheerio": DriverKind.STATIC,
    "http": DriverKind.STATIC,
}


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {JobPriority.LOW: 0, JobPriority.NORMAL: 1, JobPriority.HIGH: 2}


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


SELECTOR_FIELDS = ("list", "title", "lead", "content", "link", "router")


@dataclass(frozen=True)
class Source:
    id: int | None
    name: str
    base_url: str
    selectors: dict[str, list[str]]
    driver_type: DriverKind
    active: bool
    created_at: str | None = None
    updated_at: str | None = None

    def selector_list(self, field_name: str) -> list[str]:
        return list(self.selectors.get(field_name) or [])

    def snapshot(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "base_url": self.base_url,
            "selectors": {name: self.selector_list(name) for name in SELECTOR_FIELDS},
            "driver_type": self.driver_type.value,
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, object]) -> "Source":
        selectors = data.get("selectors") or {}
        return cls(
            id=data.get("id"),  # type: ignore[arg-type]
            name=str(data.get("name") or ""),
            base_url=str(data.get("base_url") or ""),
            selectors={
                name: [str(item) for item in (selectors.get(name) or [])]  # type: ignore[union-attr]
                for name in SELECTOR_FIELDS
            },
            driver_type=DriverKind(str(data.get("driver_type") or DriverKind.STATIC.value)),
            active=True,
        )


@dataclass(frozen=True)
class Article:
    id: int | None
    source_id: int
    title: str
    link: str
    lead: str | None
    content: str | None
    hash: str
    depth: int
    is_read: bool = False
    created_at: str | None = None


@dataclass(frozen=True)
class Schedule:
    id: int
    source_id: int
    cron_expression: str
    active: bool
    crawl_depth: int
    article_limit: int
    timeout_ms: int
    full_content: bool
    follow_links: bool
    last_run: str | None
    next_run: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    priority: JobPriority
    status: JobStatus
    payload: dict[str, object]
    source_id: int | None
    schedule_id: int | None
    attempts: int
    max_attempts: int
    available_at: str
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None
    locked_by: str | None = None
    locked_at: str | None = None
    result: dict[str, object] | None = None
    error: str | None = None
    error_kind: str | None = None
    retry_of: str | None = None


@dataclass(frozen=True)
class SelectorConfig:
    id: int | None
    name: str
    url: str | None
    selectors: dict[str, list[str]] = field(default_factory=dict)
    driver_type: DriverKind = DriverKind.PLAYWRIGHT
    description: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
