"""Turn one source configuration into stored articles.

A run fetches the source's list page, resolves the list selectors into
candidate elements and their links, keeps the first ``article_limit`` unique
links in document order, and extracts each candidate (optionally from its
detail page). Detail pages of newly stored articles are mined for further
links on the list page's origin while ``depth < max_depth``. Detail fetches of
one job run concurrently, bounded by ``fetch_concurrency``. Content shorter
than ``min_content_words`` words or ``min_content_chars`` meaningful characters
is not stored.

Only a failure to fetch the list page aborts the run; anything that goes wrong
with a single candidate is counted in ``errors`` and recorded in
``failures``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from bs4 import BeautifulSoup, Tag

from .config import Config
from .dedup import ArticleDraft, DedupStore
from .drivers.base import DEFAULT_USER_AGENT, Driver, FetchOptions
from .errors import FetchError, SelectorNotFound, ValidationError
from .models import Source
from .selectors import resolve, resolve_all, resolve_attr
from .utils import is_crawlable_href, log_event, normalize_url, same_origin

MAX_ARTICLE_LIMIT = 100
MAX_CRAWL_DEPTH = 5
MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 900_000
TITLE_FALLBACK_LENGTH = 200
FILLER_CHARS = re.compile(r"[\s.\-_]+")


@dataclass(frozen=True)
class CrawlOptions:
    article_limit: int = 10
    max_depth: int = 0
    full_content: bool = True
    follow_links: bool = True
    timeout_ms: int = 300_000
    fetch_concurrency: int = 3
    max_links_per_page: int = 5
    max_followed_per_level: int = 3
    min_content_chars: int = 20
    min_content_words: int = 10
    wait_until: str = "networkidle"
    user_agent: str = DEFAULT_USER_AGENT

    @classmethod
    def from_config(cls, config: Config, **overrides: Any) -> "CrawlOptions":
        crawl = config.crawl
        base = {
            "article_limit": crawl.article_limit,
            "max_depth": crawl.max_depth,
            "full_content": crawl.full_content,
            "follow_links": crawl.follow_links,
            "timeout_ms": crawl.timeout_ms,
            "fetch_concurrency": crawl.fetch_concurrency,
            "max_links_per_page": crawl.max_links_per_page,
            "max_followed_per_level": crawl.max_followed_per_level,
            "min_content_chars": crawl.min_content_chars,
            "min_content_words": crawl.min_content_words,
            "wait_until": config.drivers.wait_until,
            "user_agent": config.http.user_agent,
        }
        base.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**base)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CrawlOptions":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in (data or {}).items() if key in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def validate_crawl_options(options: CrawlOptions) -> CrawlOptions:
    errors: list[str] = []
    if not _is_int(options.article_limit) or not 1 <= options.article_limit <= MAX_ARTICLE_LIMIT:
        errors.append(f"limit must be between 1 and {MAX_ARTICLE_LIMIT}")
    if not _is_int(options.max_depth) or not 0 <= options.max_depth <= MAX_CRAWL_DEPTH:
        errors.append(f"depth must be between 0 and {MAX_CRAWL_DEPTH}")
    if not _is_int(options.timeout_ms) or not MIN_TIMEOUT_MS <= options.timeout_ms <= MAX_TIMEOUT_MS:
        errors.append(f"timeout_ms must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS}")
    if not _is_int(options.fetch_concurrency) or options.fetch_concurrency < 1:
        errors.append("fetch_concurrency must be at least 1")
    if not _is_int(options.max_links_per_page) or options.max_links_per_page < 0:
        errors.append("max_links_per_page must not be negative")
    if not _is_int(options.max_followed_per_level) or options.max_followed_per_level < 0:
        errors.append("max_followed_per_level must not be negative")
    if not _is_int(options.min_content_chars) or options.min_content_chars < 0:
        errors.append("min_content_chars must not be negative")
    if not _is_int(options.min_content_words) or options.min_content_words < 0:
        errors.append("min_content_words must not be negative")
    if errors:
        raise ValidationError("; ".join(errors))
    return options


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def crawl_payload(
    source: Source, options: CrawlOptions, *, schedule_id: int | None = None
) -> dict[str, object]:
    return {
        "source": source.snapshot(),
        "options": options.to_dict(),
        "schedule_id": schedule_id,
    }


def payload_source(payload: dict[str, Any]) -> Source:
    snapshot = payload.get("source")
    if not isinstance(snapshot, dict):
        raise ValidationError("job payload has no source snapshot")
    return Source.from_snapshot(snapshot)


def payload_options(payload: dict[str, Any]) -> CrawlOptions:
    return CrawlOptions.from_dict(payload.get("options") or {})


@dataclass(frozen=True)
class CrawlFailure:
    url: str
    depth: int
    kind: str
    message: str


@dataclass
class CrawlResult:
    total_found: int = 0
    processed: int = 0
    new_articles: int = 0
    duplicates: int = 0
    errors: int = 0
    failures: list[CrawlFailure] = field(default_factory=list)
    articles: list[int] = field(default_factory=list)
    duration_ms: int = 0

    def record_failure(self, url: str, depth: int, kind: str, message: str) -> None:
        self.errors += 1
        self.failures.append(CrawlFailure(url=url, depth=depth, kind=kind, message=message))

    def summary(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "new_articles": self.new_articles,
            "duplicates": self.duplicates,
            "errors": self.errors,
        }

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class Candidate:
    url: str
    depth: int
    element: Tag | None = None
    anchor_text: str = ""


@dataclass(frozen=True)
class _Extracted:
    candidate: Candidate
    is_new: bool
    detail: BeautifulSoup | None
    detail_url: str | None


class ExtractionPipeline:
    def __init__(
        self,
        driver: Driver,
        dedup: DedupStore,
        *,
        tracking_params: list[str] | None = None,
        strip_tracking_params: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        self._driver = driver
        self._dedup = dedup
        self._tracking_params = tracking_params
        self._strip_tracking = strip_tracking_params
        self._logger = logger or logging.getLogger("newscrawl.pipeline")

    async def run(self, source: Source, options: CrawlOptions) -> CrawlResult:
        validate_crawl_options(options)
        started = time.monotonic()
        result = CrawlResult()
        fetch_options = FetchOptions(
            timeout_ms=options.timeout_ms,
            wait_until=options.wait_until,
            user_agent=options.user_agent,
        )
        # A list-page failure propagates and fails the whole job.
        page = await self._driver.fetch(source.base_url, fetch_options)
        elements = resolve_all(page.document, source.selector_list("list"))
        result.total_found = len(elements)
        log_event(
            self._logger,
            logging.INFO,
            "crawl_list_fetched",
            source_id=source.id,
            url=page.final_url,
            elements=len(elements),
            load_time_ms=page.load_time_ms,
        )

        seen: set[str] = set()
        level: list[Candidate] = []
        for info in elements:
            if len(level) >= options.article_limit:
                break
            href = resolve_attr(info.element, source.selector_list("link"))
            if not is_crawlable_href(href):
                continue
            link = self._normalize(href, page.final_url)
            if link in seen:
                continue
            seen.add(link)
            level.append(Candidate(url=link, depth=0, element=info.element, anchor_text=info.text))

        semaphore = asyncio.Semaphore(options.fetch_concurrency)
        depth = 0
        while level:
            extracted = await asyncio.gather(
                *(
                    self._extract(source, candidate, options, fetch_options, semaphore, result)
                    for candidate in level
                )
            )
            if not (options.follow_links and options.full_content and depth < options.max_depth):
                break
            level = self._next_level(source, page.final_url, extracted, options, seen, depth + 1)
            depth += 1

        result.duration_ms = int((time.monotonic() - started) * 1000)
        log_event(
            self._logger,
            logging.INFO,
            "crawl_finished",
            source_id=source.id,
            total_found=result.total_found,
            processed=result.processed,
            new_articles=result.new_articles,
            duplicates=result.duplicates,
            errors=result.errors,
            duration_ms=result.duration_ms,
        )
        return result

    async def _extract(
        self,
        source: Source,
        candidate: Candidate,
        options: CrawlOptions,
        fetch_options: FetchOptions,
        semaphore: asyncio.Semaphore,
        result: CrawlResult,
    ) -> _Extracted | None:
        title = lead = content = None
        if candidate.element is not None:
            title, lead, content = self._resolve_fields(candidate.element, source)

        detail = None
        detail_url = None
        if options.full_content:
            try:
                async with semaphore:
                    page = await self._driver.fetch(candidate.url, fetch_options)
            except FetchError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "candidate_failed",
                    url=candidate.url,
                    depth=candidate.depth,
                    kind=exc.error_name,
                    error=exc.message,
                )
                result.record_failure(candidate.url, candidate.depth, exc.error_name, exc.message)
                return None
            detail = page.document
            detail_url = page.final_url
            d_title, d_lead, d_content = self._resolve_fields(detail, source)
            title = d_title or title
            lead = d_lead or lead
            content = d_content or content

        if not title and not content:
            error = SelectorNotFound(candidate.url, ["title", "content"])
            log_event(
                self._logger,
                logging.WARNING,
                "candidate_failed",
                url=candidate.url,
                depth=candidate.depth,
                kind="SelectorNotFound",
            )
            result.record_failure(candidate.url, candidate.depth, "SelectorNotFound", str(error))
            return None

        if content and not has_enough_text(content, options):
            log_event(
                self._logger,
                logging.WARNING,
                "candidate_failed",
                url=candidate.url,
                depth=candidate.depth,
                kind="InvalidContent",
            )
            result.record_failure(
                candidate.url,
                candidate.depth,
                "InvalidContent",
                f"content shorter than {options.min_content_words} words "
                f"or {options.min_content_chars} characters",
            )
            return None

        if not title:
            title = candidate.anchor_text or content.splitlines()[0]
            title = title[:TITLE_FALLBACK_LENGTH]
        # The insert blocks on the database, so it runs off the event loop.
        outcome = await asyncio.to_thread(
            self._dedup.check_and_insert,
            ArticleDraft(
                source_id=int(source.id or 0),
                title=title,
                link=candidate.url,
                lead=lead,
                content=content,
                depth=candidate.depth,
            ),
        )
        result.processed += 1
        if outcome.is_new:
            result.new_articles += 1
            if outcome.article_id is not None:
                result.articles.append(outcome.article_id)
        else:
            result.duplicates += 1
        return _Extracted(candidate=candidate, is_new=outcome.is_new, detail=detail, detail_url=detail_url)

    def _resolve_fields(
        self, scope: BeautifulSoup | Tag, source: Source
    ) -> tuple[str | None, str | None, str | None]:
        title = resolve(scope, source.selector_list("title"))
        lead = resolve(scope, source.selector_list("lead"))
        content = resolve(scope, source.selector_list("content"), join=True)
        return (
            title.text if title else None,
            lead.text if lead else None,
            content.text if content else None,
        )

    def _next_level(
        self,
        source: Source,
        origin: str,
        extracted: list[_Extracted | None],
        options: CrawlOptions,
        seen: set[str],
        depth: int,
    ) -> list[Candidate]:
        # Only newly stored articles are mined for further links, and only links
        # on the origin the list page was served from are followed.
        followed: list[Candidate] = []
        for item in extracted:
            if item is None or not item.is_new or item.detail is None:
                continue
            page_url = item.detail_url or item.candidate.url
            taken = 0
            for info in resolve_all(item.detail, source.selector_list("link") or ["a"]):
                if len(followed) >= options.max_followed_per_level:
                    return followed
                if taken >= options.max_links_per_page:
                    break
                if not is_crawlable_href(info.href):
                    continue
                link = self._normalize(info.href or "", page_url)
                if link in seen or not same_origin(link, origin):
                    continue
                seen.add(link)
                taken += 1
                followed.append(Candidate(url=link, depth=depth, anchor_text=info.text))
        return followed

    def _normalize(self, href: str, base_url: str) -> str:
        return normalize_url(
            href,
            base_url=base_url,
            strip_tracking_params=self._strip_tracking,
            tracking_params=self._tracking_params,
        )


def has_enough_text(content: str, options: CrawlOptions) -> bool:
    """Reject navigation crumbs and teaser stubs picked up by a loose selector."""
    if len(content.split()) < options.min_content_words:
        return False
    return len(FILLER_CHARS.sub("", content)) >= options.min_content_chars
