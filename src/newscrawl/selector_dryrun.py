"""Dry-run a single selector against a live URL.

Used while authoring a source: nothing is stored and the job queue is not
involved. The result mirrors what the crawl pipeline would see for the same
selector and driver.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from .drivers import create_driver, parse_driver_kind
from .drivers.base import DEFAULT_USER_AGENT, Driver, FetchOptions
from .errors import FetchError, ValidationError
from .models import DriverKind
from .selectors import resolve_all, suggest_selectors, validate_selector
from .utils import log_event, utc_now_iso

DEFAULT_TEST_TIMEOUT_MS = 65_000
LIST_SAMPLE_COUNT = 5
LIST_SAMPLE_TEXT = 150
FIELD_SAMPLE_COUNT = 3
FIELD_SAMPLE_TEXT = 300

STATUS_BY_KIND = {"timeout": 408, "network": 408, "driver": 503, "http": 502}

logger = logging.getLogger("newscrawl.selector_dryrun")


@dataclass
class DryRunResult:
    success: bool
    status_code: int
    payload: dict[str, Any] = field(default_factory=dict)


def validate_dry_run_request(url: object, selector: object) -> tuple[str, str]:
    url = str(url or "").strip()
    if not url or not selector:
        raise ValidationError("url and selector are required")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(f"invalid url: {url!r}")
    return url, validate_selector(str(selector))


async def dry_run_selector(
    url: str,
    selector: str,
    selector_type: str = "list",
    driver_type: str | DriverKind = DriverKind.STATIC,
    *,
    timeout_ms: int = DEFAULT_TEST_TIMEOUT_MS,
    driver: Driver | None = None,
    headless: bool = True,
    user_agent: str = DEFAULT_USER_AGENT,
) -> DryRunResult:
    url, selector = validate_dry_run_request(url, selector)
    kind = parse_driver_kind(driver_type)
    owns_driver = driver is None
    driver = driver or create_driver(
        kind, headless=headless, user_agent=user_agent, logger=logger
    )
    started = time.monotonic()
    metadata = {
        "url": url,
        "selector": selector,
        "type": selector_type,
        "driver_type": kind.value,
        "timestamp": utc_now_iso(),
    }
    try:
        try:
            page = await asyncio.wait_for(
                driver.fetch(url, FetchOptions(timeout_ms=timeout_ms, user_agent=user_agent)),
                timeout=timeout_ms / 1000 + 5,
            )
        except asyncio.TimeoutError:
            return _failure(
                "timeout", f"timed out after {timeout_ms}ms loading {url}", metadata, started
            )
        except FetchError as exc:
            return _failure(exc.kind, exc.message, metadata, started, http_status=exc.status)
    finally:
        if owns_driver:
            await driver.close()

    elements = resolve_all(page.document, [selector])
    duration_ms = int((time.monotonic() - started) * 1000)
    metadata["duration_ms"] = duration_ms
    metadata["final_url"] = page.final_url
    metadata["http_status"] = page.http_status
    performance = {"load_time_ms": page.load_time_ms, "total_ms": duration_ms}
    log_event(
        logger,
        logging.INFO,
        "selector_dry_run",
        url=url,
        selector=selector,
        count=len(elements),
        duration_ms=duration_ms,
    )
    if not elements:
        return DryRunResult(
            success=False,
            status_code=404,
            payload={
                "success": False,
                "message": f"no elements matched {selector!r}",
                "error": {"type": "selector_not_found", "details": selector},
                "data": {"count": 0, "samples": []},
                "metadata": metadata,
                "performance": performance,
                "suggestions": suggest_selectors(page.document),
            },
        )

    if selector_type == "list":
        sample_count, text_limit = LIST_SAMPLE_COUNT, LIST_SAMPLE_TEXT
    else:
        sample_count, text_limit = FIELD_SAMPLE_COUNT, FIELD_SAMPLE_TEXT
    samples = []
    for index, info in enumerate(elements[:sample_count]):
        sample = info.to_dict(max_text=text_limit)
        sample["index"] = index
        samples.append(sample)
    return DryRunResult(
        success=True,
        status_code=200,
        payload={
            "success": True,
            "message": f"{len(elements)} elements matched",
            "data": {"count": len(elements), "samples": samples},
            "metadata": metadata,
            "performance": performance,
            "suggestions": [],
        },
    )


def _failure(
    kind: str,
    message: str,
    metadata: dict[str, Any],
    started: float,
    *,
    http_status: int | None = None,
) -> DryRunResult:
    metadata = {**metadata, "duration_ms": int((time.monotonic() - started) * 1000)}
    log_event(logger, logging.WARNING, "selector_dry_run_failed", url=metadata["url"], kind=kind)
    return DryRunResult(
        success=False,
        status_code=STATUS_BY_KIND.get(kind, 400),
        payload={
            "success": False,
            "message": message,
            "error": {"type": kind, "details": message, "http_status": http_status},
            "data": {"count": 0, "samples": []},
            "metadata": metadata,
            "performance": {},
            "suggestions": [],
        },
    )
