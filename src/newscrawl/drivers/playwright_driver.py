"""Headless Chromium rendering through async Playwright.

Launching a browser is expensive, so a :class:`BrowserPool` owns one browser
process and hands out pages (each in its own context) to fetches. A page is
returned to the pool after a clean navigation and discarded after anything
else, including cancellation, so a crashed or half-navigated page is never
reused. The browser is relaunched when it reports a disconnect.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout

from ..errors import DriverCrash, FetchError, HttpError, NavigationTimeout, NetworkError
from ..utils import log_event
from .base import DEFAULT_USER_AGENT, Driver, FetchOptions, FetchResult, parse_html

CRASH_MARKERS = ("target closed", "crash", "browser has been closed", "context has been closed")
BROWSER_ARGS = [
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--no-first-run",
]


class BrowserPool:
    def __init__(
        self,
        *,
        size: int = 3,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.size = max(1, size)
        self.headless = headless
        self.user_agent = user_agent
        self._logger = logger or logging.getLogger("newscrawl.drivers")
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._idle: list[Page] = []
        self._slots = asyncio.Semaphore(self.size)
        self._launch_lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._launch_lock:
            if self._browser is not None and self._browser.is_connected():
                return self._browser
            if self._browser is not None:
                log_event(self._logger, logging.WARNING, "browser_relaunch")
                self._idle.clear()
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless, args=BROWSER_ARGS
            )
            log_event(self._logger, logging.INFO, "browser_launched", headless=self.headless)
            return self._browser

    async def acquire(self) -> Page:
        await self._slots.acquire()
        try:
            browser = await self._ensure_browser()
            while self._idle:
                page = self._idle.pop()
                if not page.is_closed():
                    return page
            context = await browser.new_context(user_agent=self.user_agent)
            return await context.new_page()
        except BaseException:
            self._slots.release()
            raise

    async def release(self, page: Page, *, discard: bool = False) -> None:
        try:
            if discard or page.is_closed():
                await _close_page(page)
            else:
                self._idle.append(page)
        finally:
            self._slots.release()

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Page]:
        page = await self.acquire()
        discard = True
        try:
            yield page
            discard = False
        finally:
            await self.release(page, discard=discard)

    async def close(self) -> None:
        pages, self._idle = self._idle, []
        for page in pages:
            await _close_page(page)
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as exc:
                log_event(self._logger, logging.DEBUG, "browser_close_failed", error=exc)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


class PlaywrightDriver(Driver):
    kind = "playwright"

    def __init__(
        self,
        pool: BrowserPool | None = None,
        *,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or logging.getLogger("newscrawl.drivers")
        self._owns_pool = pool is None
        self._pool = pool or BrowserPool(
            size=1, headless=headless, user_agent=user_agent, logger=self._logger
        )

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        options = options or FetchOptions()
        started = time.monotonic()
        async with self._pool.page() as page:
            try:
                if options.headers:
                    await page.set_extra_http_headers(options.headers)
                response = await page.goto(
                    url, timeout=options.timeout_ms, wait_until=options.wait_until
                )
                html = await page.content()
            except PlaywrightTimeout as exc:
                log_event(self._logger, logging.WARNING, "fetch_timeout", driver=self.kind, url=url)
                raise NavigationTimeout(f"navigation timeout for {url}", url=url) from exc
            except PlaywrightError as exc:
                raise _classify(exc, url) from exc
            status = response.status if response is not None else None
            final_url = page.url
        if status is not None and status >= 400:
            raise HttpError(status, url=url)
        return FetchResult(
            document=parse_html(html),
            html=html,
            load_time_ms=int((time.monotonic() - started) * 1000),
            http_status=status,
            final_url=final_url,
        )

    async def close(self) -> None:
        if self._owns_pool:
            await self._pool.close()


def _classify(exc: PlaywrightError, url: str) -> FetchError:
    message = str(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in CRASH_MARKERS):
        return DriverCrash(f"browser crashed while loading {url}: {message}", url=url)
    return NetworkError(f"navigation failed for {url}: {message}", url=url)


async def _close_page(page: Page) -> None:
    try:
        await page.context.close()
    except PlaywrightError:
        # Already gone with the browser.
        return
