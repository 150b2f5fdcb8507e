from __future__ import annotations

import asyncio
import logging
import time

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.support.ui import WebDriverWait

from ..errors import DriverCrash, FetchError, NavigationTimeout, NetworkError
from ..utils import log_event
from .base import DEFAULT_USER_AGENT, Driver, FetchOptions, FetchResult, parse_html

NETWORK_MARKERS = ("net::err", "err_name_not_resolved", "err_connection")


class SeleniumDriver(Driver):
    """Headless Chrome through Selenium.

    Selenium is blocking, so every call runs in a worker thread. One webdriver
    is reused across fetches and serialized by a lock; it is quit when a fetch
    is cancelled or the browser dies, and relaunched on the next fetch.
    """

    kind = "selenium"

    def __init__(
        self,
        *,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.headless = headless
        self.user_agent = user_agent
        self._logger = logger or logging.getLogger("newscrawl.drivers")
        self._webdriver: webdriver.Chrome | None = None
        self._lock = asyncio.Lock()

    def _launch(self) -> webdriver.Chrome:
        options = webdriver.ChromeOptions()
        if self.headless:
            options.add_argument("--headless=new")
        options.add_argument("--no-sandbox")
        options.add_argument("--disable-dev-shm-usage")
        options.add_argument("--disable-gpu")
        options.add_argument(f"--user-agent={self.user_agent}")
        log_event(self._logger, logging.INFO, "webdriver_launched", headless=self.headless)
        return webdriver.Chrome(options=options)

    def _load(self, url: str, timeout_ms: int) -> tuple[str, str]:
        if self._webdriver is None:
            self._webdriver = self._launch()
        driver = self._webdriver
        timeout_seconds = max(timeout_ms / 1000, 0.1)
        driver.set_page_load_timeout(timeout_seconds)
        driver.get(url)
        WebDriverWait(driver, timeout_seconds).until(
            lambda d: d.execute_script("return document.readyState") == "complete"
        )
        return driver.page_source, driver.current_url

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        options = options or FetchOptions()
        started = time.monotonic()
        async with self._lock:
            try:
                html, final_url = await asyncio.to_thread(self._load, url, options.timeout_ms)
            except asyncio.CancelledError:
                # quit() from another thread unblocks the navigation still running.
                await asyncio.to_thread(self._quit)
                raise
            except TimeoutException as exc:
                await asyncio.to_thread(self._quit)
                log_event(self._logger, logging.WARNING, "fetch_timeout", driver=self.kind, url=url)
                raise NavigationTimeout(f"navigation timeout for {url}", url=url) from exc
            except WebDriverException as exc:
                error = _classify(exc, url)
                if isinstance(error, DriverCrash):
                    await asyncio.to_thread(self._quit)
                raise error from exc
        return FetchResult(
            document=parse_html(html),
            html=html,
            load_time_ms=int((time.monotonic() - started) * 1000),
            http_status=None,
            final_url=final_url,
        )

    def _quit(self) -> None:
        driver, self._webdriver = self._webdriver, None
        if driver is None:
            return
        try:
            driver.quit()
        except WebDriverException as exc:
            log_event(self._logger, logging.DEBUG, "webdriver_quit_failed", error=exc)

    async def close(self) -> None:
        await asyncio.to_thread(self._quit)


def _classify(exc: WebDriverException, url: str) -> FetchError:
    message = exc.msg or str(exc)
    if any(marker in message.lower() for marker in NETWORK_MARKERS):
        return NetworkError(f"navigation failed for {url}: {message}", url=url)
    return DriverCrash(f"webdriver failed while loading {url}: {message}", url=url)
