from __future__ import annotations

import logging
import time

import httpx

from ..errors import HttpError, NavigationTimeout, NetworkError
from ..utils import log_event
from .base import Driver, FetchOptions, FetchResult, parse_html


class StaticDriver(Driver):
    """Plain HTTP fetch parsed with BeautifulSoup; scripts are never executed."""

    kind = "static"

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(transport=transport, follow_redirects=True)
        self._logger = logger or logging.getLogger("newscrawl.drivers")

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        options = options or FetchOptions()
        headers = {"User-Agent": options.user_agent, **options.headers}
        started = time.monotonic()
        try:
            response = await self._client.get(
                url,
                headers=headers,
                timeout=options.timeout_ms / 1000,
            )
        except httpx.TimeoutException as exc:
            log_event(self._logger, logging.WARNING, "fetch_timeout", driver=self.kind, url=url)
            raise NavigationTimeout(f"timeout fetching {url}", url=url) from exc
        except httpx.TooManyRedirects as exc:
            raise NetworkError(f"too many redirects for {url}", url=url) from exc
        except httpx.HTTPError as exc:
            log_event(
                self._logger, logging.WARNING, "fetch_network_error", driver=self.kind, url=url, error=exc
            )
            raise NetworkError(f"request error for {url}: {exc}", url=url) from exc
        load_time_ms = int((time.monotonic() - started) * 1000)
        if not response.is_success:
            raise HttpError(response.status_code, url=url)
        html = response.text
        return FetchResult(
            document=parse_html(html),
            html=html,
            load_time_ms=load_time_ms,
            http_status=response.status_code,
            final_url=str(response.url),
        )

    async def close(self) -> None:
        await self._client.aclose()
