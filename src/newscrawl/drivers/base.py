from __future__ import annotations

from dataclasses import dataclass, field

from bs4 import BeautifulSoup

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class FetchOptions:
    timeout_ms: int = 30000
    wait_until: str = "networkidle"
    user_agent: str = DEFAULT_USER_AGENT
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchResult:
    """A rendered page.

    ``document`` is always a parsed BeautifulSoup tree regardless of which
    backend rendered the page, so selectors behave identically across drivers.
    """

    document: BeautifulSoup
    html: str
    load_time_ms: int
    http_status: int | None
    final_url: str


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


class Driver:
    kind: str = "driver"

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "Driver":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
