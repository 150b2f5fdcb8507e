from __future__ import annotations

import asyncio

import pytest

from newscrawl.drivers.base import Driver, FetchOptions, FetchResult, parse_html
from newscrawl.errors import HttpError
from newscrawl.services.sources_service import create_source
from newscrawl.storage import init_db


class FakeDriver(Driver):
    """In-memory driver serving canned HTML keyed by URL."""

    kind = "fake"

    def __init__(
        self,
        pages: dict[str, str],
        *,
        delay: float = 0.0,
        redirects: dict[str, str] | None = None,
    ) -> None:
        self.pages = pages
        self.delay = delay
        self.redirects = redirects or {}
        self.fetched: list[str] = []
        self.options: list[FetchOptions | None] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        self.fetched.append(url)
        self.options.append(options)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        final_url = self.redirects.get(url, url)
        if final_url not in self.pages:
            raise HttpError(404, url=url)
        html = self.pages[final_url]
        return FetchResult(
            document=parse_html(html),
            html=html,
            load_time_ms=1,
            http_status=200,
            final_url=final_url,
        )

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("NC_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("NC_CONFIG_PATH", raising=False)
    monkeypatch.delenv("NC_DB_URL", raising=False)


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def fake_driver():
    return FakeDriver


@pytest.fixture
def make_source(conn):
    def _make(name: str = "Example News", **overrides):
        payload = {
            "name": name,
            "base_url": "https://news.example.com/",
            "driver_type": "static",
            "selectors": {
                "list": [".pb-3 a"],
                "title": [".prosed"],
                "content": [".pb-2"],
            },
        }
        payload.update(overrides)
        return create_source(conn, payload)

    return _make


def listing_html(count: int, *, unique: int | None = None, prefix: str = "/news") -> str:
    """A listing page with ``count`` anchors of which ``unique`` are distinct."""
    unique = unique or count
    items = []
    for index in range(count):
        n = index % unique
        items.append(
            f'<a href="{prefix}/{n}"><span class="prosed">Headline {n}</span>'
            f'<div class="pb-2">Full report on story {n} from the newsroom, '
            f'with quotes and analysis.</div></a>'
        )
    return f'<html><body><div class="pb-3">{"".join(items)}</div></body></html>'


@pytest.fixture
def listing():
    return listing_html
