import asyncio

import httpx
import pytest

from newscrawl.drivers import create_driver, parse_driver_kind
from newscrawl.drivers.base import FetchOptions
from newscrawl.drivers.static import StaticDriver
from newscrawl.errors import HttpError, NavigationTimeout, NetworkError, ValidationError
from newscrawl.models import DriverKind


def _fetch(handler, url="https://news.example.com/", options=None):
    async def _go():
        driver = StaticDriver(transport=httpx.MockTransport(handler))
        try:
            return await driver.fetch(url, options)
        finally:
            await driver.close()

    return asyncio.run(_go())


def test_fetch_parses_document_and_sends_user_agent():
    seen = {}

    def handler(request):
        seen["ua"] = request.headers.get("user-agent")
        return httpx.Response(200, text="<html><body><h1>Hello</h1></body></html>")

    result = _fetch(handler, options=FetchOptions(user_agent="newscrawl-test"))
    assert result.http_status == 200
    assert result.document.select_one("h1").get_text() == "Hello"
    assert result.final_url == "https://news.example.com/"
    assert seen["ua"] == "newscrawl-test"


def test_http_error_status_raises_http_error():
    with pytest.raises(HttpError) as excinfo:
        _fetch(lambda request: httpx.Response(404, text="missing"))
    assert excinfo.value.status == 404
    assert excinfo.value.kind == "http"
    assert excinfo.value.error_name == "HttpError"


def test_timeout_and_network_errors_are_classified():
    def slow(request):
        raise httpx.ReadTimeout("too slow", request=request)

    def refused(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NavigationTimeout):
        _fetch(slow)
    with pytest.raises(NetworkError) as excinfo:
        _fetch(refused)
    assert excinfo.value.to_dict()["error"] == "NetworkError"


def test_driver_kind_parsing_and_aliases():
    assert parse_driver_kind("static") is DriverKind.STATIC
    assert parse_driver_kind("cheerio") is DriverKind.STATIC
    assert parse_driver_kind(" Puppeteer ") is DriverKind.PLAYWRIGHT
    with pytest.raises(ValidationError):
        parse_driver_kind("lynx")
    assert isinstance(create_driver("http"), StaticDriver)
