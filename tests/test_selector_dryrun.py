import asyncio

import pytest

from newscrawl.errors import ValidationError
from newscrawl.selector_dryrun import dry_run_selector, validate_dry_run_request

URL = "https://news.example.com/"


def _dry_run(driver, selector, selector_type="list"):
    return asyncio.run(
        dry_run_selector(URL, selector, selector_type, "static", timeout_ms=1000, driver=driver)
    )


def test_list_selector_returns_samples(fake_driver, listing):
    driver = fake_driver({URL: listing(8)})
    result = _dry_run(driver, ".pb-3 a")
    assert result.status_code == 200
    data = result.payload["data"]
    assert data["count"] == 8
    assert len(data["samples"]) == 5
    assert data["samples"][0]["index"] == 0
    assert data["samples"][0]["href"] == "/news/0"
    assert result.payload["metadata"]["driver_type"] == "static"
    # a caller-supplied driver is left open
    assert not driver.closed


def test_field_selector_truncates_text(fake_driver):
    long_text = "x" * 500
    page = "".join(f"<p class='pb-2'>{long_text}</p>" for _ in range(4))
    result = _dry_run(fake_driver({URL: page}), ".pb-2", "content")
    samples = result.payload["data"]["samples"]
    assert len(samples) == 3
    assert len(samples[0]["text"]) == 300


def test_zero_matches_returns_suggestions(fake_driver, listing):
    result = _dry_run(fake_driver({URL: listing(2)}), ".does-not-exist")
    assert result.status_code == 404
    assert not result.success
    assert result.payload["data"]["count"] == 0
    assert any(item["selector"] == "a" for item in result.payload["suggestions"])


def test_fetch_failure_maps_to_status(fake_driver):
    result = _dry_run(fake_driver({}), "h1")
    assert result.status_code == 502
    assert result.payload["error"]["type"] == "http"
    assert result.payload["error"]["http_status"] == 404


def test_request_validation():
    with pytest.raises(ValidationError):
        validate_dry_run_request("", "h1")
    with pytest.raises(ValidationError):
        validate_dry_run_request("ftp://example.com", "h1")
    with pytest.raises(ValidationError):
        validate_dry_run_request(URL, "div[")
    assert validate_dry_run_request(URL, " h1 ") == (URL, "h1")
