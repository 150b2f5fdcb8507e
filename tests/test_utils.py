import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from newscrawl.utils import (
    configure_logging,
    is_crawlable_href,
    json_dumps,
    normalize_text,
    normalize_url,
    parse_iso,
    same_origin,
    to_iso,
)


def test_normalize_url_strips_tracking_and_fragment():
    url = "HTTPS://Example.com/News/Story/?utm_source=x&b=2&a=1#comments"
    assert normalize_url(url) == "https://example.com/News/Story?a=1&b=2"


def test_normalize_url_resolves_relative_links():
    assert normalize_url("../world/1", base_url="https://example.com/news/") == (
        "https://example.com/world/1"
    )
    assert normalize_url("/", base_url="https://example.com/news/") == "https://example.com"


def test_normalize_url_keeps_params_when_stripping_disabled():
    url = "https://example.com/a?utm_source=x"
    assert normalize_url(url, strip_tracking_params=False) == url
    assert normalize_url(url, tracking_params=["ref"]) == url


def test_is_crawlable_href():
    assert is_crawlable_href("/news/1")
    assert is_crawlable_href("/")
    for href in (None, "", "#", "#top", "javascript:void(0)", "mailto:a@b.c", "tel:123"):
        assert not is_crawlable_href(href)


def test_same_origin_and_text():
    assert same_origin("https://example.com/a", "https://EXAMPLE.com/b")
    assert not same_origin("https://example.com/a", "http://example.com/a")
    assert normalize_text("  a\n\t b  ") == "a b"


def test_iso_timestamps_sort_as_text():
    early = datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
    late = early + timedelta(microseconds=1)
    assert to_iso(early) < to_iso(late)
    assert len(to_iso(early)) == len(to_iso(late))
    assert parse_iso(to_iso(early)) == early
    assert parse_iso("2025-01-01T10:00:00Z") == early


class Color(Enum):
    RED = "red"


@dataclass
class Payload:
    value: str


def test_json_dumps_handles_supported_types():
    decoded = json.loads(
        json_dumps(
            {
                "dataclass": Payload(value="ok"),
                "enum": Color.RED,
                "when": datetime(2025, 1, 1, tzinfo=timezone.utc),
                "tuple": ("x", "y"),
            }
        )
    )
    assert decoded["dataclass"] == {"value": "ok"}
    assert decoded["enum"] == "red"
    assert decoded["when"].startswith("2025-01-01T00:00:00")
    assert decoded["tuple"] == ["x", "y"]


def test_configure_logging_idempotent(tmp_path, monkeypatch):
    log_file = tmp_path / "app.log"
    monkeypatch.setenv("NC_LOG_LEVEL", "INFO")
    monkeypatch.setenv("NC_LOG_FILE", str(log_file))
    monkeypatch.setenv("NC_LOG_LEVELS", "newscrawl.pipeline=DEBUG")

    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        root.handlers = []
        configure_logging("newscrawl.worker")
        configure_logging("newscrawl.worker")

        stream_handlers = [
            handler
            for handler in root.handlers
            if isinstance(handler, logging.StreamHandler)
            and not isinstance(handler, logging.FileHandler)
        ]
        file_handlers = [
            handler for handler in root.handlers if isinstance(handler, logging.FileHandler)
        ]
        assert len(stream_handlers) == 1
        assert stream_handlers[0].stream is sys.stdout
        assert len(file_handlers) == 1
        assert os.path.abspath(file_handlers[0].baseFilename) == os.path.abspath(str(log_file))
        assert logging.getLogger("newscrawl.pipeline").level == logging.DEBUG
    finally:
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler):
                handler.close()
        root.handlers = original_handlers
        root.setLevel(original_level)
        logging.getLogger("newscrawl.pipeline").setLevel(logging.NOTSET)
