import asyncio
import copy
import threading

import pytest

from newscrawl.config import DEFAULT_CONFIG, load_runtime_config, set_runtime_config
from newscrawl.dedup import DedupStore
from newscrawl.errors import HttpError, ValidationError
from newscrawl.pipeline import (
    CrawlOptions,
    ExtractionPipeline,
    crawl_payload,
    payload_options,
    payload_source,
    validate_crawl_options,
)
from newscrawl.storage import list_articles

BASE = "https://news.example.com/"


def _detail(n, *links):
    anchors = "".join(f'<a href="{href}">link</a>' for href in links)
    return (
        f'<html><body><h1 class="prosed">Story {n}</h1>'
        f'<div class="pb-2">Full text of story {n}, as filed by the desk this morning.</div>'
        f"{anchors}</body></html>"
    )


def _run(conn, driver, source, **options):
    pipeline = ExtractionPipeline(driver, DedupStore(conn))
    return asyncio.run(pipeline.run(source, CrawlOptions(**options)))


def test_list_only_crawl_then_rerun_is_all_duplicates(conn, make_source, fake_driver, listing):
    source = make_source()
    driver = fake_driver({BASE: listing(12, unique=10)})

    first = _run(conn, driver, source, article_limit=10, max_depth=0, full_content=False)
    assert first.summary() == {"processed": 10, "new_articles": 10, "duplicates": 0, "errors": 0}
    assert first.total_found == 12
    assert driver.fetched == [BASE]

    second = _run(conn, driver, source, article_limit=10, max_depth=0, full_content=False)
    assert second.summary() == {"processed": 10, "new_articles": 0, "duplicates": 10, "errors": 0}

    articles, total = list_articles(conn, source_id=source.id)
    assert total == 10
    assert {article.link for article in articles} == {
        f"https://news.example.com/news/{n}" for n in range(10)
    }
    assert all(article.title.startswith("Headline") for article in articles)


def test_article_limit_caps_candidates(conn, make_source, fake_driver, listing):
    source = make_source()
    driver = fake_driver({BASE: listing(12)})
    result = _run(conn, driver, source, article_limit=5, full_content=False)
    assert result.processed == 5
    assert result.total_found == 12


def test_follow_links_stops_at_max_depth(conn, make_source, fake_driver, listing):
    source = make_source()
    pages = {
        BASE: listing(2),
        BASE + "news/0": _detail(0, "/deep/a", "https://other.example.org/x"),
        BASE + "news/1": _detail(1, "/deep/b", "/news/0"),
        BASE + "deep/a": _detail("a", "/deeper/z"),
        BASE + "deep/b": _detail("b"),
        BASE + "deeper/z": _detail("z"),
    }
    driver = fake_driver(pages)

    result = _run(conn, driver, source, max_depth=1, full_content=True, follow_links=True)

    assert result.summary() == {"processed": 4, "new_articles": 4, "duplicates": 0, "errors": 0}
    assert BASE + "deeper/z" not in driver.fetched
    assert not any("other.example.org" in url for url in driver.fetched)
    articles, _ = list_articles(conn, source_id=source.id)
    depths = {article.link: article.depth for article in articles}
    assert depths["https://news.example.com/deep/a"] == 1
    assert depths["https://news.example.com/news/0"] == 0
    # detail page content wins over the listing snippet
    assert {article.title for article in articles} >= {"Story 0", "Story 1"}


def test_depth_zero_never_follows(conn, make_source, fake_driver, listing):
    source = make_source()
    pages = {
        BASE: listing(1),
        BASE + "news/0": _detail(0, "/deep/a"),
        BASE + "deep/a": _detail("a"),
    }
    driver = fake_driver(pages)
    result = _run(conn, driver, source, max_depth=0, full_content=True)
    assert result.processed == 1
    assert driver.fetched == [BASE, BASE + "news/0"]


def test_candidate_failures_are_counted_not_raised(conn, make_source, fake_driver, listing):
    source = make_source()
    pages = {
        BASE: listing(3),
        BASE + "news/0": _detail(0),
        BASE + "news/1": "<html><body><p>no matching fields</p></body></html>",
    }
    driver = fake_driver(pages)
    result = _run(conn, driver, source, full_content=True)

    # news/1 falls back to the listing snippet, news/2 is missing
    assert result.summary() == {"processed": 2, "new_articles": 2, "duplicates": 0, "errors": 1}
    assert result.failures[0].kind == "HttpError"
    assert result.failures[0].url == BASE + "news/2"


def test_missing_fields_record_selector_not_found(conn, make_source, fake_driver):
    source = make_source()
    listing_page = '<div class="pb-3"><a href="/empty">   </a></div>'
    pages = {BASE: listing_page, BASE + "empty": "<html><body></body></html>"}
    result = _run(conn, fake_driver(pages), source, full_content=True)
    assert result.errors == 1
    assert result.failures[0].kind == "SelectorNotFound"


def test_list_page_failure_propagates(conn, make_source, fake_driver):
    source = make_source()
    with pytest.raises(HttpError):
        _run(conn, fake_driver({}), source)


def test_crawl_options_are_validated():
    for bad in (
        CrawlOptions(article_limit=0),
        CrawlOptions(article_limit=101),
        CrawlOptions(max_depth=6),
        CrawlOptions(timeout_ms=99),
        CrawlOptions(fetch_concurrency=0),
    ):
        with pytest.raises(ValidationError):
            validate_crawl_options(bad)
    assert validate_crawl_options(CrawlOptions(article_limit=100, max_depth=5)).max_depth == 5


def test_payload_round_trip_keeps_source_snapshot(make_source):
    source = make_source()
    payload = crawl_payload(source, CrawlOptions(article_limit=3), schedule_id=9)
    assert payload["schedule_id"] == 9
    assert payload_source(payload).selector_list("list") == [".pb-3 a"]
    assert payload_options(payload).article_limit == 3
    with pytest.raises(ValidationError):
        payload_source({})


def test_short_content_is_rejected(conn, make_source, fake_driver):
    source = make_source()
    listing_page = (
        '<div class="pb-3">'
        '<a href="/a"><span class="prosed">Read more</span><div class="pb-2">Share this</div></a>'
        '<a href="/b"><span class="prosed">Dots</span>'
        '<div class="pb-2">. . . . . . . . . . . .</div></a>'
        "</div>"
    )
    result = _run(conn, fake_driver({BASE: listing_page}), source, full_content=False)

    assert result.summary() == {"processed": 0, "new_articles": 0, "duplicates": 0, "errors": 2}
    assert {failure.kind for failure in result.failures} == {"InvalidContent"}
    assert list_articles(conn, source_id=source.id)[1] == 0


def test_detail_fetches_respect_fetch_concurrency(conn, make_source, fake_driver, listing):
    source = make_source()
    pages = {BASE: listing(6)}
    pages.update({BASE + f"news/{n}": _detail(n) for n in range(6)})
    driver = fake_driver(pages, delay=0.02)

    result = _run(conn, driver, source, full_content=True, fetch_concurrency=2)

    assert result.new_articles == 6
    assert driver.max_in_flight == 2


def test_article_inserts_run_off_the_event_loop(conn, make_source, fake_driver, listing):
    class RecordingStore(DedupStore):
        def __init__(self, conn):
            super().__init__(conn)
            self.threads = set()

        def check_and_insert(self, draft):
            self.threads.add(threading.get_ident())
            return super().check_and_insert(draft)

    source = make_source()
    store = RecordingStore(conn)
    loop_threads = set()

    async def crawl():
        loop_threads.add(threading.get_ident())
        pipeline = ExtractionPipeline(fake_driver({BASE: listing(3)}), store)
        return await pipeline.run(source, CrawlOptions(full_content=False))

    result = asyncio.run(crawl())
    assert result.new_articles == 3
    assert store.threads
    assert not store.threads & loop_threads


def test_followed_links_use_the_origin_after_redirect(conn, make_source, fake_driver, listing):
    source = make_source(base_url="http://news.example.com/")
    pages = {
        BASE: listing(1),
        BASE + "news/0": _detail(0, "/deep/a"),
        BASE + "deep/a": _detail("a"),
    }
    driver = fake_driver(pages, redirects={"http://news.example.com/": BASE})

    result = _run(conn, driver, source, max_depth=1, full_content=True)

    assert result.new_articles == 2
    assert driver.fetched == ["http://news.example.com/", BASE + "news/0", BASE + "deep/a"]


def test_config_user_agent_and_wait_until_reach_the_driver(conn, make_source, fake_driver, listing):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["http"]["user_agent"] = "newscrawl-bot/2.0"
    custom["drivers"]["wait_until"] = "domcontentloaded"
    set_runtime_config(conn, custom)
    options = CrawlOptions.from_config(load_runtime_config(conn), full_content=False)

    source = make_source()
    driver = fake_driver({BASE: listing(1)})
    asyncio.run(ExtractionPipeline(driver, DedupStore(conn)).run(source, options))

    assert driver.options[0].user_agent == "newscrawl-bot/2.0"
    assert driver.options[0].wait_until == "domcontentloaded"
