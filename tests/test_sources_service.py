import pytest

from newscrawl.errors import ValidationError
from newscrawl.models import DriverKind
from newscrawl.scheduler import Scheduler
from newscrawl.services.schedules_service import create_schedule
from newscrawl.services.selector_configs_service import (
    create_selector_config,
    delete_selector_config,
    list_selector_configs,
    update_selector_config,
)
from newscrawl.services.sources_service import (
    create_source,
    delete_source,
    source_to_dict,
    update_source,
)
from newscrawl.storage import count_table, get_source


def test_create_source_from_flat_selector_keys(conn):
    source = create_source(
        conn,
        {
            "name": "Flat",
            "url": "https://flat.example.com",
            "list_selector": ".item",
            "title_selector": "h2",
            "title_selectors": ["h2", ".headline"],
            "content_selectors": '[".body", "article p"]',
            "driver": "cheerio",
        },
    )
    assert source.driver_type is DriverKind.STATIC
    assert source.selector_list("title") == ["h2", ".headline"]
    assert source.selector_list("content") == [".body", "article p"]
    assert source.selector_list("lead") == []
    assert source_to_dict(source)["selectors"]["list"] == [".item"]


def test_create_source_validation(conn, make_source):
    make_source("Taken")
    cases = [
        {"name": "", "base_url": "https://a.example.com", "list_selector": "a"},
        {"name": "Taken", "base_url": "https://a.example.com", "list_selector": "a"},
        {"name": "NoUrl", "base_url": "not-a-url", "list_selector": "a"},
        {"name": "NoList", "base_url": "https://a.example.com"},
        {"name": "BadSel", "base_url": "https://a.example.com", "list_selector": "a["},
        {"name": "BadDriver", "base_url": "https://a.example.com", "list_selector": "a", "driver_type": "lynx"},
        {"name": "Unknown", "base_url": "https://a.example.com", "selectors": {"list": ["a"], "foo": ["b"]}},
    ]
    for payload in cases:
        with pytest.raises(ValidationError):
            create_source(conn, payload)


def test_update_keeps_unspecified_selectors(conn, make_source):
    source = make_source()
    updated = update_source(conn, source.id, {"lead_selector": ".summary", "driver_type": "selenium"})
    assert updated.selector_list("lead") == [".summary"]
    assert updated.selector_list("list") == [".pb-3 a"]
    assert updated.driver_type is DriverKind.SELENIUM
    with pytest.raises(LookupError):
        update_source(conn, 999, {"name": "x"})


def test_delete_source_removes_schedules(conn, make_source):
    source = make_source()
    create_schedule(
        conn, {"source_id": source.id, "cron_expression": "0 * * * *"}, scheduler=Scheduler()
    )
    delete_source(conn, source.id)
    assert get_source(conn, source.id) is None
    assert count_table(conn, "schedules") == 0
    with pytest.raises(LookupError):
        delete_source(conn, source.id)


def test_selector_config_crud(conn):
    created = create_selector_config(
        conn,
        {"name": "blog", "url": "https://blog.example.com", "selectors": {"list": ".post a"}},
    )
    assert created.selectors == {"list": [".post a"]}
    with pytest.raises(ValidationError):
        create_selector_config(conn, {"name": "blog"})
    with pytest.raises(ValidationError):
        create_selector_config(conn, {"name": "other", "selectors": {"nope": "a"}})

    updated = update_selector_config(conn, created.id, {"description": "Blog layout"})
    assert updated.description == "Blog layout"
    assert updated.selectors == {"list": [".post a"]}
    assert [item.name for item in list_selector_configs(conn)] == ["blog"]

    delete_selector_config(conn, created.id)
    with pytest.raises(LookupError):
        delete_selector_config(conn, created.id)
