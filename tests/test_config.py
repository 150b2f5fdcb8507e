import copy

import pytest
import yaml

from newscrawl.config import (
    DEFAULT_CONFIG,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    load_sources_file,
    set_runtime_config,
)


def test_bootstrap_creates_runtime_config(conn):
    cfg = bootstrap_runtime_config(conn)
    assert cfg == DEFAULT_CONFIG


def test_get_runtime_config_after_set(conn):
    custom = copy.deepcopy(DEFAULT_CONFIG)
    custom["crawl"]["article_limit"] = 25
    set_runtime_config(conn, custom)
    assert get_runtime_config(conn)["crawl"]["article_limit"] == 25
    assert load_runtime_config(conn).crawl.article_limit == 25


def test_set_runtime_config_rejects_invalid(conn):
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, {"app": {"name": "Bad"}})
    assert "Invalid config.runtime" in str(excinfo.value)

    wrong_type = copy.deepcopy(DEFAULT_CONFIG)
    wrong_type["jobs"]["max_attempts"] = "three"
    wrong_type["drivers"]["unknown"] = True
    with pytest.raises(ConfigError) as excinfo:
        set_runtime_config(conn, wrong_type)
    assert "config.runtime.jobs.max_attempts must be an integer" in str(excinfo.value)
    assert "unknown config.runtime.drivers.unknown" in str(excinfo.value)


def test_yaml_overlay_is_merged_on_bootstrap(conn, tmp_path, monkeypatch):
    overlay = tmp_path / "newscrawl.yml"
    overlay.write_text(
        yaml.safe_dump({"crawl": {"max_depth": 2}, "workers": {"concurrency": 8}}),
        encoding="utf-8",
    )
    monkeypatch.setenv("NC_CONFIG_PATH", str(overlay))
    config = load_runtime_config(conn)
    assert config.crawl.max_depth == 2
    assert config.workers.concurrency == 8
    assert config.crawl.article_limit == DEFAULT_CONFIG["crawl"]["article_limit"]


def test_missing_overlay_is_an_error(conn, tmp_path, monkeypatch):
    monkeypatch.setenv("NC_CONFIG_PATH", str(tmp_path / "missing.yml"))
    with pytest.raises(ConfigError):
        bootstrap_runtime_config(conn)


def test_load_sources_file_accepts_list_or_mapping(tmp_path):
    as_list = tmp_path / "list.yml"
    as_list.write_text(yaml.safe_dump([{"name": "A"}]), encoding="utf-8")
    as_mapping = tmp_path / "mapping.yml"
    as_mapping.write_text(yaml.safe_dump({"sources": [{"name": "B"}]}), encoding="utf-8")
    assert load_sources_file(str(as_list)) == [{"name": "A"}]
    assert load_sources_file(str(as_mapping)) == [{"name": "B"}]

    bad = tmp_path / "bad.yml"
    bad.write_text("- just a string\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_sources_file(str(bad))
    with pytest.raises(ConfigError):
        load_sources_file(str(tmp_path / "nope.yml"))
