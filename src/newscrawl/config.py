from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class HttpConfig:
    user_agent: str


@dataclass(frozen=True)
class DriversConfig:
    default_kind: str
    headless: bool
    browser_pool_size: int
    wait_until: str
    selector_test_timeout_ms: int


@dataclass(frozen=True)
class CrawlConfig:
    article_limit: int
    max_depth: int
    full_content: bool
    follow_links: bool
    timeout_ms: int
    fetch_concurrency: int
    max_links_per_page: int
    max_followed_per_level: int
    min_content_chars: int
    min_content_words: int


@dataclass(frozen=True)
class ThrottleConfig:
    min_delay_ms: int
    max_delay_ms: int
    backoff_multiplier: float
    failure_threshold: int
    recovery_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    max_attempts: int
    backoff_base_seconds: int
    backoff_max_seconds: int


@dataclass(frozen=True)
class SchedulerConfig:
    tick_seconds: int


@dataclass(frozen=True)
class WorkersConfig:
    concurrency: int
    poll_seconds: float


@dataclass(frozen=True)
class UrlNormalizationConfig:
    strip_tracking_params: bool
    tracking_params: list[str]


@dataclass(frozen=True)
class LogsConfig:
    retention_days: int


@dataclass(frozen=True)
class Config:
    http: HttpConfig
    drivers: DriversConfig
    crawl: CrawlConfig
    throttle: ThrottleConfig
    jobs: JobsConfig
    scheduler: SchedulerConfig
    workers: WorkersConfig
    url_normalization: UrlNormalizationConfig
    logs: LogsConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "http": {
        "user_agent": "newscrawl/0.1 (+https://github.com/newscrawl/newscrawl)",
    },
    "drivers": {
        "default_kind": "playwright",
        "headless": True,
        "browser_pool_size": 3,
        "wait_until": "networkidle",
        "selector_test_timeout_ms": 65000,
    },
    "crawl": {
        "article_limit": 10,
        "max_depth": 0,
        "full_content": True,
        "follow_links": True,
        "timeout_ms": 300000,
        "fetch_concurrency": 3,
        "max_links_per_page": 5,
        "max_followed_per_level": 3,
        "min_content_chars": 20,
        "min_content_words": 10,
    },
    "throttle": {
        "min_delay_ms": 1000,
        "max_delay_ms": 30000,
        "backoff_multiplier": 1.5,
        "failure_threshold": 5,
        "recovery_seconds": 300,
    },
    "jobs": {
        "lock_timeout_seconds": 1800,
        "max_attempts": 3,
        "backoff_base_seconds": 5,
        "backoff_max_seconds": 300,
    },
    "scheduler": {
        "tick_seconds": 60,
    },
    "workers": {
        "concurrency": 3,
        "poll_seconds": 1.0,
    },
    "url_normalization": {
        "strip_tracking_params": True,
        "tracking_params": [
            "utm_source",
            "utm_medium",
            "utm_campaign",
            "utm_term",
            "utm_content",
            "fbclid",
            "gclid",
        ],
    },
    "logs": {
        "retention_days": 7,
    },
}

CONFIG_KEY = "config.runtime"


def load_overlay(path: str | None = None) -> dict[str, Any]:
    path = path or os.environ.get("NC_CONFIG_PATH")
    if not path:
        return {}
    if not os.path.exists(path):
        raise ConfigError(f"config file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def load_sources_file(path: str) -> list[dict[str, Any]]:
    """Read source definitions from YAML: a list, or a mapping with a ``sources`` list."""
    if not os.path.exists(path):
        raise ConfigError(f"sources file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or []
        except yaml.YAMLError as exc:
            raise ConfigError(f"{path} is not valid YAML: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("sources") or []
    if not isinstance(data, list):
        raise ConfigError(f"{path} must contain a list of sources")
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ConfigError(f"{path}: source #{index + 1} must be a mapping")
    return data


def default_runtime_config(overlay: dict[str, Any] | None = None) -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    if overlay:
        _deep_merge(cfg, overlay)
    return cfg


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, default_runtime_config(load_overlay()))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    return errors


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        elif value < 0:
            errors.append(f"{path} must not be negative")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def build_config(cfg: dict[str, Any]) -> Config:
    http_cfg = cfg.get("http") or {}
    drivers_cfg = cfg.get("drivers") or {}
    crawl_cfg = cfg.get("crawl") or {}
    throttle_cfg = cfg.get("throttle") or {}
    jobs_cfg = cfg.get("jobs") or {}
    url_norm_cfg = cfg.get("url_normalization") or {}

    return Config(
        http=HttpConfig(
            user_agent=str(http_cfg.get("user_agent")),
        ),
        drivers=DriversConfig(
            default_kind=str(drivers_cfg.get("default_kind")),
            headless=bool(drivers_cfg.get("headless")),
            browser_pool_size=int(drivers_cfg.get("browser_pool_size")),
            wait_until=str(drivers_cfg.get("wait_until")),
            selector_test_timeout_ms=int(drivers_cfg.get("selector_test_timeout_ms")),
        ),
        crawl=CrawlConfig(
            article_limit=int(crawl_cfg.get("article_limit")),
            max_depth=int(crawl_cfg.get("max_depth")),
            full_content=bool(crawl_cfg.get("full_content")),
            follow_links=bool(crawl_cfg.get("follow_links")),
            timeout_ms=int(crawl_cfg.get("timeout_ms")),
            fetch_concurrency=int(crawl_cfg.get("fetch_concurrency")),
            max_links_per_page=int(crawl_cfg.get("max_links_per_page")),
            max_followed_per_level=int(crawl_cfg.get("max_followed_per_level")),
            min_content_chars=int(crawl_cfg.get("min_content_chars")),
            min_content_words=int(crawl_cfg.get("min_content_words")),
        ),
        throttle=ThrottleConfig(
            min_delay_ms=int(throttle_cfg.get("min_delay_ms")),
            max_delay_ms=int(throttle_cfg.get("max_delay_ms")),
            backoff_multiplier=float(throttle_cfg.get("backoff_multiplier")),
            failure_threshold=int(throttle_cfg.get("failure_threshold")),
            recovery_seconds=int(throttle_cfg.get("recovery_seconds")),
        ),
        jobs=JobsConfig(
            lock_timeout_seconds=int(jobs_cfg.get("lock_timeout_seconds")),
            max_attempts=int(jobs_cfg.get("max_attempts")),
            backoff_base_seconds=int(jobs_cfg.get("backoff_base_seconds")),
            backoff_max_seconds=int(jobs_cfg.get("backoff_max_seconds")),
        ),
        scheduler=SchedulerConfig(
            tick_seconds=int((cfg.get("scheduler") or {}).get("tick_seconds")),
        ),
        workers=WorkersConfig(
            concurrency=int((cfg.get("workers") or {}).get("concurrency")),
            poll_seconds=float((cfg.get("workers") or {}).get("poll_seconds")),
        ),
        url_normalization=UrlNormalizationConfig(
            strip_tracking_params=bool(url_norm_cfg.get("strip_tracking_params")),
            tracking_params=list(url_norm_cfg.get("tracking_params")),
        ),
        logs=LogsConfig(
            retention_days=int((cfg.get("logs") or {}).get("retention_days")),
        ),
    )


def _deep_merge(target: dict[str, Any], overlay: dict[str, Any]) -> None:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
