from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from ..drivers import parse_driver_kind
from ..errors import ValidationError
from ..history import record_operation
from ..models import SELECTOR_FIELDS, DriverKind, Source
from ..selectors import coerce_selector_list, validate_selectors
from ..storage import get_source, get_source_by_name, list_sources
from ..utils import json_dumps, utc_now_iso


def source_to_dict(source: Source) -> dict[str, Any]:
    return {
        "id": source.id,
        "name": source.name,
        "base_url": source.base_url,
        "selectors": {name: source.selector_list(name) for name in SELECTOR_FIELDS},
        "driver_type": source.driver_type.value,
        "active": source.active,
        "created_at": source.created_at,
        "updated_at": source.updated_at,
    }


def list_source_dicts(conn: Any, active_only: bool = False) -> list[dict[str, Any]]:
    return [source_to_dict(source) for source in list_sources(conn, active_only=active_only)]


def create_source(
    conn: Any,
    payload: dict[str, Any],
    *,
    default_driver: str = DriverKind.PLAYWRIGHT.value,
) -> Source:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    if get_source_by_name(conn, name) is not None:
        raise ValidationError(f"source {name!r} already exists")
    base_url = _validate_base_url(payload.get("base_url") or payload.get("url"))
    selectors = _selectors_from_payload(payload, {})
    if not selectors["list"]:
        raise ValidationError("list selector is required")
    driver = parse_driver_kind(_driver_value(payload) or default_driver)
    active = bool(payload.get("active", True))
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO news_sources
            (name, base_url, list_selectors_json, title_selectors_json, lead_selectors_json,
             content_selectors_json, link_selectors_json, router_selectors_json, driver_type,
             active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            name,
            base_url,
            *(json_dumps(selectors[field]) for field in SELECTOR_FIELDS),
            driver.value,
            1 if active else 0,
            now,
            now,
        ),
    )
    source_id = int(cursor.fetchone()[0])
    conn.commit()
    record_operation(conn, "source", source_id, "create", "success", name)
    return get_source(conn, source_id)  # type: ignore[return-value]


def update_source(conn: Any, source_id: int, payload: dict[str, Any]) -> Source:
    current = get_source(conn, source_id)
    if current is None:
        raise LookupError("source_not_found")
    name = str(payload.get("name") or current.name).strip()
    if name != current.name:
        existing = get_source_by_name(conn, name)
        if existing is not None and existing.id != source_id:
            raise ValidationError(f"source {name!r} already exists")
    base_url = _validate_base_url(payload.get("base_url") or payload.get("url") or current.base_url)
    selectors = _selectors_from_payload(payload, current.selectors)
    if not selectors["list"]:
        raise ValidationError("list selector is required")
    driver_value = _driver_value(payload)
    driver = parse_driver_kind(driver_value) if driver_value else current.driver_type
    active = bool(payload.get("active", current.active))
    conn.execute(
        """
        UPDATE news_sources
        SET name = ?, base_url = ?, list_selectors_json = ?, title_selectors_json = ?,
            lead_selectors_json = ?, content_selectors_json = ?, link_selectors_json = ?,
            router_selectors_json = ?, driver_type = ?, active = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            name,
            base_url,
            *(json_dumps(selectors[field]) for field in SELECTOR_FIELDS),
            driver.value,
            1 if active else 0,
            utc_now_iso(),
            source_id,
        ),
    )
    conn.commit()
    record_operation(conn, "source", source_id, "update", "success", name)
    return get_source(conn, source_id)  # type: ignore[return-value]


def delete_source(conn: Any, source_id: int) -> None:
    source = get_source(conn, source_id)
    if source is None:
        raise LookupError("source_not_found")
    with conn.transaction():
        conn.execute("DELETE FROM schedules WHERE source_id = ?", (source_id,))
        conn.execute("DELETE FROM articles WHERE source_id = ?", (source_id,))
        conn.execute("DELETE FROM news_sources WHERE id = ?", (source_id,))
    record_operation(conn, "source", source_id, "delete", "success", source.name)


def _validate_base_url(value: object) -> str:
    url = str(value or "").strip()
    if not url:
        raise ValidationError("base_url is required")
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(f"base_url must be an absolute http(s) URL: {url!r}")
    return url


def _driver_value(payload: dict[str, Any]) -> str | None:
    value = payload.get("driver_type") or payload.get("driverType") or payload.get("driver")
    return str(value) if value else None


def _selectors_from_payload(
    payload: dict[str, Any], current: dict[str, list[str]]
) -> dict[str, list[str]]:
    """Collect selector lists from a nested ``selectors`` object or flat keys.

    Flat keys follow the ``<field>_selector`` (single value) and
    ``<field>_selectors`` (list) convention; the single value is tried first.
    Fields absent from the payload keep their current selectors.
    """
    nested = payload.get("selectors")
    if nested is not None and not isinstance(nested, dict):
        raise ValidationError("selectors must be an object keyed by field")
    nested = nested or {}
    unknown = sorted(set(nested) - set(SELECTOR_FIELDS))
    if unknown:
        raise ValidationError(f"unknown selector fields: {', '.join(unknown)}")
    collected: dict[str, object] = {}
    for field in SELECTOR_FIELDS:
        single_key = f"{field}_selector"
        list_key = f"{field}_selectors"
        if field in nested:
            collected[field] = nested[field]
        elif single_key in payload or list_key in payload:
            merged: list[str] = []
            for item in coerce_selector_list(payload.get(single_key)) + coerce_selector_list(
                payload.get(list_key)
            ):
                if item not in merged:
                    merged.append(item)
            collected[field] = merged
        else:
            collected[field] = list(current.get(field) or [])
    return validate_selectors(collected)
