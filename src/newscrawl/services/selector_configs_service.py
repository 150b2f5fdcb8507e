from __future__ import annotations

from typing import Any

from ..drivers import parse_driver_kind
from ..errors import ValidationError
from ..history import record_operation
from ..models import SELECTOR_FIELDS, DriverKind, SelectorConfig
from ..selectors import validate_selectors
from ..utils import json_dumps, json_loads, utc_now_iso

COLUMNS = "id, name, url, selectors_json, driver_type, description, created_at, updated_at"


def config_to_dict(config: SelectorConfig) -> dict[str, Any]:
    return {
        "id": config.id,
        "name": config.name,
        "url": config.url,
        "selectors": config.selectors,
        "driver_type": config.driver_type.value,
        "description": config.description,
        "created_at": config.created_at,
        "updated_at": config.updated_at,
    }


def list_selector_configs(conn: Any) -> list[SelectorConfig]:
    cursor = conn.execute(f"SELECT {COLUMNS} FROM selector_configs ORDER BY name")
    return [_row_to_config(row) for row in cursor.fetchall()]


def get_selector_config(conn: Any, config_id: int) -> SelectorConfig | None:
    cursor = conn.execute(f"SELECT {COLUMNS} FROM selector_configs WHERE id = ?", (config_id,))
    row = cursor.fetchone()
    return _row_to_config(row) if row else None


def create_selector_config(conn: Any, payload: dict[str, Any]) -> SelectorConfig:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    if conn.execute("SELECT 1 FROM selector_configs WHERE name = ?", (name,)).fetchone():
        raise ValidationError(f"selector config {name!r} already exists")
    selectors = _validate(payload.get("selectors"))
    driver = parse_driver_kind(payload.get("driver_type") or DriverKind.PLAYWRIGHT.value)
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO selector_configs
            (name, url, selectors_json, driver_type, description, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            name,
            (payload.get("url") or None),
            json_dumps(selectors),
            driver.value,
            payload.get("description"),
            now,
            now,
        ),
    )
    config_id = int(cursor.fetchone()[0])
    conn.commit()
    record_operation(conn, "selector_config", config_id, "create", "success", name)
    return get_selector_config(conn, config_id)  # type: ignore[return-value]


def update_selector_config(conn: Any, config_id: int, payload: dict[str, Any]) -> SelectorConfig:
    current = get_selector_config(conn, config_id)
    if current is None:
        raise LookupError("selector_config_not_found")
    name = str(payload.get("name") or current.name).strip()
    if name != current.name and conn.execute(
        "SELECT 1 FROM selector_configs WHERE name = ? AND id != ?", (name, config_id)
    ).fetchone():
        raise ValidationError(f"selector config {name!r} already exists")
    selectors = (
        _validate(payload.get("selectors")) if "selectors" in payload else current.selectors
    )
    driver = (
        parse_driver_kind(payload["driver_type"])
        if payload.get("driver_type")
        else current.driver_type
    )
    conn.execute(
        """
        UPDATE selector_configs
        SET name = ?, url = ?, selectors_json = ?, driver_type = ?, description = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            name,
            payload.get("url", current.url),
            json_dumps(selectors),
            driver.value,
            payload.get("description", current.description),
            utc_now_iso(),
            config_id,
        ),
    )
    conn.commit()
    record_operation(conn, "selector_config", config_id, "update", "success", name)
    return get_selector_config(conn, config_id)  # type: ignore[return-value]


def delete_selector_config(conn: Any, config_id: int) -> None:
    if get_selector_config(conn, config_id) is None:
        raise LookupError("selector_config_not_found")
    conn.execute("DELETE FROM selector_configs WHERE id = ?", (config_id,))
    conn.commit()
    record_operation(conn, "selector_config", config_id, "delete")


def _validate(value: object) -> dict[str, list[str]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("selectors must be an object keyed by field")
    unknown = sorted(set(value) - set(SELECTOR_FIELDS))
    if unknown:
        raise ValidationError(f"unknown selector fields: {', '.join(unknown)}")
    return validate_selectors(value)


def _row_to_config(row: tuple) -> SelectorConfig:
    config_id, name, url, selectors_json, driver_type, description, created_at, updated_at = row
    return SelectorConfig(
        id=int(config_id),
        name=name,
        url=url,
        selectors=json_loads(selectors_json, {}) or {},
        driver_type=DriverKind(driver_type),
        description=description,
        created_at=created_at,
        updated_at=updated_at,
    )
