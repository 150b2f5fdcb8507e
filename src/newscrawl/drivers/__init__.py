from __future__ import annotations

import logging
from typing import Any

from ..errors import ValidationError
from ..models import DRIVER_ALIASES, DriverKind
from .base import DEFAULT_USER_AGENT, Driver, FetchOptions, FetchResult, parse_html
from .static import StaticDriver

__all__ = [
    "Driver",
    "FetchOptions",
    "FetchResult",
    "StaticDriver",
    "create_driver",
    "parse_driver_kind",
    "parse_html",
]


def parse_driver_kind(value: object) -> DriverKind:
    if isinstance(value, DriverKind):
        return value
    name = str(value or "").strip().lower()
    if name in DRIVER_ALIASES:
        return DRIVER_ALIASES[name]
    try:
        return DriverKind(name)
    except ValueError as exc:
        allowed = sorted([kind.value for kind in DriverKind] + list(DRIVER_ALIASES))
        raise ValidationError(
            f"unknown driver type {value!r}; expected one of {', '.join(allowed)}"
        ) from exc


def create_driver(
    kind: DriverKind | str,
    *,
    headless: bool = True,
    user_agent: str = DEFAULT_USER_AGENT,
    browser_pool: Any | None = None,
    logger: logging.Logger | None = None,
) -> Driver:
    """Build the driver for a source's driver kind.

    Browser backends are imported on demand so the static path works without
    the ``browsers`` extra installed.
    """
    kind = parse_driver_kind(kind)
    logger = logger or logging.getLogger("newscrawl.drivers")
    if kind is DriverKind.STATIC:
        return StaticDriver(logger=logger)
    if kind is DriverKind.PLAYWRIGHT:
        from .playwright_driver import PlaywrightDriver

        return PlaywrightDriver(
            browser_pool, headless=headless, user_agent=user_agent, logger=logger
        )
    from .selenium_driver import SeleniumDriver

    return SeleniumDriver(headless=headless, user_agent=user_agent, logger=logger)
