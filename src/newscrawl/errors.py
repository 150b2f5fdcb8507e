"""Error taxonomy shared by drivers, the extraction pipeline and the worker."""

from __future__ import annotations

FETCH_ERROR_KINDS = ("timeout", "network", "http", "driver")


class CrawlError(Exception):
    kind = "error"


class FetchError(CrawlError):
    """A page could not be obtained from a driver.

    ``kind`` is one of ``timeout``, ``network``, ``http`` or ``driver``.
    """

    kind = "network"

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status: int | None = None,
        kind: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.url = url
        self.status = status
        if kind is not None:
            if kind not in FETCH_ERROR_KINDS:
                raise ValueError(f"unknown fetch error kind: {kind}")
            self.kind = kind

    @property
    def error_name(self) -> str:
        return _KIND_NAMES.get(self.kind, type(self).__name__)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "error": self.error_name,
            "message": self.message,
            "url": self.url,
            "status": self.status,
        }


class NavigationTimeout(FetchError):
    kind = "timeout"


class NetworkError(FetchError):
    kind = "network"


class HttpError(FetchError):
    kind = "http"

    def __init__(self, status: int, *, url: str | None = None, message: str | None = None) -> None:
        super().__init__(message or f"HTTP {status}", url=url, status=status)


class DriverCrash(FetchError):
    kind = "driver"


class CircuitOpen(FetchError):
    """Requests to a domain are suspended after repeated failures."""

    kind = "network"

    @property
    def error_name(self) -> str:
        return "CircuitOpen"


_KIND_NAMES = {
    "timeout": "NavigationTimeout",
    "network": "NetworkError",
    "http": "HttpError",
    "driver": "DriverCrash",
}


class SelectorNotFound(CrawlError):
    kind = "selector"

    def __init__(self, url: str, fields: list[str] | None = None) -> None:
        self.url = url
        self.fields = fields or []
        super().__init__(f"no selector matched for {', '.join(self.fields) or 'fields'} at {url}")


class ValidationError(ValueError):
    """Configuration rejected at the API/CLI boundary (cron, selectors, limits)."""
