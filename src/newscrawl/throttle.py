"""Per-domain politeness for crawls.

Requests to one domain are spaced at least ``min_delay`` seconds apart; a
failing domain gets a growing delay and, after ``failure_threshold``
consecutive failures, an open circuit that rejects requests outright until
``recovery_seconds`` have passed. One :class:`Throttle` is shared by every
worker thread of a process, so all state sits behind a ``threading.Lock`` and
only the sleep happens on the caller's event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import urlsplit

from .config import ThrottleConfig
from .drivers.base import Driver, FetchOptions, FetchResult
from .errors import CircuitOpen, FetchError
from .utils import log_event

Clock = Callable[[], float]


def domain_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class DomainRateLimiter:
    """Thread-safe minimum spacing between requests to the same domain.

    Each caller reserves the next free slot for its domain under the lock and
    then sleeps until that slot, so concurrent fetches queue up instead of
    all waking at once.
    """

    def __init__(
        self,
        min_delay: float = 1.0,
        *,
        max_delay: float = 30.0,
        backoff_multiplier: float = 1.5,
        clock: Clock = time.monotonic,
    ) -> None:
        self.min_delay = min_delay
        self.max_delay = max(max_delay, min_delay)
        self.backoff_multiplier = backoff_multiplier
        self._clock = clock
        self._delays: dict[str, float] = {}
        self._next_slot: dict[str, float] = {}
        self._lock = threading.Lock()

    def delay_for(self, domain: str) -> float:
        with self._lock:
            return self._delays.get(domain, self.min_delay)

    def reserve(self, domain: str) -> float:
        """Claim the next request slot for ``domain``; returns seconds until it opens."""
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(domain, now))
            self._next_slot[domain] = slot + self._delays.get(domain, self.min_delay)
            return slot - now

    async def wait(self, domain: str) -> float:
        delay = self.reserve(domain)
        if delay > 0:
            await asyncio.sleep(delay)
        return delay

    def record_success(self, domain: str) -> None:
        with self._lock:
            self._delays.pop(domain, None)

    def record_failure(self, domain: str) -> None:
        with self._lock:
            current = self._delays.get(domain, self.min_delay)
            self._delays[domain] = min(current * self.backoff_multiplier, self.max_delay)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    opened_at: float = 0.0


class DomainCircuitBreaker:
    """Stops requests to a domain that keeps failing.

    closed -> open after ``failure_threshold`` consecutive failures;
    open -> half-open once ``recovery_seconds`` have elapsed; a success in
    half-open closes the circuit and a failure opens it again. A threshold of
    zero disables the breaker.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_seconds: float = 300.0,
        *,
        clock: Clock = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._logger = logger or logging.getLogger("newscrawl.throttle")
        self._circuits: dict[str, _Circuit] = {}
        self._lock = threading.Lock()

    def state(self, domain: str) -> CircuitState:
        with self._lock:
            circuit = self._circuits.get(domain)
            return circuit.state if circuit else CircuitState.CLOSED

    def before_request(self, domain: str, url: str | None = None) -> None:
        with self._lock:
            circuit = self._circuits.get(domain)
            if circuit is None or circuit.state is not CircuitState.OPEN:
                return
            elapsed = self._clock() - circuit.opened_at
            if elapsed < self.recovery_seconds:
                remaining = self.recovery_seconds - elapsed
                raise CircuitOpen(
                    f"circuit open for {domain}; retry in {remaining:.0f}s", url=url
                )
            circuit.state = CircuitState.HALF_OPEN
        log_event(self._logger, logging.INFO, "circuit_half_open", domain=domain)

    def record_success(self, domain: str) -> None:
        with self._lock:
            circuit = self._circuits.pop(domain, None)
        if circuit is not None and circuit.state is not CircuitState.CLOSED:
            log_event(self._logger, logging.INFO, "circuit_closed", domain=domain)

    def record_failure(self, domain: str) -> None:
        if self.failure_threshold <= 0:
            return
        with self._lock:
            circuit = self._circuits.setdefault(domain, _Circuit())
            circuit.failures += 1
            if circuit.state is CircuitState.OPEN:
                return
            if circuit.state is not CircuitState.HALF_OPEN and circuit.failures < self.failure_threshold:
                return
            circuit.state = CircuitState.OPEN
            circuit.opened_at = self._clock()
            failures = circuit.failures
        log_event(self._logger, logging.WARNING, "circuit_opened", domain=domain, failures=failures)


def counts_against_domain(exc: FetchError) -> bool:
    """Whether a fetch error says something about the site's health.

    A 404 is a property of one link; throttling, server errors and anything
    below HTTP are not.
    """
    if isinstance(exc, CircuitOpen):
        return False
    if exc.kind == "http":
        return exc.status is not None and (exc.status >= 500 or exc.status == 429)
    return True


class Throttle:
    def __init__(
        self,
        limiter: DomainRateLimiter | None = None,
        breaker: DomainCircuitBreaker | None = None,
    ) -> None:
        self.limiter = limiter or DomainRateLimiter(0.0)
        self.breaker = breaker or DomainCircuitBreaker(0)

    @classmethod
    def from_config(
        cls, config: ThrottleConfig, logger: logging.Logger | None = None
    ) -> "Throttle":
        return cls(
            DomainRateLimiter(
                config.min_delay_ms / 1000,
                max_delay=config.max_delay_ms / 1000,
                backoff_multiplier=config.backoff_multiplier,
            ),
            DomainCircuitBreaker(
                config.failure_threshold, config.recovery_seconds, logger=logger
            ),
        )

    def wrap(self, driver: Driver) -> "ThrottledDriver":
        return ThrottledDriver(driver, self)


class ThrottledDriver(Driver):
    """Applies a :class:`Throttle` around every fetch of the wrapped driver."""

    def __init__(self, driver: Driver, throttle: Throttle) -> None:
        self._driver = driver
        self._throttle = throttle
        self.kind = driver.kind

    async def fetch(self, url: str, options: FetchOptions | None = None) -> FetchResult:
        domain = domain_of(url)
        self._throttle.breaker.before_request(domain, url)
        await self._throttle.limiter.wait(domain)
        try:
            page = await self._driver.fetch(url, options)
        except FetchError as exc:
            if counts_against_domain(exc):
                self._throttle.limiter.record_failure(domain)
                self._throttle.breaker.record_failure(domain)
            raise
        self._throttle.limiter.record_success(domain)
        self._throttle.breaker.record_success(domain)
        return page

    async def close(self) -> None:
        await self._driver.close()
