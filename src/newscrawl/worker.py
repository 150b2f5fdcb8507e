from __future__ import annotations

import argparse
import asyncio
import logging
import os
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable

from .config import Config, ConfigError, load_runtime_config
from .dedup import DedupStore
from .drivers import create_driver
from .drivers.base import Driver
from .errors import FetchError, NavigationTimeout, ValidationError
from .history import record_job_outcome
from .models import DriverKind, Job, Source
from .pipeline import CrawlOptions, CrawlResult, ExtractionPipeline, payload_options, payload_source
from .queue import RetryPolicy, claim_next_job, complete_job, fail_job
from .scheduler import Scheduler
from .storage import init_db
from .throttle import Throttle
from .utils import configure_logging, log_event, utc_now

DriverFactory = Callable[[DriverKind], Driver]


def _setup_logging() -> logging.Logger:
    return configure_logging("newscrawl.worker")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def run_crawl(
    conn: Any,
    config: Config,
    source: Source,
    options: CrawlOptions,
    driver: Driver,
    logger: logging.Logger | None = None,
    *,
    throttle: Throttle | None = None,
) -> CrawlResult:
    """Run one crawl under the job's hard deadline; the driver is always closed."""
    if throttle is not None:
        driver = throttle.wrap(driver)
    pipeline = ExtractionPipeline(
        driver,
        DedupStore(conn),
        tracking_params=config.url_normalization.tracking_params,
        strip_tracking_params=config.url_normalization.strip_tracking_params,
        logger=logging.getLogger("newscrawl.pipeline"),
    )
    try:
        return await asyncio.wait_for(
            pipeline.run(source, options), timeout=options.timeout_ms / 1000
        )
    except asyncio.TimeoutError as exc:
        raise NavigationTimeout(
            f"crawl of {source.base_url} exceeded timeout of {options.timeout_ms}ms",
            url=source.base_url,
        ) from exc
    finally:
        await driver.close()


def classify_error(exc: BaseException) -> tuple[str, str]:
    if isinstance(exc, FetchError):
        return exc.error_name, exc.message
    if isinstance(exc, ValidationError):
        return "ValidationError", str(exc)
    return type(exc).__name__, str(exc) or type(exc).__name__


def result_message(result: CrawlResult) -> str:
    return (
        f"found {result.total_found}, processed {result.processed}, "
        f"new {result.new_articles}, duplicates {result.duplicates}, errors {result.errors}"
    )


def record_crawl(
    conn: Any,
    *,
    job_id: str | None,
    source: Source,
    options: CrawlOptions,
    started_at: datetime,
    result: CrawlResult | None = None,
    error: BaseException | None = None,
) -> int:
    finished_at = utc_now()
    if error is None and result is not None:
        return record_job_outcome(
            conn,
            job_id=job_id,
            source_id=source.id,
            started_at=started_at,
            finished_at=finished_at,
            status="success",
            message=result_message(result),
            crawl_depth=options.max_depth,
            result=result.to_dict(),
        )
    error_kind, message = classify_error(error) if error is not None else ("Error", "no result")
    return record_job_outcome(
        conn,
        job_id=job_id,
        source_id=source.id,
        started_at=started_at,
        finished_at=finished_at,
        status="error",
        message=f"{error_kind}: {message}",
        crawl_depth=options.max_depth,
        error_kind=error_kind,
    )


class JobRunner:
    """Per-thread execution context: one event loop and one browser pool.

    Browser pages are bound to the loop that created them, so a pool is never
    shared across threads. The throttle is thread-safe and may be shared.
    """

    def __init__(
        self,
        config: Config,
        *,
        driver_factory: DriverFactory | None = None,
        throttle: Throttle | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._driver_factory = driver_factory
        self._throttle = throttle or Throttle.from_config(config.throttle)
        self._logger = logger or logging.getLogger("newscrawl.worker")
        self._loop = asyncio.new_event_loop()
        self._browser_pool = None

    def driver_for(self, kind: DriverKind) -> Driver:
        if self._driver_factory is not None:
            return self._driver_factory(kind)
        if kind is DriverKind.PLAYWRIGHT and self._browser_pool is None:
            from .drivers.playwright_driver import BrowserPool

            self._browser_pool = BrowserPool(
                size=self._config.drivers.browser_pool_size,
                headless=self._config.drivers.headless,
                user_agent=self._config.http.user_agent,
                logger=logging.getLogger("newscrawl.drivers"),
            )
        return create_driver(
            kind,
            headless=self._config.drivers.headless,
            user_agent=self._config.http.user_agent,
            browser_pool=self._browser_pool,
            logger=logging.getLogger("newscrawl.drivers"),
        )

    def run(self, coro):
        return self._loop.run_until_complete(coro)

    def process(
        self, conn: Any, job: Job, policy: RetryPolicy | None = None
    ) -> dict[str, object]:
        """Execute a claimed crawl job and settle it.

        Exactly one history row and one log row are written for the attempt,
        whatever the outcome.
        """
        started_at = utc_now()
        policy = policy or RetryPolicy(
            base_delay_seconds=self._config.jobs.backoff_base_seconds,
            max_delay_seconds=self._config.jobs.backoff_max_seconds,
        )
        try:
            if job.job_type != "crawl":
                raise ValidationError(f"unsupported job type {job.job_type}")
            source = payload_source(job.payload)
            options = payload_options(job.payload)
        except ValidationError as exc:
            source = Source(
                id=job.source_id,
                name="",
                base_url="",
                selectors={},
                driver_type=DriverKind.STATIC,
                active=True,
            )
            return self._settle_failure(conn, job, source, CrawlOptions(), started_at, exc, policy)

        try:
            result = self.run(
                run_crawl(
                    conn,
                    self._config,
                    source,
                    options,
                    self.driver_for(source.driver_type),
                    throttle=self._throttle,
                )
            )
        except Exception as exc:  # noqa: BLE001
            return self._settle_failure(conn, job, source, options, started_at, exc, policy)

        summary = {**result.summary(), "total_found": result.total_found}
        try:
            with conn.transaction():
                complete_job(conn, job.id, result.to_dict())
                record_crawl(
                    conn,
                    job_id=job.id,
                    source=source,
                    options=options,
                    started_at=started_at,
                    result=result,
                )
        except Exception as exc:  # noqa: BLE001
            # Nothing of the success was written; settle the attempt as failed instead.
            log_event(self._logger, logging.ERROR, "job_settle_failed", job_id=job.id, error=str(exc))
            return self._settle_failure(conn, job, source, options, started_at, exc, policy)
        log_event(self._logger, logging.INFO, "job_done", job_id=job.id, **summary)
        return {"status": "completed", **summary}

    def _settle_failure(
        self,
        conn: Any,
        job: Job,
        source: Source,
        options: CrawlOptions,
        started_at: datetime,
        exc: BaseException,
        policy: RetryPolicy,
    ) -> dict[str, object]:
        error_kind, message = classify_error(exc)
        with conn.transaction():
            state = fail_job(conn, job.id, message, error_kind=error_kind, policy=policy)
            record_crawl(
                conn,
                job_id=job.id,
                source=source,
                options=options,
                started_at=started_at,
                error=exc,
            )
        log_event(
            self._logger,
            logging.WARNING,
            "job_error",
            job_id=job.id,
            error_kind=error_kind,
            error=message,
            next_state=type(state).__name__ if state else None,
        )
        return {"status": "error", "error_kind": error_kind, "error": message}

    def close(self) -> None:
        if self._browser_pool is not None:
            self.run(self._browser_pool.close())
            self._browser_pool = None
        self._loop.close()


def run_once(
    worker_id: str,
    *,
    conn: Any | None = None,
    driver_factory: DriverFactory | None = None,
    scheduler: Scheduler | None = None,
) -> int:
    """Tick the scheduler, then claim and process at most one job.

    Returns 1 when a job was processed, 0 when the queue had nothing ready
    and 2 on a configuration error.
    """
    logger = _setup_logging()
    owns_conn = conn is None
    conn = conn or init_db()
    try:
        try:
            config = load_runtime_config(conn)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            return 2
        (scheduler or Scheduler(config=config)).tick(conn)
        job = claim_next_job(
            conn, worker_id, lock_timeout_seconds=config.jobs.lock_timeout_seconds
        )
        if job is None:
            return 0
        runner = JobRunner(config, driver_factory=driver_factory, logger=logger)
        try:
            runner.process(conn, job)
        finally:
            runner.close()
        return 1
    finally:
        if owns_conn:
            conn.close()


def _thread_loop(
    worker_id: str,
    poll_seconds: float,
    stop_event: threading.Event,
    tick_scheduler: bool,
    driver_factory: DriverFactory | None,
    throttle: Throttle,
    logger: logging.Logger,
) -> None:
    conn = init_db()
    try:
        config = load_runtime_config(conn)
        scheduler = Scheduler(config=config) if tick_scheduler else None
        runner = JobRunner(
            config, driver_factory=driver_factory, throttle=throttle, logger=logger
        )
        last_tick = 0.0
        try:
            while not stop_event.is_set():
                if scheduler is not None and time.monotonic() - last_tick >= config.scheduler.tick_seconds:
                    try:
                        scheduler.tick(conn)
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "scheduler_tick_failed", error=str(exc))
                    last_tick = time.monotonic()
                try:
                    job = claim_next_job(
                        conn, worker_id, lock_timeout_seconds=config.jobs.lock_timeout_seconds
                    )
                    if job is not None:
                        runner.process(conn, job)
                except Exception as exc:  # noqa: BLE001
                    # A running job left behind is requeued once its lock times out.
                    log_event(
                        logger,
                        logging.ERROR,
                        "worker_iteration_failed",
                        worker_id=worker_id,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                    job = None
                if job is None:
                    stop_event.wait(poll_seconds)
        finally:
            runner.close()
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    concurrency: int = 1,
    poll_seconds: float = 1.0,
    *,
    stop_event: threading.Event | None = None,
    tick_scheduler: bool = True,
    driver_factory: DriverFactory | None = None,
    throttle: Throttle | None = None,
) -> int:
    logger = _setup_logging()
    stop_event = stop_event or threading.Event()
    if throttle is None:
        conn = init_db()
        try:
            throttle = Throttle.from_config(
                load_runtime_config(conn).throttle, logger=logging.getLogger("newscrawl.throttle")
            )
        finally:
            conn.close()
    max_workers = max(1, concurrency)
    log_event(logger, logging.INFO, "worker_started", worker_id=worker_id, concurrency=max_workers)
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="crawl") as executor:
        futures = [
            executor.submit(
                _thread_loop,
                f"{worker_id}-{index}",
                poll_seconds,
                stop_event,
                tick_scheduler and index == 0,
                driver_factory,
                throttle,
                logger,
            )
            for index in range(max_workers)
        ]
        try:
            while not stop_event.is_set():
                if all(future.done() for future in futures):
                    break
                stop_event.wait(1.0)
        except KeyboardInterrupt:
            log_event(logger, logging.INFO, "worker_stopping", worker_id=worker_id)
            stop_event.set()
    failed = 0
    for future in futures:
        exc = future.exception()
        if exc is not None:
            failed += 1
            log_event(logger, logging.ERROR, "worker_thread_failed", error=str(exc))
    log_event(logger, logging.INFO, "worker_stopped", worker_id=worker_id)
    return 1 if failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="newscrawl worker")
    parser.add_argument("--worker-id", default=default_worker_id())
    parser.add_argument("--once", action="store_true", help="process at most one job and exit")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--poll", type=float, default=None, help="idle poll interval in seconds")
    parser.add_argument("--no-scheduler", action="store_true", help="do not tick schedules")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return run_worker(args)


def run_worker(args: argparse.Namespace) -> int:
    if args.once:
        processed = run_once(args.worker_id)
        return 1 if processed == 2 else 0
    conn = init_db()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(_setup_logging(), logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    return run_loop(
        args.worker_id,
        args.concurrency or config.workers.concurrency,
        args.poll if args.poll is not None else config.workers.poll_seconds,
        tick_scheduler=not args.no_scheduler,
    )


if __name__ == "__main__":
    raise SystemExit(main())
