"""Cron schedules turned into queued crawl jobs.

``compute_next_run`` is pure; :class:`Scheduler` reads the current time only
through its injected clock, so a tick can be driven deterministically in
tests. A tick is safe to run from several processes at once: a due schedule
is advanced with a conditional update on its previous ``next_run`` and only
the caller whose update lands enqueues the job.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable

from croniter import croniter

from .config import Config
from .errors import ValidationError
from .models import JobPriority, Schedule
from .pipeline import CrawlOptions, crawl_payload
from .queue import DEFAULT_MAX_ATTEMPTS, enqueue_job, has_pending_job
from .storage import get_schedule, get_source
from .utils import log_event, parse_iso, to_iso, utc_now

Clock = Callable[[], datetime]


class ScheduleNotFound(LookupError):
    pass


def validate_cron(expression: str) -> str:
    expression = " ".join(str(expression or "").split())
    if len(expression.split(" ")) != 5:
        raise ValidationError(
            f"invalid cron expression {expression!r}: expected 5 fields (minute hour day month weekday)"
        )
    if not croniter.is_valid(expression):
        raise ValidationError(f"invalid cron expression {expression!r}")
    return expression


def compute_next_run(cron_expression: str, from_dt: datetime) -> datetime:
    """First time strictly after ``from_dt`` that matches ``cron_expression``."""
    if from_dt.tzinfo is None:
        from_dt = parse_iso(from_dt)  # type: ignore[assignment]
    return croniter(cron_expression, from_dt).get_next(datetime)


def schedule_options(schedule: Schedule, config: Config | None = None) -> CrawlOptions:
    overrides = {
        "article_limit": schedule.article_limit,
        "max_depth": schedule.crawl_depth,
        "timeout_ms": schedule.timeout_ms,
        "full_content": schedule.full_content,
        "follow_links": schedule.follow_links,
    }
    if config is None:
        return CrawlOptions(**overrides)
    return CrawlOptions.from_config(config, **overrides)


class Scheduler:
    def __init__(
        self,
        clock: Clock | None = None,
        *,
        config: Config | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._clock = clock or utc_now
        self._config = config
        self._logger = logger or logging.getLogger("newscrawl.scheduler")

    @property
    def max_attempts(self) -> int:
        if self._config is None:
            return DEFAULT_MAX_ATTEMPTS
        return self._config.jobs.max_attempts

    def now(self) -> datetime:
        return self._clock()

    def tick(self, conn: Any) -> list[str]:
        """Enqueue one job per due schedule and advance its run times."""
        now = self.now()
        now_iso = to_iso(now)
        self._prime_missing(conn, now)
        cursor = conn.execute(
            """
            SELECT id FROM schedules
            WHERE active = 1 AND next_run IS NOT NULL AND next_run <= ?
            ORDER BY next_run, id
            """,
            (now_iso,),
        )
        job_ids: list[str] = []
        for (schedule_id,) in cursor.fetchall():
            job_id = self._dispatch(conn, int(schedule_id), now)
            if job_id:
                job_ids.append(job_id)
        return job_ids

    def _prime_missing(self, conn: Any, now: datetime) -> None:
        # Active schedules written without a next_run (imports, manual edits).
        rows = conn.execute(
            "SELECT id FROM schedules WHERE active = 1 AND next_run IS NULL"
        ).fetchall()
        for (schedule_id,) in rows:
            self.refresh(conn, int(schedule_id))

    def _dispatch(self, conn: Any, schedule_id: int, now: datetime) -> str | None:
        now_iso = to_iso(now)
        with conn.transaction():
            schedule = get_schedule(conn, schedule_id)
            if schedule is None or not schedule.active or not schedule.next_run:
                return None
            if schedule.next_run > now_iso:
                return None
            next_run = to_iso(compute_next_run(schedule.cron_expression, now))
            source = get_source(conn, schedule.source_id)
            pending = has_pending_job(conn, schedule_id=schedule.id)
            if pending or source is None or not source.active:
                conn.execute(
                    "UPDATE schedules SET next_run = ?, updated_at = ? WHERE id = ? AND next_run = ?",
                    (next_run, now_iso, schedule.id, schedule.next_run),
                )
                reason = "pending_job" if pending else "source_inactive"
                log_event(
                    self._logger,
                    logging.INFO,
                    "schedule_skipped",
                    schedule_id=schedule.id,
                    reason=reason,
                    next_run=next_run,
                )
                return None
            cursor = conn.execute(
                """
                UPDATE schedules
                SET last_run = ?, next_run = ?, updated_at = ?
                WHERE id = ? AND next_run = ?
                """,
                (now_iso, next_run, now_iso, schedule.id, schedule.next_run),
            )
            if cursor.rowcount != 1:
                return None
            job_id = enqueue_job(
                conn,
                "crawl",
                crawl_payload(source, schedule_options(schedule, self._config), schedule_id=schedule.id),
                priority=JobPriority.NORMAL,
                source_id=source.id,
                schedule_id=schedule.id,
                max_attempts=self.max_attempts,
                now=now,
            )
        log_event(
            self._logger,
            logging.INFO,
            "schedule_dispatched",
            schedule_id=schedule_id,
            job_id=job_id,
            next_run=next_run,
        )
        return job_id

    def refresh(self, conn: Any, schedule_id: int) -> str | None:
        """Recompute ``next_run`` after an edit; returns the stored value."""
        schedule = get_schedule(conn, schedule_id)
        if schedule is None:
            raise ScheduleNotFound(f"schedule {schedule_id} not found")
        now = self.now()
        if not schedule.active:
            next_run = None
        else:
            base = parse_iso(schedule.last_run) or parse_iso(schedule.created_at) or now
            candidate = compute_next_run(schedule.cron_expression, base)
            if candidate < now:
                candidate = compute_next_run(schedule.cron_expression, now)
            next_run = to_iso(candidate)
        conn.execute(
            "UPDATE schedules SET next_run = ?, updated_at = ? WHERE id = ?",
            (next_run, to_iso(now), schedule_id),
        )
        conn.commit()
        log_event(
            self._logger,
            logging.DEBUG,
            "schedule_refreshed",
            schedule_id=schedule_id,
            next_run=next_run,
        )
        return next_run

    def run_now(self, conn: Any, schedule_id: int) -> str:
        """Manual trigger; does not touch last_run or next_run."""
        schedule = get_schedule(conn, schedule_id)
        if schedule is None:
            raise ScheduleNotFound(f"schedule {schedule_id} not found")
        source = get_source(conn, schedule.source_id)
        if source is None:
            raise ScheduleNotFound(f"source {schedule.source_id} not found")
        job_id = enqueue_job(
            conn,
            "crawl",
            crawl_payload(source, schedule_options(schedule, self._config), schedule_id=schedule.id),
            priority=JobPriority.HIGH,
            source_id=source.id,
            schedule_id=schedule.id,
            max_attempts=self.max_attempts,
            now=self.now(),
        )
        log_event(
            self._logger,
            logging.INFO,
            "schedule_run_now",
            schedule_id=schedule.id,
            job_id=job_id,
        )
        return job_id

    def run_loop(
        self,
        connect: Callable[[], Any],
        stop_event: threading.Event | None = None,
        tick_seconds: float = 60,
    ) -> None:
        stop_event = stop_event or threading.Event()
        log_event(self._logger, logging.INFO, "scheduler_started", tick_seconds=tick_seconds)
        while not stop_event.is_set():
            conn = connect()
            try:
                self.tick(conn)
            except Exception as exc:  # noqa: BLE001
                log_event(self._logger, logging.ERROR, "scheduler_tick_failed", error=str(exc))
            finally:
                conn.close()
            stop_event.wait(tick_seconds)
        log_event(self._logger, logging.INFO, "scheduler_stopped")
