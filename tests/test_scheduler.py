from datetime import datetime, timedelta, timezone

import pytest

from newscrawl.errors import ValidationError
from newscrawl.models import JobPriority
from newscrawl.queue import claim_next_job, complete_job, get_job, list_jobs
from newscrawl.scheduler import Scheduler, ScheduleNotFound, compute_next_run, validate_cron
from newscrawl.services.schedules_service import create_schedule, update_schedule
from newscrawl.services.sources_service import update_source
from newscrawl.storage import get_schedule
from newscrawl.utils import parse_iso, utc_now


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def jump_to(self, iso: str, seconds: int = 1) -> None:
        self.now = parse_iso(iso) + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock(utc_now())


def _schedule(conn, scheduler, source, cron="*/5 * * * *", **extra):
    payload = {"source_id": source.id, "cron_expression": cron, "article_limit": 4}
    payload.update(extra)
    return create_schedule(conn, payload, scheduler=scheduler)


def test_compute_next_run_is_strictly_after():
    base = datetime(2025, 3, 1, 12, 3, 0, tzinfo=timezone.utc)
    assert compute_next_run("*/5 * * * *", base) == datetime(2025, 3, 1, 12, 5, tzinfo=timezone.utc)
    on_boundary = datetime(2025, 3, 1, 12, 5, 0, tzinfo=timezone.utc)
    assert compute_next_run("*/5 * * * *", on_boundary) == datetime(
        2025, 3, 1, 12, 10, tzinfo=timezone.utc
    )
    naive = datetime(2025, 3, 1, 23, 59)
    assert compute_next_run("0 0 * * *", naive) == datetime(2025, 3, 2, 0, 0, tzinfo=timezone.utc)


def test_validate_cron():
    assert validate_cron("  */5   *  * * * ") == "*/5 * * * *"
    for bad in ("", "* * * *", "61 * * * *", "* * * * * *", "every minute"):
        with pytest.raises(ValidationError):
            validate_cron(bad)


def test_create_schedule_sets_next_run(conn, make_source, clock):
    source = make_source()
    schedule = _schedule(conn, Scheduler(clock), source)
    next_run = parse_iso(schedule.next_run)
    assert next_run > clock.now - timedelta(seconds=1)
    assert next_run.minute % 5 == 0
    assert next_run.second == 0
    assert schedule.last_run is None


def test_tick_enqueues_due_schedule_once(conn, make_source, clock):
    source = make_source()
    scheduler = Scheduler(clock)
    schedule = _schedule(conn, scheduler, source)

    assert scheduler.tick(conn) == []

    clock.jump_to(schedule.next_run)
    job_ids = scheduler.tick(conn)
    assert len(job_ids) == 1
    job = get_job(conn, job_ids[0])
    assert job.priority is JobPriority.NORMAL
    assert job.schedule_id == schedule.id
    assert job.source_id == source.id
    assert job.payload["options"]["article_limit"] == 4
    assert job.payload["source"]["name"] == source.name

    updated = get_schedule(conn, schedule.id)
    assert parse_iso(updated.last_run) == clock.now
    assert parse_iso(updated.next_run) == parse_iso(schedule.next_run) + timedelta(minutes=5)

    # a second tick at the same instant finds nothing due
    assert scheduler.tick(conn) == []


def test_tick_skips_while_job_pending(conn, make_source, clock):
    source = make_source()
    scheduler = Scheduler(clock)
    schedule = _schedule(conn, scheduler, source)

    clock.jump_to(schedule.next_run)
    first = scheduler.tick(conn)
    assert len(first) == 1

    after_first = get_schedule(conn, schedule.id)
    clock.jump_to(after_first.next_run)
    assert scheduler.tick(conn) == []
    skipped = get_schedule(conn, schedule.id)
    assert skipped.last_run == after_first.last_run
    assert skipped.next_run > after_first.next_run
    assert len(list_jobs(conn)) == 1

    job = claim_next_job(conn, "worker-1", now=clock.now)
    complete_job(conn, job.id, {}, now=clock.now)
    clock.jump_to(skipped.next_run)
    assert len(scheduler.tick(conn)) == 1


def test_inactive_source_is_skipped(conn, make_source, clock):
    source = make_source()
    scheduler = Scheduler(clock)
    schedule = _schedule(conn, scheduler, source)
    update_source(conn, source.id, {"active": False})

    clock.jump_to(schedule.next_run)
    assert scheduler.tick(conn) == []
    assert get_schedule(conn, schedule.id).next_run > schedule.next_run
    assert list_jobs(conn) == []


def test_deactivated_schedule_clears_next_run(conn, make_source, clock):
    source = make_source()
    scheduler = Scheduler(clock)
    schedule = _schedule(conn, scheduler, source)

    updated = update_schedule(conn, schedule.id, {"active": False}, scheduler=scheduler)
    assert updated.next_run is None

    clock.now = clock.now + timedelta(hours=1)
    assert scheduler.tick(conn) == []

    reactivated = update_schedule(
        conn, schedule.id, {"active": True, "cron_expression": "0 * * * *"}, scheduler=scheduler
    )
    assert parse_iso(reactivated.next_run) > clock.now
    assert parse_iso(reactivated.next_run).minute == 0


def test_run_now_does_not_move_schedule(conn, make_source, clock):
    source = make_source()
    scheduler = Scheduler(clock)
    schedule = _schedule(conn, scheduler, source)

    job_id = scheduler.run_now(conn, schedule.id)
    job = get_job(conn, job_id)
    assert job.priority is JobPriority.HIGH
    assert job.schedule_id == schedule.id

    unchanged = get_schedule(conn, schedule.id)
    assert unchanged.next_run == schedule.next_run
    assert unchanged.last_run is None

    with pytest.raises(ScheduleNotFound):
        scheduler.run_now(conn, 999)


def test_create_schedule_validates_input(conn, make_source, clock):
    source = make_source()
    scheduler = Scheduler(clock)
    with pytest.raises(ValidationError):
        _schedule(conn, scheduler, source, cron="not a cron")
    with pytest.raises(ValidationError):
        _schedule(conn, scheduler, source, article_limit=500)
    with pytest.raises(ValidationError):
        _schedule(conn, scheduler, source, crawl_depth=9)
    with pytest.raises(LookupError):
        create_schedule(conn, {"source_id": 404, "cron_expression": "* * * * *"}, scheduler=scheduler)
