from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import threading

from .config import ConfigError, load_runtime_config, load_sources_file
from .drivers import create_driver
from .history import purge_logs
from .models import JobPriority
from .pipeline import CrawlOptions, crawl_payload, validate_crawl_options
from .queue import (
    JobNotFound,
    JobNotRetryable,
    enqueue_job,
    list_jobs,
    purge_jobs,
    retry_job,
)
from .scheduler import Scheduler
from .services.schedules_service import create_schedule, list_schedule_dicts
from .services.sources_service import create_source, source_to_dict, update_source
from .storage import (
    get_schema_version,
    get_source,
    get_source_by_name,
    init_db,
    list_schedules,
    list_sources,
)
from .throttle import Throttle
from .utils import configure_logging, log_event, utc_now
from .worker import classify_error, default_worker_id, record_crawl, run_crawl, run_worker


def _setup_logging() -> logging.Logger:
    return configure_logging("newscrawl")


def _open(logger: logging.Logger):
    conn = init_db()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    return run_worker(args)


def _cmd_scheduler(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    conn.close()
    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())
    scheduler = Scheduler(config=config, logger=logging.getLogger("newscrawl.scheduler"))
    if args.once:
        conn = init_db()
        try:
            job_ids = scheduler.tick(conn)
        finally:
            conn.close()
        log_event(logger, logging.INFO, "scheduler_tick", enqueued=len(job_ids))
        return 0
    try:
        scheduler.run_loop(init_db, stop_event, args.tick or config.scheduler.tick_seconds)
    except KeyboardInterrupt:
        stop_event.set()
    return 0


def _cmd_crawl(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        source = get_source(conn, args.source_id)
        if source is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
        try:
            options = validate_crawl_options(
                CrawlOptions.from_config(
                    config,
                    article_limit=args.limit,
                    max_depth=args.depth,
                    full_content=False if args.no_full_content else None,
                    timeout_ms=args.timeout_ms,
                )
            )
        except ValueError as exc:
            log_event(logger, logging.ERROR, "invalid_options", error=str(exc))
            return 2
        if args.enqueue:
            job_id = enqueue_job(
                conn,
                "crawl",
                crawl_payload(source, options),
                priority=JobPriority.HIGH,
                source_id=source.id,
                max_attempts=config.jobs.max_attempts,
            )
            log_event(logger, logging.INFO, "crawl_enqueued", job_id=job_id, source_id=source.id)
            return 0
        started_at = utc_now()
        try:
            driver = create_driver(
                source.driver_type,
                headless=config.drivers.headless,
                user_agent=config.http.user_agent,
            )
            result = asyncio.run(
                run_crawl(
                    conn,
                    config,
                    source,
                    options,
                    driver,
                    throttle=Throttle.from_config(config.throttle),
                )
            )
        except Exception as exc:  # noqa: BLE001
            record_crawl(
                conn, job_id=None, source=source, options=options, started_at=started_at, error=exc
            )
            kind, message = classify_error(exc)
            log_event(logger, logging.ERROR, "crawl_failed", kind=kind, error=message)
            return 1
        record_crawl(
            conn, job_id=None, source=source, options=options, started_at=started_at, result=result
        )
        logger.info(json.dumps(result.to_dict(), indent=2, sort_keys=True))
        return 0
    finally:
        conn.close()


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        try:
            sources = load_sources_file(args.path)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "sources_import_error", error=str(exc))
            return 1
        if not sources:
            log_event(logger, logging.ERROR, "sources_import_error", error="no sources found")
            return 1
        scheduler = Scheduler(config=config)
        defaults = CrawlOptions.from_config(config)
        for item in sources:
            schedules = item.pop("schedules", None) or []
            if item.get("schedule"):
                schedules.append(item.pop("schedule"))
            try:
                existing = get_source_by_name(conn, str(item.get("name") or ""))
                if existing is None:
                    source = create_source(conn, item, default_driver=config.drivers.default_kind)
                else:
                    source = update_source(conn, existing.id, item)
                existing_crons = {
                    " ".join(schedule.cron_expression.split())
                    for schedule in list_schedules(conn, source_id=source.id)
                }
                for entry in schedules:
                    if isinstance(entry, str):
                        entry = {"cron_expression": entry}
                    if " ".join(str(entry.get("cron_expression") or "").split()) in existing_crons:
                        continue
                    create_schedule(
                        conn,
                        {**entry, "source_id": source.id},
                        scheduler=scheduler,
                        defaults=defaults,
                    )
            except (ValueError, LookupError) as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "sources_import_error",
                    source=item.get("name"),
                    error=str(exc),
                )
                return 1
        log_event(logger, logging.INFO, "sources_imported", count=len(sources), path=args.path)
        return 0
    finally:
        conn.close()


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        sources = list_sources(conn, active_only=args.active)
        if not sources:
            log_event(
                logger,
                logging.WARNING,
                "no_sources",
                hint="Import sources with `newscrawl sources import sources.yml`",
            )
            return 1
        for source in sources:
            log_event(
                logger,
                logging.INFO,
                "source",
                source_id=source.id,
                name=source.name,
                active=source.active,
                driver=source.driver_type.value,
                base_url=source.base_url,
            )
        log_event(logger, logging.INFO, "sources_listed", count=len(sources))
        return 0
    finally:
        conn.close()


def _cmd_sources_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        source = get_source(conn, args.source_id)
        if source is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
        logger.info(json.dumps(source_to_dict(source), indent=2, sort_keys=True))
        return 0
    finally:
        conn.close()


def _cmd_schedules_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        for item in list_schedule_dicts(conn, source_id=args.source_id):
            log_event(
                logger,
                logging.INFO,
                "schedule",
                schedule_id=item["id"],
                source_id=item["source_id"],
                cron=repr(item["cron_expression"]),
                active=item["active"],
                last_run=item["last_run"],
                next_run=item["next_run"],
            )
        return 0
    finally:
        conn.close()


def _cmd_schedules_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        payload = {
            "source_id": args.source_id,
            "cron_expression": args.cron,
            "article_limit": args.limit,
            "crawl_depth": args.depth,
            "timeout_ms": args.timeout_ms,
            "active": not args.inactive,
        }
        if args.no_full_content:
            payload["full_content"] = False
        try:
            schedule = create_schedule(
                conn,
                payload,
                scheduler=Scheduler(config=config),
                defaults=CrawlOptions.from_config(config),
            )
        except (ValueError, LookupError) as exc:
            log_event(logger, logging.ERROR, "schedule_add_error", error=str(exc))
            return 1
        log_event(
            logger,
            logging.INFO,
            "schedule_added",
            schedule_id=schedule.id,
            next_run=schedule.next_run,
        )
        return 0
    finally:
        conn.close()


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        for job in list_jobs(conn, status=args.status, limit=args.limit):
            log_event(
                logger,
                logging.INFO,
                "job",
                job_id=job.id,
                status=job.status.value,
                priority=job.priority.value,
                source_id=job.source_id,
                attempts=f"{job.attempts}/{job.max_attempts}",
                created_at=job.created_at,
                error_kind=job.error_kind,
            )
        return 0
    finally:
        conn.close()


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        source = get_source(conn, args.source_id)
        if source is None:
            log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
            return 1
        job_id = enqueue_job(
            conn,
            "crawl",
            crawl_payload(source, CrawlOptions.from_config(config)),
            priority=args.priority,
            source_id=source.id,
            max_attempts=config.jobs.max_attempts,
        )
        log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, source_id=source.id)
        return 0
    finally:
        conn.close()


def _cmd_jobs_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        try:
            job_id = retry_job(conn, args.job_id)
        except (JobNotFound, JobNotRetryable) as exc:
            log_event(logger, logging.ERROR, "job_retry_error", job_id=args.job_id, error=str(exc))
            return 1
        log_event(logger, logging.INFO, "job_retried", job_id=job_id, retry_of=args.job_id)
        return 0
    finally:
        conn.close()


def _cmd_jobs_purge(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        purge_jobs(conn, args.older_than_days)
        return 0
    finally:
        conn.close()


def _cmd_logs_purge(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        days = args.days if args.days is not None else config.logs.retention_days
        purge_logs(conn, days)
        return 0
    finally:
        conn.close()


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        version = get_schema_version(conn)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "db_migrated", schema_version=version)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    uvicorn.run("newscrawl.admin:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newscrawl", description="newscrawl CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run crawl workers")
    worker_parser.add_argument("--worker-id", default=default_worker_id())
    worker_parser.add_argument("--once", action="store_true", help="Process at most one job")
    worker_parser.add_argument("--concurrency", type=int, default=None, help="Worker threads")
    worker_parser.add_argument("--poll", type=float, default=None, help="Idle poll seconds")
    worker_parser.add_argument(
        "--no-scheduler", action="store_true", help="Do not tick schedules from the worker"
    )
    worker_parser.set_defaults(func=_cmd_worker)

    scheduler_parser = subparsers.add_parser("scheduler", help="Run the schedule ticker")
    scheduler_parser.add_argument("--once", action="store_true", help="Tick once and exit")
    scheduler_parser.add_argument("--tick", type=float, default=None, help="Seconds between ticks")
    scheduler_parser.set_defaults(func=_cmd_scheduler)

    crawl_parser = subparsers.add_parser("crawl", help="Crawl one source now")
    crawl_parser.add_argument("source_id", type=int)
    crawl_parser.add_argument("--limit", type=int, default=None)
    crawl_parser.add_argument("--depth", type=int, default=None)
    crawl_parser.add_argument("--timeout-ms", type=int, default=None)
    crawl_parser.add_argument("--no-full-content", action="store_true")
    crawl_parser.add_argument(
        "--enqueue", action="store_true", help="Queue a high priority job instead of running inline"
    )
    crawl_parser.set_defaults(func=_cmd_crawl)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.add_argument("--active", action="store_true", help="Only active sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    sources_show = sources_subparsers.add_parser("show", help="Show a source")
    sources_show.add_argument("source_id", type=int)
    sources_show.set_defaults(func=_cmd_sources_show)

    schedules_parser = subparsers.add_parser("schedules", help="Manage schedules")
    schedules_subparsers = schedules_parser.add_subparsers(
        dest="schedules_command", required=True
    )

    schedules_list = schedules_subparsers.add_parser("list", help="List schedules")
    schedules_list.add_argument("--source-id", type=int, default=None)
    schedules_list.set_defaults(func=_cmd_schedules_list)

    schedules_add = schedules_subparsers.add_parser("add", help="Add a schedule")
    schedules_add.add_argument("source_id", type=int)
    schedules_add.add_argument("cron", help='Cron expression, e.g. "*/30 * * * *"')
    schedules_add.add_argument("--limit", type=int, default=None)
    schedules_add.add_argument("--depth", type=int, default=None)
    schedules_add.add_argument("--timeout-ms", type=int, default=None)
    schedules_add.add_argument("--no-full-content", action="store_true")
    schedules_add.add_argument("--inactive", action="store_true")
    schedules_add.set_defaults(func=_cmd_schedules_add)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--status", choices=["queued", "running", "completed", "failed"])
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a crawl job")
    jobs_enqueue.add_argument("source_id", type=int)
    jobs_enqueue.add_argument(
        "--priority", choices=[p.value for p in JobPriority], default=JobPriority.NORMAL.value
    )
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_retry = jobs_subparsers.add_parser("retry", help="Retry a failed job")
    jobs_retry.add_argument("job_id")
    jobs_retry.set_defaults(func=_cmd_jobs_retry)

    jobs_purge = jobs_subparsers.add_parser("purge", help="Delete old finished jobs")
    jobs_purge.add_argument("--older-than-days", type=int, default=30)
    jobs_purge.set_defaults(func=_cmd_jobs_purge)

    logs_parser = subparsers.add_parser("logs", help="Crawl log maintenance")
    logs_subparsers = logs_parser.add_subparsers(dest="logs_command", required=True)

    logs_purge = logs_subparsers.add_parser("purge", help="Delete logs past retention")
    logs_purge.add_argument("--days", type=int, default=None)
    logs_purge.set_defaults(func=_cmd_logs_purge)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
