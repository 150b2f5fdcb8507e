from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .drivers import create_driver
from .errors import FetchError, ValidationError
from .history import (
    LogFilters,
    LogNotFound,
    LogNotRetryable,
    delete_log,
    get_log,
    list_history,
    list_logs,
    log_stats,
    retry_log,
)
from .models import JobPriority, Job
from .pipeline import CrawlOptions, crawl_payload, validate_crawl_options
from .queue import (
    JobNotFound,
    JobNotRetryable,
    enqueue_job,
    get_job,
    list_jobs,
    queue_stats,
    retry_job,
)
from .scheduler import ScheduleNotFound, Scheduler
from .selector_dryrun import DEFAULT_TEST_TIMEOUT_MS, dry_run_selector
from .services.schedules_service import (
    create_schedule,
    delete_schedule,
    list_schedule_dicts,
    schedule_to_dict,
    update_schedule,
)
from .services.selector_configs_service import (
    config_to_dict,
    create_selector_config,
    delete_selector_config,
    get_selector_config,
    list_selector_configs,
    update_selector_config,
)
from .services.sources_service import (
    create_source,
    delete_source,
    list_source_dicts,
    source_to_dict,
    update_source,
)
from .storage import (
    get_article,
    get_schedule,
    get_source,
    init_db,
    list_articles,
    mark_article_read,
)
from .throttle import Throttle
from .utils import configure_logging, log_event, utc_now
from .worker import classify_error, record_crawl, run_crawl

app = FastAPI(title="newscrawl Admin API")

logger = logging.getLogger("newscrawl.admin")


class RuntimeConfigRequest(BaseModel):
    config: dict


class CrawlRequest(BaseModel):
    source_id: int
    limit: int | None = None
    depth: int | None = None
    full_content: bool | None = None
    follow_links: bool | None = None
    timeout_ms: int | None = None


class SelectorTestRequest(BaseModel):
    url: str
    selector: str
    type: str = "list"
    driverType: str = "static"
    timeout_ms: int | None = None


class SourceRequest(BaseModel):
    name: str | None = None
    base_url: str | None = None
    selectors: dict[str, Any] | None = None
    list_selector: Any = None
    title_selector: Any = None
    lead_selector: Any = None
    content_selector: Any = None
    link_selector: Any = None
    router_selector: Any = None
    list_selectors: Any = None
    title_selectors: Any = None
    lead_selectors: Any = None
    content_selectors: Any = None
    link_selectors: Any = None
    router_selectors: Any = None
    driver_type: str | None = None
    active: bool | None = None


class ScheduleRequest(BaseModel):
    source_id: int | None = None
    cron_expression: str | None = None
    active: bool | None = None
    crawl_depth: int | None = None
    article_limit: int | None = None
    timeout_ms: int | None = None
    full_content: bool | None = None
    follow_links: bool | None = None


class JobEnqueueRequest(BaseModel):
    source_id: int
    priority: str = JobPriority.NORMAL.value
    limit: int | None = None
    depth: int | None = None
    full_content: bool | None = None


class ArticleReadRequest(BaseModel):
    is_read: bool = True


class SelectorConfigRequest(BaseModel):
    name: str | None = None
    url: str | None = None
    selectors: dict[str, Any] | None = None
    driver_type: str | None = None
    description: str | None = None


def _setup_logging() -> None:
    configure_logging("newscrawl.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("newscrawl")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn() -> Iterator[Any]:
    conn = init_db()
    try:
        bootstrap_runtime_config(conn)
        yield conn
    finally:
        conn.close()


def _load_config(conn: Any):
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _payload(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(exclude_none=True)


def _job_to_dict(job: Job) -> dict[str, object]:
    return {
        "id": job.id,
        "job_type": job.job_type,
        "priority": job.priority.value,
        "status": job.status.value,
        "source_id": job.source_id,
        "schedule_id": job.schedule_id,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "available_at": job.available_at,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "failed_at": job.failed_at,
        "locked_by": job.locked_by,
        "result": job.result,
        "error": job.error,
        "error_kind": job.error_kind,
        "retry_of": job.retry_of,
    }


@app.on_event("startup")
def _startup() -> None:
    conn = init_db()
    try:
        load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
    finally:
        conn.close()


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "newscrawl Admin API"}


@app.get("/health")
def health(conn: Any = Depends(_get_conn)) -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
        "queue": queue_stats(conn)["counts"],
    }


@app.get("/api/config/runtime")
def runtime_config_get(conn: Any = Depends(_get_conn)) -> dict[str, object]:
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/api/config/runtime")
def runtime_config_set(
    payload: RuntimeConfigRequest, conn: Any = Depends(_get_conn)
) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.post("/api/crawler/crawl")
async def crawler_crawl(payload: CrawlRequest, conn: Any = Depends(_get_conn)):
    """Synchronous crawl of one source; bypasses the queue but is logged like a job."""
    config = _load_config(conn)
    source = get_source(conn, payload.source_id)
    if source is None:
        raise HTTPException(status_code=404, detail="source_not_found")
    try:
        options = validate_crawl_options(
            CrawlOptions.from_config(
                config,
                article_limit=payload.limit,
                max_depth=payload.depth,
                full_content=payload.full_content,
                follow_links=payload.follow_links,
                timeout_ms=payload.timeout_ms,
            )
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    started_at = utc_now()
    try:
        driver = create_driver(
            source.driver_type,
            headless=config.drivers.headless,
            user_agent=config.http.user_agent,
            logger=logging.getLogger("newscrawl.drivers"),
        )
        result = await run_crawl(
            conn, config, source, options, driver, throttle=Throttle.from_config(config.throttle)
        )
    except Exception as exc:  # noqa: BLE001
        log_id = record_crawl(
            conn, job_id=None, source=source, options=options, started_at=started_at, error=exc
        )
        if isinstance(exc, FetchError):
            status_code, error = 502, exc.to_dict()
        else:
            kind, message = classify_error(exc)
            status_code, error = 500, {"kind": "internal", "error": kind, "message": message}
            log_event(logger, logging.ERROR, "manual_crawl_failed", source_id=source.id, error=message)
        return JSONResponse(
            status_code=status_code,
            content={"success": False, "error": error, "log_id": log_id},
        )
    log_id = record_crawl(
        conn, job_id=None, source=source, options=options, started_at=started_at, result=result
    )
    log_event(logger, logging.INFO, "manual_crawl", source_id=source.id, **result.summary())
    return {
        "success": True,
        **result.summary(),
        "total_found": result.total_found,
        "duration_ms": result.duration_ms,
        "failures": [failure.__dict__ for failure in result.failures],
        "log_id": log_id,
    }


@app.post("/api/test-selector")
async def test_selector_endpoint(payload: SelectorTestRequest, conn: Any = Depends(_get_conn)):
    config = _load_config(conn)
    try:
        result = await dry_run_selector(
            payload.url,
            payload.selector,
            payload.type,
            payload.driverType,
            timeout_ms=payload.timeout_ms
            or config.drivers.selector_test_timeout_ms
            or DEFAULT_TEST_TIMEOUT_MS,
            headless=config.drivers.headless,
            user_agent=config.http.user_agent,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(status_code=result.status_code, content=result.payload)


@app.get("/api/sources")
def sources_list(active_only: bool = False, conn: Any = Depends(_get_conn)) -> list[dict[str, object]]:
    return list_source_dicts(conn, active_only=active_only)


@app.post("/api/sources", status_code=201)
def sources_create(payload: SourceRequest, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    config = _load_config(conn)
    try:
        source = create_source(conn, _payload(payload), default_driver=config.drivers.default_kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return source_to_dict(source)


@app.get("/api/sources/{source_id}")
def sources_read(source_id: int, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    source = get_source(conn, source_id)
    if source is None:
        raise HTTPException(status_code=404, detail="source_not_found")
    data = source_to_dict(source)
    data["history"] = list_history(conn, source_id=source_id, limit=10)
    return data


@app.put("/api/sources/{source_id}")
def sources_update(
    source_id: int, payload: SourceRequest, conn: Any = Depends(_get_conn)
) -> dict[str, object]:
    try:
        source = update_source(conn, source_id, _payload(payload))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return source_to_dict(source)


@app.delete("/api/sources/{source_id}")
def sources_delete(source_id: int, conn: Any = Depends(_get_conn)) -> dict[str, str]:
    try:
        delete_source(conn, source_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="source_not_found") from exc
    return {"status": "deleted"}


@app.get("/api/schedules")
def schedules_list(
    source_id: int | None = None, conn: Any = Depends(_get_conn)
) -> list[dict[str, object]]:
    return list_schedule_dicts(conn, source_id=source_id)


@app.post("/api/schedules", status_code=201)
def schedules_create(payload: ScheduleRequest, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    config = _load_config(conn)
    try:
        schedule = create_schedule(
            conn,
            _payload(payload),
            scheduler=Scheduler(config=config),
            defaults=CrawlOptions.from_config(config),
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return schedule_to_dict(schedule)


@app.get("/api/schedules/{schedule_id}")
def schedules_read(schedule_id: int, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    schedule = get_schedule(conn, schedule_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="schedule_not_found")
    source = get_source(conn, schedule.source_id)
    return schedule_to_dict(schedule, source.name if source else None)


@app.put("/api/schedules/{schedule_id}")
def schedules_update(
    schedule_id: int, payload: ScheduleRequest, conn: Any = Depends(_get_conn)
) -> dict[str, object]:
    config = _load_config(conn)
    try:
        schedule = update_schedule(
            conn, schedule_id, _payload(payload), scheduler=Scheduler(config=config)
        )
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return schedule_to_dict(schedule)


@app.delete("/api/schedules/{schedule_id}")
def schedules_delete(schedule_id: int, conn: Any = Depends(_get_conn)) -> dict[str, str]:
    try:
        delete_schedule(conn, schedule_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="schedule_not_found") from exc
    return {"status": "deleted"}


@app.post("/api/schedules/{schedule_id}/run")
def schedules_run(schedule_id: int, conn: Any = Depends(_get_conn)) -> dict[str, str]:
    config = _load_config(conn)
    try:
        job_id = Scheduler(config=config).run_now(conn, schedule_id)
    except ScheduleNotFound as exc:
        raise HTTPException(status_code=404, detail="schedule_not_found") from exc
    return {"job_id": job_id}


@app.get("/api/jobs")
def jobs_list(
    status: str | None = None,
    source_id: int | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    conn: Any = Depends(_get_conn),
) -> list[dict[str, object]]:
    try:
        jobs = list_jobs(conn, status=status, source_id=source_id, limit=limit, offset=offset)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [_job_to_dict(job) for job in jobs]


@app.post("/api/jobs", status_code=201)
def jobs_enqueue(payload: JobEnqueueRequest, conn: Any = Depends(_get_conn)) -> dict[str, str]:
    config = _load_config(conn)
    source = get_source(conn, payload.source_id)
    if source is None:
        raise HTTPException(status_code=404, detail="source_not_found")
    try:
        priority = JobPriority(payload.priority)
        options = validate_crawl_options(
            CrawlOptions.from_config(
                config,
                article_limit=payload.limit,
                max_depth=payload.depth,
                full_content=payload.full_content,
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    job_id = enqueue_job(
        conn,
        "crawl",
        crawl_payload(source, options),
        priority=priority,
        source_id=source.id,
        max_attempts=config.jobs.max_attempts,
    )
    return {"job_id": job_id}


@app.get("/api/jobs/{job_id}")
def jobs_read(job_id: str, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    job = get_job(conn, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return _job_to_dict(job)


@app.post("/api/jobs/{job_id}/retry")
def jobs_retry(job_id: str, conn: Any = Depends(_get_conn)) -> dict[str, str]:
    try:
        new_job_id = retry_job(conn, job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail="job_not_found") from exc
    except JobNotRetryable as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"job_id": new_job_id, "retry_of": job_id}


@app.get("/api/queue/status")
def queue_status(conn: Any = Depends(_get_conn)) -> dict[str, object]:
    return queue_stats(conn)


@app.get("/api/logs")
def logs_list(
    source_id: int | None = None,
    status: str | None = None,
    action: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    message: str | None = None,
    sort: str = "created_at",
    order: str = "desc",
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    conn: Any = Depends(_get_conn),
) -> dict[str, object]:
    rows, total = list_logs(
        conn,
        LogFilters(
            source_id=source_id,
            status=status,
            action=action,
            date_from=date_from,
            date_to=date_to,
            message=message,
            sort=sort,
            order=order,
            limit=limit,
            offset=offset,
        ),
    )
    return {"logs": rows, "total": total, "limit": limit, "offset": offset}


@app.get("/api/logs/stats")
def logs_stats(
    source_id: int | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    conn: Any = Depends(_get_conn),
) -> dict[str, object]:
    return log_stats(conn, source_id=source_id, date_from=date_from, date_to=date_to)


@app.get("/api/logs/{log_id}")
def logs_read(log_id: int, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    log = get_log(conn, log_id)
    if log is None:
        raise HTTPException(status_code=404, detail="log_not_found")
    return log


@app.post("/api/logs/{log_id}/retry")
def logs_retry(log_id: int, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    config = _load_config(conn)
    try:
        job_id = retry_log(conn, log_id, defaults=CrawlOptions.from_config(config))
    except LogNotFound as exc:
        raise HTTPException(status_code=404, detail="log_not_found") from exc
    except (LogNotRetryable, JobNotRetryable) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True, "job_id": job_id}


@app.delete("/api/logs/{log_id}")
def logs_delete(log_id: int, conn: Any = Depends(_get_conn)) -> dict[str, str]:
    if not delete_log(conn, log_id):
        raise HTTPException(status_code=404, detail="log_not_found")
    return {"status": "deleted"}


@app.get("/api/articles")
def articles_list(
    source_id: int | None = None,
    is_read: bool | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    conn: Any = Depends(_get_conn),
) -> dict[str, object]:
    articles, total = list_articles(
        conn, source_id=source_id, is_read=is_read, limit=limit, offset=offset
    )
    return {
        "articles": [article.__dict__ for article in articles],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/articles/{article_id}")
def articles_read(article_id: int, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    article = get_article(conn, article_id)
    if article is None:
        raise HTTPException(status_code=404, detail="article_not_found")
    return article.__dict__


@app.put("/api/articles/{article_id}/read")
def articles_mark_read(
    article_id: int,
    payload: ArticleReadRequest = ArticleReadRequest(),
    conn: Any = Depends(_get_conn),
) -> dict[str, object]:
    if not mark_article_read(conn, article_id, payload.is_read):
        raise HTTPException(status_code=404, detail="article_not_found")
    return {"id": article_id, "is_read": payload.is_read}


@app.get("/api/selector-configs")
def selector_configs_list(conn: Any = Depends(_get_conn)) -> list[dict[str, object]]:
    return [config_to_dict(item) for item in list_selector_configs(conn)]


@app.post("/api/selector-configs", status_code=201)
def selector_configs_create(
    payload: SelectorConfigRequest, conn: Any = Depends(_get_conn)
) -> dict[str, object]:
    try:
        return config_to_dict(create_selector_config(conn, _payload(payload)))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/selector-configs/{config_id}")
def selector_configs_read(config_id: int, conn: Any = Depends(_get_conn)) -> dict[str, object]:
    item = get_selector_config(conn, config_id)
    if item is None:
        raise HTTPException(status_code=404, detail="selector_config_not_found")
    return config_to_dict(item)


@app.put("/api/selector-configs/{config_id}")
def selector_configs_update(
    config_id: int, payload: SelectorConfigRequest, conn: Any = Depends(_get_conn)
) -> dict[str, object]:
    try:
        return config_to_dict(update_selector_config(conn, config_id, _payload(payload)))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="selector_config_not_found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/api/selector-configs/{config_id}")
def selector_configs_delete(config_id: int, conn: Any = Depends(_get_conn)) -> dict[str, str]:
    try:
        delete_selector_config(conn, config_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="selector_config_not_found") from exc
    return {"status": "deleted"}
