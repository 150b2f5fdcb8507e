from datetime import datetime, timedelta, timezone

import pytest

from newscrawl.history import (
    LogFilters,
    LogNotFound,
    LogNotRetryable,
    delete_log,
    get_log,
    list_logs,
    list_operations,
    log_stats,
    purge_logs,
    record_job_outcome,
    retry_log,
)
from newscrawl.models import JobPriority, JobStatus
from newscrawl.pipeline import CrawlOptions, crawl_payload
from newscrawl.queue import claim_next_job, enqueue_job, fail_job, get_job
from newscrawl.storage import count_table
from newscrawl.utils import utc_now

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(conn, source_id, status="success", *, job_id=None, finished_at=None, message=None):
    finished_at = finished_at or utc_now()
    return record_job_outcome(
        conn,
        job_id=job_id,
        source_id=source_id,
        started_at=finished_at - timedelta(seconds=2),
        finished_at=finished_at,
        status=status,
        message=message or f"crawl {status}",
        result={"total_found": 4, "processed": 3, "new_articles": 2, "duplicates": 1}
        if status == "success"
        else None,
        error_kind=None if status == "success" else "NetworkError",
    )


def test_record_writes_log_and_history_together(conn, make_source):
    source = make_source()
    log_id = _record(conn, source.id)
    log = get_log(conn, log_id)
    assert log["source_name"] == source.name
    assert log["articles_found"] == 4
    assert log["new_articles"] == 2
    assert log["duration_ms"] == 2000
    assert log["details"] == []
    assert count_table(conn, "crawl_history") == 1


def test_list_logs_filters_sorts_and_pages(conn, make_source):
    first = make_source("Alpha")
    second = make_source("Beta", base_url="https://beta.example.com/")
    _record(conn, first.id, message="alpha ok")
    _record(conn, second.id, "error", message="beta timed out")
    _record(conn, second.id, message="beta ok")

    rows, total = list_logs(conn, LogFilters(source_id=second.id))
    assert total == 2
    assert {row["source_name"] for row in rows} == {"Beta"}

    rows, total = list_logs(conn, LogFilters(status="error"))
    assert total == 1
    assert rows[0]["error_kind"] == "NetworkError"

    rows, total = list_logs(conn, LogFilters(message="TIMED"))
    assert total == 1

    rows, total = list_logs(conn, LogFilters(sort="source_name", order="asc", limit=1, offset=0))
    assert total == 3
    assert len(rows) == 1
    assert rows[0]["source_name"] == "Alpha"

    # unknown sort keys fall back to created_at
    rows, _ = list_logs(conn, LogFilters(sort="id; DROP TABLE crawl_logs"))
    assert len(rows) == 3


def test_log_stats(conn, make_source):
    source = make_source()
    _record(conn, source.id)
    _record(conn, source.id, "error")
    _record(conn, source.id, finished_at=utc_now() - timedelta(days=3))
    stats = log_stats(conn)
    assert stats["total"] == 3
    assert stats["success"] == 2
    assert stats["error"] == 1
    assert stats["today"] == 2
    assert stats["by_action"] == {"crawl": 3}


def test_delete_and_purge(conn, make_source):
    source = make_source()
    recent = _record(conn, source.id)
    _record(conn, source.id, finished_at=utc_now() - timedelta(days=10))

    assert purge_logs(conn, 7)["crawl_logs"] == 1
    assert delete_log(conn, recent) is True
    assert delete_log(conn, recent) is False
    assert count_table(conn, "crawl_logs") == 0
    operations = list_operations(conn, entity="crawl_log")
    assert [op["action"] for op in operations] == ["delete"]


def test_retry_log_reuses_failed_job(conn, make_source):
    source = make_source()
    job_id = enqueue_job(
        conn,
        "crawl",
        crawl_payload(source, CrawlOptions(article_limit=7)),
        source_id=source.id,
        max_attempts=1,
    )
    claim_next_job(conn, "worker-1")
    fail_job(conn, job_id, "network down", error_kind="NetworkError")
    log_id = _record(conn, source.id, "error", job_id=job_id)

    new_job_id = retry_log(conn, log_id)
    new_job = get_job(conn, new_job_id)
    assert new_job.retry_of == job_id
    assert new_job.priority is JobPriority.HIGH
    assert new_job.status is JobStatus.QUEUED
    assert new_job.payload["options"]["article_limit"] == 7


def test_retry_log_without_job_enqueues_from_source(conn, make_source):
    source = make_source()
    log_id = _record(conn, source.id, "error")
    new_job = get_job(conn, retry_log(conn, log_id, defaults=CrawlOptions(article_limit=2)))
    assert new_job.source_id == source.id
    assert new_job.retry_of is None
    assert new_job.payload["options"]["article_limit"] == 2


def test_retry_log_rejects_success_and_missing(conn, make_source):
    source = make_source()
    ok = _record(conn, source.id)
    with pytest.raises(LogNotRetryable):
        retry_log(conn, ok)
    with pytest.raises(LogNotFound):
        retry_log(conn, 12345)


def test_retry_log_rejects_job_that_is_still_retrying(conn, make_source):
    source = make_source()
    job_id = enqueue_job(
        conn, "crawl", crawl_payload(source, CrawlOptions()), source_id=source.id, max_attempts=3
    )
    claim_next_job(conn, "worker-1")
    fail_job(conn, job_id, "network down", error_kind="NetworkError")
    assert get_job(conn, job_id).status is JobStatus.QUEUED
    log_id = _record(conn, source.id, "error", job_id=job_id)

    with pytest.raises(LogNotRetryable):
        retry_log(conn, log_id)
    assert count_table(conn, "queue_jobs") == 1

    claim_next_job(conn, "worker-1", now=utc_now() + timedelta(minutes=10))
    assert get_job(conn, job_id).status is JobStatus.RUNNING
    with pytest.raises(LogNotRetryable):
        retry_log(conn, log_id)
    assert count_table(conn, "queue_jobs") == 1
