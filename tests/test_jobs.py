import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from newscrawl.models import JobPriority, JobStatus
from newscrawl.queue import (
    Failed,
    JobNotFound,
    JobNotRetryable,
    Queued,
    RetryPolicy,
    claim_next_job,
    complete_job,
    enqueue_job,
    fail_job,
    get_job,
    has_pending_job,
    list_jobs,
    on_failure,
    purge_jobs,
    queue_stats,
    retry_job,
)
from newscrawl.storage import init_db
from newscrawl.utils import utc_now

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_enqueue_and_claim_job_once(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = init_db(str(db_path))
    conn2 = init_db(str(db_path))

    job_id = enqueue_job(conn, "crawl", {"reason": "test"})
    claimed = claim_next_job(conn, "worker-1")

    assert claimed is not None
    assert claimed.id == job_id
    assert claimed.status is JobStatus.RUNNING
    assert claimed.attempts == 1
    assert claimed.locked_by == "worker-1"
    assert claim_next_job(conn2, "worker-2") is None


def test_concurrent_claims_hand_out_each_job_once(tmp_path):
    db_path = str(tmp_path / "state.sqlite3")
    setup = init_db(db_path)
    enqueue_job(setup, "crawl", None, now=T0)
    enqueue_job(setup, "crawl", None, source_id=7, now=T0 + timedelta(seconds=1))
    enqueue_job(setup, "crawl", None, source_id=7, now=T0 + timedelta(seconds=2))
    setup.close()

    workers = 8
    barrier = threading.Barrier(workers)

    def claim(index):
        conn = init_db(db_path)
        try:
            barrier.wait()
            job = claim_next_job(conn, f"worker-{index}")
            return job.id if job else None
        finally:
            conn.close()

    with ThreadPoolExecutor(max_workers=workers) as executor:
        claimed = [job_id for job_id in executor.map(claim, range(workers)) if job_id]

    # one unscoped job plus only one of the two jobs for source 7
    assert len(claimed) == 2
    assert len(set(claimed)) == 2


def test_priority_tiers_then_fifo(conn):
    low = enqueue_job(conn, "crawl", None, priority="low", now=T0)
    normal_first = enqueue_job(conn, "crawl", None, now=T0 + timedelta(seconds=1))
    normal_second = enqueue_job(conn, "crawl", None, now=T0 + timedelta(seconds=2))
    high = enqueue_job(conn, "crawl", None, priority=JobPriority.HIGH, now=T0 + timedelta(seconds=3))

    order = []
    while True:
        job = claim_next_job(conn, "worker-1")
        if job is None:
            break
        order.append(job.id)
        complete_job(conn, job.id, {"ok": True})
    assert order == [high, normal_first, normal_second, low]


def test_future_jobs_are_not_claimed(conn):
    enqueue_job(conn, "crawl", None, available_at=utc_now() + timedelta(hours=1))
    assert claim_next_job(conn, "worker-1") is None


def test_one_running_job_per_source(conn):
    first = enqueue_job(conn, "crawl", None, source_id=7, now=T0)
    second = enqueue_job(conn, "crawl", None, source_id=7, now=T0 + timedelta(seconds=1))
    other = enqueue_job(conn, "crawl", None, source_id=8, now=T0 + timedelta(seconds=2))

    assert claim_next_job(conn, "w1").id == first
    assert claim_next_job(conn, "w2").id == other
    assert claim_next_job(conn, "w3") is None

    complete_job(conn, first, {})
    assert claim_next_job(conn, "w3").id == second


def test_job_lifecycle_records_result(conn):
    job_id = enqueue_job(conn, "crawl", {"source": {"id": 1}})
    claim_next_job(conn, "worker-1")
    assert complete_job(conn, job_id, {"processed": 5}) is True

    job = get_job(conn, job_id)
    assert job.status is JobStatus.COMPLETED
    assert job.result == {"processed": 5}
    assert job.completed_at is not None
    # terminal states are never left
    assert complete_job(conn, job_id, {}) is False
    assert fail_job(conn, job_id, "late failure") is None
    assert get_job(conn, job_id).status is JobStatus.COMPLETED


def test_on_failure_is_pure_and_backs_off():
    policy = RetryPolicy(base_delay_seconds=5, max_delay_seconds=300)
    assert on_failure(1, 3, policy, T0) == Queued(attempt=1, available_at=T0 + timedelta(seconds=5))
    assert on_failure(2, 3, policy, T0) == Queued(attempt=2, available_at=T0 + timedelta(seconds=10))
    assert on_failure(3, 3, policy, T0, "boom") == Failed(error="boom", attempt=3)
    assert policy.delay_for(10) == 300


def test_failed_attempts_requeue_then_fail(conn):
    job_id = enqueue_job(conn, "crawl", None, max_attempts=2, now=T0)
    claim_next_job(conn, "worker-1", now=T0)

    state = fail_job(conn, job_id, "network down", error_kind="NetworkError", now=T0)
    assert isinstance(state, Queued)
    job = get_job(conn, job_id)
    assert job.status is JobStatus.QUEUED
    assert job.error_kind == "NetworkError"
    assert job.locked_by is None

    assert claim_next_job(conn, "worker-1", now=T0) is None
    later = T0 + timedelta(seconds=6)
    assert claim_next_job(conn, "worker-1", now=later).id == job_id

    state = fail_job(conn, job_id, "network down", error_kind="NetworkError", now=later)
    assert isinstance(state, Failed)
    job = get_job(conn, job_id)
    assert job.status is JobStatus.FAILED
    assert job.attempts == 2
    assert job.failed_at is not None


def test_retry_job_requires_failed_status(conn):
    job_id = enqueue_job(conn, "crawl", {"x": 1}, source_id=3, max_attempts=1)
    with pytest.raises(JobNotRetryable):
        retry_job(conn, job_id)
    with pytest.raises(JobNotFound):
        retry_job(conn, "job_missing")

    claim_next_job(conn, "worker-1")
    fail_job(conn, job_id, "boom")
    new_id = retry_job(conn, job_id)
    new_job = get_job(conn, new_id)
    assert new_job.status is JobStatus.QUEUED
    assert new_job.priority is JobPriority.HIGH
    assert new_job.retry_of == job_id
    assert new_job.payload == {"x": 1}
    assert get_job(conn, job_id).status is JobStatus.FAILED


def test_stale_lock_requeues_job(conn):
    job_id = enqueue_job(conn, "crawl", None, now=T0)
    claim_next_job(conn, "worker-1", now=T0)

    later = T0 + timedelta(seconds=120)
    reclaimed = claim_next_job(conn, "worker-2", lock_timeout_seconds=60, now=later)
    assert reclaimed is not None
    assert reclaimed.id == job_id
    assert reclaimed.locked_by == "worker-2"
    assert reclaimed.attempts == 2


def test_pending_stats_and_purge(conn):
    normal = enqueue_job(conn, "crawl", None, source_id=1, schedule_id=4, now=T0)
    high = enqueue_job(conn, "crawl", None, priority="high", source_id=2, now=T0 + timedelta(seconds=1))
    assert has_pending_job(conn, schedule_id=4)
    assert has_pending_job(conn, source_id=2)
    assert not has_pending_job(conn, source_id=2, exclude_job_id=high)

    assert claim_next_job(conn, "worker-1", now=T0 + timedelta(seconds=2)).id == high
    stats = queue_stats(conn)
    assert stats["counts"]["running"] == 1
    assert stats["counts"]["queued"] == 1
    assert stats["queued_by_priority"]["normal"] == 1

    complete_job(conn, high, {}, now=T0 + timedelta(seconds=3))
    assert purge_jobs(conn, 1, now=T0 + timedelta(days=2)) == 1
    assert get_job(conn, high) is None
    assert get_job(conn, normal).status is JobStatus.QUEUED
    assert [job.id for job in list_jobs(conn)] == [normal]
