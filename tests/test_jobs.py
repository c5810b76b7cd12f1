import time

import pytest

from errors import OperationResult, ValidationFailed
from fetcher import FetchResult
from jobs import JOB_FETCH_ALL, JOB_FETCH_JOURNAL, JobQueue, JobWorker, outcome_error


class FakeClock:
    def __init__(self):
        self.now = time.time() + 1

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.mark.asyncio
async def test_enqueue_rejects_unknown_kind(db):
    with pytest.raises(ValidationFailed):
        await JobQueue(db).enqueue("send_email", {})


@pytest.mark.asyncio
async def test_successful_job_is_done(db):
    queue = JobQueue(db)
    seen = []

    async def handler(payload):
        seen.append(payload)
        return OperationResult.success()

    job_id = await queue.enqueue(JOB_FETCH_JOURNAL, {"journal_id": 7, "force": True})
    worker = JobWorker(db, {JOB_FETCH_JOURNAL: handler}, clock=FakeClock())

    job = await worker.run_once()

    assert job["id"] == job_id
    assert job["status"] == "done"
    assert job["attempts"] == 1
    assert seen == [{"journal_id": 7, "force": True}]
    assert await worker.run_once() is None


@pytest.mark.asyncio
async def test_failures_retry_with_backoff_then_fail_permanently(db):
    queue = JobQueue(db)
    clock = FakeClock()

    async def handler(payload):
        raise RuntimeError("source down")

    job_id = await queue.enqueue(JOB_FETCH_ALL, {}, max_attempts=2)
    worker = JobWorker(db, {JOB_FETCH_ALL: handler}, retry_base_delay=10, clock=clock)

    job = await worker.run_once()
    assert job["status"] == "queued"
    assert job["attempts"] == 1
    assert job["last_error"] == "source down"
    assert job["available_at"] == pytest.approx(clock.now + 10)

    clock.advance(5)
    assert await worker.run_once() is None

    clock.advance(6)
    job = await worker.run_once()
    assert job["id"] == job_id
    assert job["status"] == "failed"
    assert job["attempts"] == 2


@pytest.mark.asyncio
async def test_error_results_count_as_failures(db):
    queue = JobQueue(db)

    async def handler(payload):
        return FetchResult(journal_id=1, status="error", error="HTTP 500")

    await queue.enqueue(JOB_FETCH_JOURNAL, {"journal_id": 1}, max_attempts=1)
    job = await JobWorker(db, {JOB_FETCH_JOURNAL: handler}, clock=FakeClock()).run_once()

    assert job["status"] == "failed"
    assert job["last_error"] == "HTTP 500"


@pytest.mark.asyncio
async def test_job_without_handler_fails_immediately(db):
    await JobQueue(db).enqueue(JOB_FETCH_ALL, {})

    job = await JobWorker(db, {}, clock=FakeClock()).run_once()

    assert job["status"] == "failed"
    assert "No handler" in job["last_error"]


@pytest.mark.asyncio
async def test_abandoned_job_is_reclaimed_after_visibility_timeout(db):
    queue = JobQueue(db)
    clock = FakeClock()

    async def handler(payload):
        return None

    job_id = await queue.enqueue(JOB_FETCH_ALL, {})
    # A worker claims the job and dies without reporting back
    claimed = await db.execute("claim_job", now=clock(), visibility_timeout=30)
    assert claimed["status"] == "running"

    worker = JobWorker(db, {JOB_FETCH_ALL: handler}, visibility_timeout=30, clock=clock)
    clock.advance(10)
    assert await worker.run_once() is None

    clock.advance(21)
    job = await worker.run_once()
    assert job["id"] == job_id
    assert job["status"] == "done"
    assert job["attempts"] == 2


def test_outcome_error():
    assert outcome_error(None) is None
    assert outcome_error(OperationResult.success()) is None
    assert outcome_error(OperationResult(ok=False, status=400, error="bad")) == "bad"
    assert outcome_error(FetchResult(journal_id=1, status="skipped")) is None
    assert outcome_error(FetchResult(journal_id=1, status="error")) == "Job failed"
