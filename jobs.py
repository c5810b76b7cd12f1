#!/usr/bin/env python3
"""
Persistent background job queue.

Jobs live in the ``jobs`` table and are processed by JobWorker. Claiming a
job hides it from other workers for the visibility timeout; if the worker
dies, the lock expires and the job becomes claimable again. Failures are
retried with exponential backoff until ``max_attempts`` is reached.
"""

import asyncio
import traceback
from time import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import config, get_logger
from errors import OperationResult, ValidationFailed
from models import DatabaseQueue
from telemetry import get_tracer, init_telemetry, trace_span
from utils import RetryHelper

logger = get_logger("jobs")
init_telemetry("paper-ingest-jobs")
_tracer = get_tracer("jobs")

JOB_FETCH_JOURNAL = "fetch_journal"
JOB_FETCH_USER = "fetch_user"
JOB_FETCH_ALL = "fetch_all"
JOB_REGENERATE_FEED = "regenerate_feed"
JOB_KINDS = (JOB_FETCH_JOURNAL, JOB_FETCH_USER, JOB_FETCH_ALL, JOB_REGENERATE_FEED)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class JobQueue:
    """Enqueue and inspect jobs."""

    def __init__(self, db: DatabaseQueue):
        self.db = db

    async def enqueue(self, kind: str, payload: Optional[Dict[str, Any]] = None, delay: float = 0,
                      max_attempts: Optional[int] = None) -> int:
        """Queue a job, runnable after ``delay`` seconds. Returns the job id."""
        if kind not in JOB_KINDS:
            raise ValidationFailed(f"Unknown job kind '{kind}'")
        job_id = await self.db.execute(
            "enqueue_job",
            kind=kind,
            payload=payload or {},
            available_at=time() + max(0.0, delay),
            max_attempts=max_attempts or config.JOB_MAX_ATTEMPTS,
        )
        logger.info(f"📥 Queued {kind} job {job_id} {payload or ''}".rstrip())
        return job_id

    async def get(self, job_id: int) -> Optional[Dict[str, Any]]:
        return await self.db.execute("get_job", job_id=job_id)

    async def list(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.db.execute("list_jobs", status=status)


def outcome_error(outcome: Any) -> Optional[str]:
    """Error message carried by a handler's result object, if it represents a failure."""
    if isinstance(outcome, OperationResult):
        return None if outcome.ok else (outcome.error or "Operation failed")
    if getattr(outcome, "status", None) == "error":
        return getattr(outcome, "error", None) or getattr(outcome, "reason", None) or "Job failed"
    return None


class JobWorker:
    """Claims due jobs and dispatches them to handlers by kind."""

    def __init__(self, db: DatabaseQueue, handlers: Dict[str, Handler],
                 visibility_timeout: Optional[float] = None, poll_interval: Optional[float] = None,
                 retry_base_delay: Optional[float] = None, clock: Callable[[], float] = time):
        self.db = db
        self.handlers = handlers
        self.visibility_timeout = visibility_timeout or config.JOB_VISIBILITY_TIMEOUT
        self.poll_interval = poll_interval or config.JOB_POLL_INTERVAL
        base_delay = config.JOB_RETRY_DELAY_BASE if retry_base_delay is None else retry_base_delay
        self.retry_helper = RetryHelper(max_retries=config.JOB_MAX_ATTEMPTS, base_delay=base_delay, max_delay=3600.0)
        self.clock = clock

    async def _dispatch(self, job: Dict[str, Any]) -> Optional[str]:
        handler = self.handlers.get(job["kind"])
        if handler is None:
            return f"No handler for job kind '{job['kind']}'"
        try:
            return outcome_error(await handler(job["payload"]))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Job {job['id']} ({job['kind']}) raised: {e}")
            logger.debug(traceback.format_exc())
            return str(e) or type(e).__name__

    @trace_span("jobs.run_once", tracer_name="jobs")
    async def run_once(self) -> Optional[Dict[str, Any]]:
        """Process one due job. Returns the updated job row, or None when nothing was due."""
        job = await self.db.execute("claim_job", now=self.clock(), visibility_timeout=self.visibility_timeout)
        if job is None:
            return None

        logger.info(f"⚙️ Running {job['kind']} job {job['id']} (attempt {job['attempts']}/{job['max_attempts']})")
        error = await self._dispatch(job)

        if error is None:
            await self.db.execute("complete_job", job_id=job["id"])
            logger.info(f"✅ Job {job['id']} done")
        elif job["attempts"] >= job["max_attempts"] or job["kind"] not in self.handlers:
            await self.db.execute("fail_job", job_id=job["id"], error=error)
            logger.error(f"❌ Job {job['id']} failed permanently: {error}")
        else:
            delay = self.retry_helper.calculate_delay(job["attempts"] - 1)
            await self.db.execute("fail_job", job_id=job["id"], error=error, retry_at=self.clock() + delay)
            logger.warning(f"🔄 Job {job['id']} failed ({error}); retrying in {delay:.0f}s")
        return await self.db.execute("get_job", job_id=job["id"])

    async def run_forever(self) -> None:
        """Poll for jobs until cancelled."""
        logger.info(f"👷 Job worker started (poll every {self.poll_interval}s)")
        while True:
            try:
                job = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Job worker iteration failed: {e}")
                job = None
            if job is None:
                await asyncio.sleep(self.poll_interval)


__all__ = ["JobQueue", "JobWorker", "JOB_KINDS", "JOB_FETCH_JOURNAL", "JOB_FETCH_USER", "JOB_FETCH_ALL",
           "JOB_REGENERATE_FEED", "outcome_error"]
