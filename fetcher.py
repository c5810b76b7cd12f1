#!/usr/bin/env python3
"""
Journal fetch orchestrator.

Turns each journal source into new, deduplicated paper rows:

    rss           fetch_bytes -> (first fetch: detect description layout) -> parse_feed
    ai_generated  cached recipe -> fetch_and_reduce -> extract

then deduplicates against the journal's stored papers, persists the new
ones, stamps ``last_fetched_at`` and appends a fetch log row. Every error is
converted into a FetchResult; nothing raised inside a fetch reaches callers.
"""

import traceback
from asyncio import Semaphore, gather
from dataclasses import dataclass, field
from time import time
from typing import Any, Dict, List, Optional, Set, Tuple

from config import config, get_logger
from dedup import Deduplicator
from errors import EngineError, FeedUnreadable, OperationResult, Unconfigured, ValidationFailed
from extractor import SelectorRecipe, extract
from models import CandidatePaper, DatabaseQueue
from page_fetcher import PageFetcher
from rss_metadata import ANALYSIS_ERROR, analysis_outcome, detect_patterns
from rss_parser import describe_feed, parse_feed, sample_descriptions
from telemetry import get_tracer, init_telemetry, trace_span
from utils import truncate_string, validate_url

# Module-specific logger
logger = get_logger("fetcher")
init_telemetry("paper-ingest-fetcher")
_tracer = get_tracer("fetcher")

SOURCE_RSS = "rss"
SOURCE_AI_GENERATED = "ai_generated"
SOURCE_TYPES = (SOURCE_RSS, SOURCE_AI_GENERATED)

STATUS_SUCCESS = "success"
STATUS_SKIPPED = "skipped"
STATUS_ERROR = "error"

SAMPLE_ITEMS = 3
MAX_LOGGED_ERROR_CHARS = 1000


@dataclass
class FetchResult:
    """Outcome of one journal fetch."""

    journal_id: Optional[int]
    status: str
    papers_fetched: int = 0
    new_papers: int = 0
    execution_time_ms: int = 0
    source_type: Optional[str] = None
    ai_provider: Optional[str] = None
    reason: Optional[str] = None
    next_allowed_at: Optional[float] = None
    error: Optional[str] = None
    debug: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status != STATUS_ERROR

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "journal_id": self.journal_id,
            "status": self.status,
            "papers_fetched": self.papers_fetched,
            "new_papers": self.new_papers,
            "execution_time_ms": self.execution_time_ms,
        }
        for key in ("source_type", "ai_provider", "reason", "next_allowed_at", "error", "debug"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


@dataclass
class BatchResult:
    """Outcome of fetching many journals."""

    status: str
    results: Dict[int, FetchResult] = field(default_factory=dict)
    summary: Dict[str, int] = field(default_factory=dict)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status,
            "results": {str(journal_id): result.to_dict() for journal_id, result in self.results.items()},
            "summary": dict(self.summary),
        }
        if self.reason:
            data["reason"] = self.reason
        return data


class JournalFetcher:
    """Fetches journals and persists new papers through the database queue."""

    # Batch keys ("all", "user:<id>") currently running in this process
    _running_batches: Set[str] = set()

    def __init__(self, db: DatabaseQueue, page_fetcher: Optional[PageFetcher] = None):
        self.db = db
        self.page_fetcher = page_fetcher or PageFetcher()

    async def close(self) -> None:
        await self.page_fetcher.close()

    def _interval_remaining(self, journal: Dict[str, Any], now: float) -> Optional[float]:
        """Seconds until the journal may be fetched again, or None if it may be fetched now."""
        last_fetched = journal.get("last_fetched_at")
        interval = config.MIN_FETCH_INTERVAL_MS / 1000.0
        if not last_fetched or interval <= 0:
            return None
        elapsed = now - float(last_fetched)
        if elapsed >= interval:
            return None
        return interval - elapsed

    async def _description_config(self, journal: Dict[str, Any], content: bytes) -> Optional[Dict[str, Any]]:
        """Stored description layout; analyzed once, on the first fetch that sees the feed."""
        if journal.get("rss_analysis_status"):
            return journal.get("rss_extraction_config")
        try:
            detection = detect_patterns(sample_descriptions(content))
        except FeedUnreadable:
            return None
        except Exception as e:
            logger.warning(f"Description layout detection failed for journal {journal['id']}: {e}")
            await self.db.execute("save_rss_extraction", journal_id=journal["id"], status=ANALYSIS_ERROR,
                                  error_message=truncate_string(str(e), MAX_LOGGED_ERROR_CHARS))
            return None
        status, extraction_config = analysis_outcome(detection)
        await self.db.execute("save_rss_extraction", journal_id=journal["id"], status=status,
                              extraction_config=extraction_config)
        if extraction_config:
            logger.info(f"🧩 Journal {journal['id']} descriptions use {extraction_config['detected_format']} "
                        f"(confidence {extraction_config['confidence']})")
        return extraction_config

    async def _collect_rss(self, journal: Dict[str, Any]) -> List[CandidatePaper]:
        content = await self.page_fetcher.fetch_bytes(journal["source_url"])
        extraction_config = await self._description_config(journal, content)
        return parse_feed(content, base_url=journal["source_url"], extraction_config=extraction_config)

    async def _collect_generated(self, journal: Dict[str, Any]) -> Tuple[List[CandidatePaper], Optional[str]]:
        feed = await self.db.execute("get_generated_feed_by_journal", journal_id=journal["id"])
        selectors = ((feed or {}).get("extraction_config") or {}).get("selectors")
        recipe = SelectorRecipe.from_dict(selectors)
        if not feed or not recipe.is_configured():
            raise Unconfigured("Feed not configured. Please regenerate the feed.")
        url = feed.get("source_url") or journal["source_url"]
        page = await self.page_fetcher.fetch_and_reduce(url)
        result = extract(page.html, recipe, page.final_url)
        return result.papers, feed.get("ai_provider")

    async def _record_attempt(self, journal_id: int, status: str, papers_fetched: int, new_papers: int,
                              error_message: Optional[str], execution_time_ms: int) -> None:
        """Stamp last_fetched_at and append the fetch log row."""
        await self.db.execute("update_journal_last_fetched", journal_id=journal_id)
        await self.db.execute(
            "log_fetch",
            journal_id=journal_id,
            status=status,
            papers_fetched=papers_fetched,
            new_papers=new_papers,
            error_message=error_message,
            execution_time_ms=execution_time_ms,
        )

    @trace_span(
        "fetch_journal",
        tracer_name="fetcher",
        attr_from_args=lambda self, journal, force=False: {
            "journal.id": journal.get("id") if isinstance(journal, dict) else journal,
            "fetch.force": force,
        },
    )
    async def fetch_journal(self, journal: Any, force: bool = False) -> FetchResult:
        """Fetch one journal (a journal row or its id).

        Args:
            journal: Journal row dict, or journal id
            force: Ignore the minimum inter-fetch interval

        Returns:
            FetchResult with status success, skipped or error
        """
        start = time()
        if not isinstance(journal, dict):
            row = await self.db.execute("get_journal", journal_id=journal)
            if row is None:
                return FetchResult(journal_id=journal, status=STATUS_ERROR, error="Journal not found")
            journal = row

        journal_id = journal["id"]
        source_type = journal.get("source_type") or SOURCE_RSS
        name = journal.get("name") or f"journal {journal_id}"

        if not force:
            remaining = self._interval_remaining(journal, start)
            if remaining is not None:
                logger.info(f"⏭️ Skipping {name}: fetched less than {config.MIN_FETCH_INTERVAL_MS}ms ago")
                return FetchResult(
                    journal_id=journal_id,
                    status=STATUS_SKIPPED,
                    source_type=source_type,
                    reason=f"Fetched too recently; retry in {remaining:.1f}s",
                    next_allowed_at=start + remaining,
                )

        ai_provider = None
        try:
            if source_type == SOURCE_RSS:
                candidates = await self._collect_rss(journal)
            elif source_type == SOURCE_AI_GENERATED:
                candidates, ai_provider = await self._collect_generated(journal)
            else:
                raise ValidationFailed(f"Unknown source type '{source_type}'")

            identities = await self.db.execute("get_paper_identities", journal_id=journal_id)
            new, duplicates = Deduplicator.from_identities(identities).partition(candidates)
            saved = await self.db.execute(
                "save_papers", journal_id=journal_id, papers=[paper.to_dict() for paper in new]
            )
            elapsed_ms = int((time() - start) * 1000)
            await self._record_attempt(journal_id, STATUS_SUCCESS, len(candidates), saved, None, elapsed_ms)
            logger.info(f"✅ {name}: {len(candidates)} fetched, {saved} new, {len(duplicates)} duplicates "
                        f"({elapsed_ms}ms)")
            return FetchResult(
                journal_id=journal_id,
                status=STATUS_SUCCESS,
                papers_fetched=len(candidates),
                new_papers=saved,
                execution_time_ms=elapsed_ms,
                source_type=source_type,
                ai_provider=ai_provider,
            )
        except EngineError as e:
            logger.warning(f"❌ {name}: {e.message}")
            result = FetchResult(journal_id=journal_id, status=STATUS_ERROR, source_type=source_type,
                                 ai_provider=ai_provider, error=e.message, debug=e.debug)
        except Exception as e:
            logger.error(f"❌ Unexpected error fetching {name}: {e}")
            logger.debug(traceback.format_exc())
            result = FetchResult(journal_id=journal_id, status=STATUS_ERROR, source_type=source_type,
                                 ai_provider=ai_provider, error=str(e) or type(e).__name__)

        result.execution_time_ms = int((time() - start) * 1000)
        try:
            await self._record_attempt(journal_id, STATUS_ERROR, 0, 0,
                                       truncate_string(result.error, MAX_LOGGED_ERROR_CHARS),
                                       result.execution_time_ms)
        except Exception as e:
            logger.error(f"Could not record failed fetch for {name}: {e}")
        return result

    async def _run_batch(self, key: str, journals: List[Dict[str, Any]], force: bool) -> BatchResult:
        start = time()
        semaphore = Semaphore(config.FETCH_CONCURRENCY)

        async def fetch_with_semaphore(journal: Dict[str, Any]) -> FetchResult:
            async with semaphore:
                return await self.fetch_journal(journal, force=force)

        outcomes = await gather(*(fetch_with_semaphore(j) for j in journals), return_exceptions=True)

        results: Dict[int, FetchResult] = {}
        for journal, outcome in zip(journals, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Fetch task for journal {journal['id']} crashed: {outcome}")
                outcome = FetchResult(journal_id=journal["id"], status=STATUS_ERROR, error=str(outcome))
            results[journal["id"]] = outcome

        summary = {
            "journal_count": len(journals),
            "total_fetched": sum(r.papers_fetched for r in results.values()),
            "total_new": sum(r.new_papers for r in results.values()),
            "error_count": sum(1 for r in results.values() if r.status == STATUS_ERROR),
            "skipped_count": sum(1 for r in results.values() if r.status == STATUS_SKIPPED),
        }
        elapsed_ms = int((time() - start) * 1000)
        all_failed = journals and summary["error_count"] == len(journals)
        await self.db.execute(
            "log_fetch",
            journal_id=None,
            status=STATUS_ERROR if all_failed else STATUS_SUCCESS,
            papers_fetched=summary["total_fetched"],
            new_papers=summary["total_new"],
            error_message=f"{summary['error_count']} of {len(journals)} journals failed" if summary["error_count"] else None,
            execution_time_ms=elapsed_ms,
        )
        logger.info(f"📊 Batch {key}: {summary['journal_count']} journals, {summary['total_new']} new papers, "
                    f"{summary['error_count']} errors, {summary['skipped_count']} skipped ({elapsed_ms}ms)")
        return BatchResult(status=STATUS_SUCCESS, results=results, summary=summary)

    async def _guarded_batch(self, key: str, journals_op: str, force: bool, **params) -> BatchResult:
        if key in JournalFetcher._running_batches:
            logger.info(f"⏭️ Batch {key} already running; skipping")
            return BatchResult(status=STATUS_SKIPPED, reason="Batch fetch already running")
        JournalFetcher._running_batches.add(key)
        try:
            journals = await self.db.execute(journals_op, active_only=True, **params)
            return await self._run_batch(key, journals, force)
        except Exception as e:
            logger.error(f"Batch {key} failed: {e}")
            return BatchResult(status=STATUS_ERROR, reason=str(e))
        finally:
            JournalFetcher._running_batches.discard(key)

    @trace_span("fetch_all", tracer_name="fetcher")
    async def fetch_all(self, force: bool = False) -> BatchResult:
        """Fetch every active journal with bounded concurrency."""
        return await self._guarded_batch("all", "list_journals", force)

    @trace_span(
        "fetch_for_user",
        tracer_name="fetcher",
        attr_from_args=lambda self, user_id, force=False: {"user.id": user_id},
    )
    async def fetch_for_user(self, user_id: int, force: bool = False) -> BatchResult:
        """Fetch one user's active journals with bounded concurrency."""
        return await self._guarded_batch(f"user:{user_id}", "list_journals", force, user_id=user_id)

    @trace_span(
        "test_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def test_feed(self, url: str) -> OperationResult:
        """Dry-run a candidate RSS URL without persisting anything."""
        if not url or not validate_url(url.strip()):
            return OperationResult.from_error(ValidationFailed("Invalid URL format"))
        url = url.strip()
        try:
            content = await self.page_fetcher.fetch_bytes(url)
            detection = detect_patterns(sample_descriptions(content))
            layout_status, extraction_config = analysis_outcome(detection)
            feed = describe_feed(content, base_url=url, extraction_config=extraction_config)
        except EngineError as e:
            logger.warning(f"Feed test failed for {url}: {e.message}")
            return OperationResult.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error testing feed {url}: {e}")
            return OperationResult.from_error(e)

        candidates = feed["candidates"]
        return OperationResult.success({
            "title": feed["title"],
            "item_count": len(candidates),
            "sample_items": [
                {"title": c.title, "url": c.url, "doi": c.doi, "published_date": c.published_date}
                for c in candidates[:SAMPLE_ITEMS]
            ],
            "description_layout": {
                "status": layout_status,
                "detected_format": detection.get("detected_format"),
                "confidence": detection.get("confidence"),
                "labels": detection.get("labels") or {},
            },
        })


__all__ = ["JournalFetcher", "FetchResult", "BatchResult", "SOURCE_TYPES", "SOURCE_RSS", "SOURCE_AI_GENERATED"]
