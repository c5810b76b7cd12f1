#!/usr/bin/env python3
"""
Journal management operations.

JournalService sits between the management surface (HTTP routes, CLI) and
the engine: it validates input, runs page analysis for ai_generated sources
and description layout analysis for rss sources,
persists journals and recipes, and queues background fetches. Every method
returns an OperationResult; engine errors are mapped to HTTP-style statuses.
"""

from typing import Any, Dict, List, Optional, Tuple

from analyzer import Listing, PageStructureAnalyzer, Redirect
from config import config, get_logger
from errors import EngineError, NotAListingPage, OperationResult, ValidationFailed
from extractor import extract
from fetcher import SOURCE_AI_GENERATED, SOURCE_RSS, SOURCE_TYPES
from jobs import JOB_FETCH_JOURNAL, JOB_FETCH_USER, JobQueue
from llm_client import AICredentials
from models import DatabaseQueue
from rss_metadata import SAVE_CONFIDENCE, analysis_outcome, detect_patterns
from rss_parser import sample_descriptions
from telemetry import trace_span
from utils import normalize_url, validate_url

logger = get_logger("journals")

DEFAULT_COLOR = "bg-gray-500"
MAX_NAME_LENGTH = 100


def _not_found() -> OperationResult:
    return OperationResult(ok=False, status=404, error="Journal not found")


def _not_a_listing(analysis) -> NotAListingPage:
    if isinstance(analysis, Redirect):
        message = (f"This page is not an article list ({analysis.page_type}). "
                   f"Try the suggested article list URL: {analysis.target_url}")
        return NotAListingPage(message, analysis.page_type, suggested_url=analysis.target_url,
                               reason=analysis.reason)
    return NotAListingPage(
        f"This page is not an article list ({analysis.page_type}) and no article list link was found",
        analysis.page_type,
        reason=analysis.reason,
    )


class JournalService:
    """User-facing journal operations."""

    def __init__(self, db: DatabaseQueue, analyzer: Optional[PageStructureAnalyzer] = None,
                 queue: Optional[JobQueue] = None):
        self.db = db
        self.analyzer = analyzer or PageStructureAnalyzer()
        self.queue = queue or JobQueue(db)

    async def _owned_journal(self, journal_id: int, user_id: Optional[int]) -> Optional[Dict[str, Any]]:
        """Journal row, or None when missing or owned by someone else."""
        journal = await self.db.execute("get_journal", journal_id=journal_id)
        if journal is None or (user_id is not None and journal["user_id"] != user_id):
            return None
        return journal

    async def _analyze_listing(self, url: str, credentials: Optional[AICredentials]) -> Listing:
        """Run auto-redirect analysis and insist on an article list."""
        analysis = await self.analyzer.analyze_with_redirects(url, credentials=credentials)
        if not isinstance(analysis, Listing):
            raise _not_a_listing(analysis)
        return analysis

    async def _verify_recipe(self, listing: Listing) -> int:
        """Replay the new recipe once against the live page; returns the paper count."""
        page = await self.analyzer.page_fetcher.fetch_and_reduce(listing.url)
        return len(extract(page.html, listing.recipe, page.final_url).papers)

    async def _store_recipe(self, journal_id: int, user_id: int, listing: Listing) -> Dict[str, Any]:
        return await self.db.execute(
            "save_generated_feed",
            journal_id=journal_id,
            user_id=user_id,
            source_url=listing.url,
            extraction_config=listing.extraction_config(),
            ai_provider=listing.provider,
            ai_model=listing.model,
        )

    @trace_span(
        "journals.create",
        tracer_name="journals",
        attr_from_args=lambda self, user_id, name, source_url, *args, **kwargs: {"journal.url": source_url},
    )
    async def create_journal(self, user_id: int, name: str, source_url: str, source_type: str = SOURCE_RSS,
                             color: Optional[str] = None, full_name: Optional[str] = None,
                             credentials: Optional[AICredentials] = None,
                             enqueue_fetch: bool = True) -> OperationResult:
        """Register a journal; ai_generated sources are analyzed before anything is stored."""
        try:
            name = (name or "").strip()
            source_url = (source_url or "").strip()
            if not name or len(name) > MAX_NAME_LENGTH:
                raise ValidationFailed(f"Journal name is required (max {MAX_NAME_LENGTH} characters)")
            if not validate_url(source_url):
                raise ValidationFailed("Invalid URL format")
            if source_type not in SOURCE_TYPES:
                raise ValidationFailed(f"source_type must be one of: {', '.join(SOURCE_TYPES)}")

            listing = None
            papers_count = None
            if source_type == SOURCE_AI_GENERATED:
                listing = await self._analyze_listing(source_url, credentials)
                papers_count = await self._verify_recipe(listing)
                source_url = listing.url

            journal_id = await self.db.execute(
                "create_journal",
                user_id=user_id,
                name=name,
                source_url=source_url,
                source_type=source_type,
                color=color or DEFAULT_COLOR,
                full_name=full_name,
            )
            data: Dict[str, Any] = {}
            if listing is not None:
                feed = await self._store_recipe(journal_id, user_id, listing)
                data.update({
                    "feed_token": feed["feed_token"],
                    "papers_count": papers_count,
                    "provider": listing.provider,
                    "redirect_history": listing.redirect_history,
                })
            if enqueue_fetch:
                data["job_id"] = await self.queue.enqueue(JOB_FETCH_JOURNAL, {"journal_id": journal_id, "force": True})
            data["journal"] = await self.db.execute("get_journal", journal_id=journal_id)
            logger.info(f"➕ Created {source_type} journal {journal_id} '{name}' for user {user_id}")
            return OperationResult.success(data, status=201)
        except EngineError as e:
            logger.warning(f"Could not create journal '{name}': {e.message}")
            return OperationResult.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error creating journal '{name}': {e}")
            return OperationResult.from_error(e)

    async def update_journal(self, journal_id: int, user_id: Optional[int], fields: Dict[str, Any]) -> OperationResult:
        """Change name, full name, color or source URL. The source type is immutable."""
        journal = await self._owned_journal(journal_id, user_id)
        if journal is None:
            return _not_found()
        try:
            if "source_type" in fields and fields["source_type"] != journal["source_type"]:
                raise ValidationFailed("source_type cannot be changed after creation")
            updates = {k: v for k, v in fields.items() if k in ("name", "full_name", "color", "source_url")}
            if "name" in updates:
                updates["name"] = (updates["name"] or "").strip()
                if not updates["name"] or len(updates["name"]) > MAX_NAME_LENGTH:
                    raise ValidationFailed(f"Journal name is required (max {MAX_NAME_LENGTH} characters)")
            if "source_url" in updates:
                updates["source_url"] = (updates["source_url"] or "").strip()
                if not validate_url(updates["source_url"]):
                    raise ValidationFailed("Invalid URL format")
            if updates:
                await self.db.execute("update_journal", journal_id=journal_id, fields=updates)
            return OperationResult.success({"journal": await self.db.execute("get_journal", journal_id=journal_id)})
        except EngineError as e:
            return OperationResult.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error updating journal {journal_id}: {e}")
            return OperationResult.from_error(e)

    async def _set_active(self, journal_id: int, user_id: Optional[int], active: bool) -> OperationResult:
        journal = await self._owned_journal(journal_id, user_id)
        if journal is None:
            return _not_found()
        await self.db.execute("set_journal_active", journal_id=journal_id, active=active)
        logger.info(f"{'Restored' if active else 'Deactivated'} journal {journal_id}")
        return OperationResult.success({"journal": await self.db.execute("get_journal", journal_id=journal_id)})

    async def deactivate_journal(self, journal_id: int, user_id: Optional[int] = None) -> OperationResult:
        return await self._set_active(journal_id, user_id, False)

    async def activate_journal(self, journal_id: int, user_id: Optional[int] = None) -> OperationResult:
        return await self._set_active(journal_id, user_id, True)

    @trace_span(
        "journals.regenerate",
        tracer_name="journals",
        attr_from_args=lambda self, journal_id, user_id=None, credentials=None: {"journal.id": journal_id},
    )
    async def regenerate(self, journal_id: int, user_id: Optional[int] = None,
                         credentials: Optional[AICredentials] = None) -> OperationResult:
        """Re-derive the selector recipe; on failure the previous recipe stays in place."""
        journal = await self._owned_journal(journal_id, user_id)
        if journal is None:
            return _not_found()
        if journal["source_type"] != SOURCE_AI_GENERATED:
            return OperationResult.from_error(ValidationFailed("This journal is not AI-generated"))

        try:
            listing = await self._analyze_listing(journal["source_url"], credentials)
            papers_count = await self._verify_recipe(listing)
            feed = await self._store_recipe(journal_id, journal["user_id"], listing)
        except EngineError as e:
            logger.warning(f"🔁 Regeneration failed for journal {journal_id}: {e.message}")
            await self.db.execute("mark_generated_feed_error", journal_id=journal_id, error_message=e.message)
            return OperationResult.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error regenerating journal {journal_id}: {e}")
            return OperationResult.from_error(e)

        logger.info(f"🔁 Regenerated recipe for journal {journal_id} ({papers_count} papers on page)")
        return OperationResult.success({
            "message": "Feed regenerated successfully",
            "papers_count": papers_count,
            "feed_token": feed["feed_token"],
            "provider": listing.provider,
        })

    @trace_span(
        "journals.test_page",
        tracer_name="journals",
        attr_from_args=lambda self, url, auto_redirect=True, credentials=None: {"page.url": url},
    )
    async def test_page(self, url: str, auto_redirect: bool = True,
                        credentials: Optional[AICredentials] = None) -> OperationResult:
        """Dry-run page analysis; nothing is stored."""
        if not url or not validate_url(url.strip()):
            return OperationResult.from_error(ValidationFailed("Invalid URL format"))
        try:
            if auto_redirect:
                analysis = await self.analyzer.analyze_with_redirects(url.strip(), credentials=credentials)
            else:
                analysis = await self.analyzer.analyze(url.strip(), credentials=credentials)
        except EngineError as e:
            return OperationResult.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error testing page {url}: {e}")
            return OperationResult.from_error(e)

        if isinstance(analysis, Listing):
            return OperationResult.success(analysis.to_dict())
        result = OperationResult.from_error(_not_a_listing(analysis))
        result.data = analysis.to_dict()
        return result

    async def _ask_ai_about_descriptions(self, journal: Dict[str, Any], descriptions: List[str],
                                         detection: Dict[str, Any],
                                         credentials: Optional[AICredentials]) -> Tuple[Dict[str, Any], Optional[str]]:
        """Keep whichever of pattern detection and the AI answer scores higher."""
        try:
            answer = await self.analyzer.analyze_descriptions(journal["source_url"], descriptions, credentials)
        except EngineError as e:
            logger.warning(f"AI description analysis unavailable for journal {journal['id']}: {e.message}")
            return detection, e.message
        if float(answer.get("confidence") or 0) > float(detection.get("confidence") or 0):
            return answer, None
        return detection, None

    @trace_span(
        "journals.analyze_rss",
        tracer_name="journals",
        attr_from_args=lambda self, journal_id, *args, **kwargs: {"journal.id": journal_id},
    )
    async def analyze_rss(self, journal_id: int, user_id: Optional[int] = None, use_ai: bool = True,
                          credentials: Optional[AICredentials] = None) -> OperationResult:
        """Re-detect how an rss journal's item descriptions embed paper metadata.

        Pattern detection runs first. When it is not confident enough to store
        and use_ai is set, the AI provider is asked as well and its answer is
        scored against the same descriptions. A failed analysis leaves the
        stored config untouched.
        """
        journal = await self._owned_journal(journal_id, user_id)
        if journal is None:
            return _not_found()
        if journal["source_type"] != SOURCE_RSS:
            return OperationResult.from_error(ValidationFailed("This journal is not an RSS journal"))

        try:
            content = await self.analyzer.page_fetcher.fetch_bytes(journal["source_url"])
            descriptions = sample_descriptions(content)
            detection = detect_patterns(descriptions)
            ai_error = None
            if use_ai and descriptions and float(detection["confidence"]) < SAVE_CONFIDENCE:
                detection, ai_error = await self._ask_ai_about_descriptions(journal, descriptions, detection,
                                                                            credentials)
            status, extraction_config = analysis_outcome(detection)
            await self.db.execute("save_rss_extraction", journal_id=journal_id, status=status,
                                  extraction_config=extraction_config)
        except EngineError as e:
            logger.warning(f"🧩 Description analysis failed for journal {journal_id}: {e.message}")
            return OperationResult.from_error(e)
        except Exception as e:
            logger.error(f"Unexpected error analyzing descriptions of journal {journal_id}: {e}")
            return OperationResult.from_error(e)

        logger.info(f"🧩 Journal {journal_id} description analysis: {status} "
                    f"({detection.get('detected_format') or 'no layout'}, {detection.get('pattern_source')})")
        data = {
            "status": status,
            "detected_format": detection.get("detected_format"),
            "confidence": detection.get("confidence"),
            "labels": detection.get("labels") or {},
            "pattern_source": detection.get("pattern_source"),
            "sample_count": len(descriptions),
            "journal": await self.db.execute("get_journal", journal_id=journal_id),
        }
        if ai_error:
            data["ai_error"] = ai_error
        return OperationResult.success(data)

    async def clear_rss_extraction(self, journal_id: int, user_id: Optional[int] = None) -> OperationResult:
        """Drop the stored description layout; the next fetch detects it again."""
        journal = await self._owned_journal(journal_id, user_id)
        if journal is None:
            return _not_found()
        await self.db.execute("clear_rss_extraction", journal_id=journal_id)
        logger.info(f"🧩 Cleared description layout for journal {journal_id}")
        return OperationResult.success({"journal": await self.db.execute("get_journal", journal_id=journal_id)})

    async def register_user(self, user_id: int) -> OperationResult:
        """Seed the configured default journals and queue the user's first ingestion."""
        existing = await self.db.execute("list_journals", user_id=user_id, active_only=False)
        known = {normalize_url(j["source_url"]) for j in existing}
        created = []
        failed = []
        for default in config.DEFAULT_JOURNALS:
            if normalize_url(default["source_url"]) in known:
                continue
            result = await self.create_journal(
                user_id,
                default["name"],
                default["source_url"],
                source_type=default.get("source_type") or SOURCE_RSS,
                color=default.get("color"),
                full_name=default.get("full_name"),
                enqueue_fetch=False,
            )
            if result.ok:
                created.append(result.data["journal"]["id"])
            else:
                failed.append({"name": default["name"], "error": result.error})
        job_id = await self.queue.enqueue(JOB_FETCH_USER, {"user_id": user_id})
        logger.info(f"👤 Registered user {user_id}: {len(created)} default journals, fetch job {job_id}")
        return OperationResult.success({"created_journal_ids": created, "failed": failed, "job_id": job_id})


__all__ = ["JournalService"]
