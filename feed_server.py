#!/usr/bin/env python3
"""
Synthetic RSS feeds for ai_generated journals.

Each GeneratedFeed row has an unguessable token. Serving a token replays the
cached selector recipe against the live page and renders the extracted papers
as RSS 2.0 in page order. Stored papers are never read here, so the feed
reflects the page as it is right now.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from feedgen.feed import FeedGenerator

from config import config, get_logger
from errors import EngineError
from extractor import SelectorRecipe, extract
from models import CandidatePaper, DatabaseQueue
from page_fetcher import PageFetcher
from telemetry import trace_span

logger = get_logger("feed_server")

TEXT_PLAIN = "text/plain; charset=utf-8"
RSS_CONTENT_TYPE = "text/xml; charset=utf-8"


@dataclass
class FeedResponse:
    status: int
    body: str
    content_type: str = TEXT_PLAIN
    headers: Dict[str, str] = field(default_factory=dict)


def _sanitize_xml_string(text: Optional[str]) -> str:
    """Drop control characters that XML 1.0 cannot carry."""
    if not text:
        return ''
    return ''.join(
        char for char in str(text)
        if char in ('\t', '\n', '\r') or (ord(char) >= 32 and ord(char) != 0x7F)
    )


def _published(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:10], "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def render_rss(title: str, link: str, description: str, papers: List[CandidatePaper]) -> str:
    """Render candidate papers as an RSS 2.0 document, keeping their order."""
    fg = FeedGenerator()
    fg.load_extension('dc')
    fg.title(_sanitize_xml_string(title) or link)
    fg.link(href=_sanitize_xml_string(link), rel='alternate')
    fg.description(_sanitize_xml_string(description) or ' ')
    fg.generator('Paper Ingest Feed Server')
    fg.lastBuildDate(datetime.now(timezone.utc))

    for paper in papers:
        try:
            # add_entry prepends by default
            fe = fg.add_entry(order='append')
            fe.title(_sanitize_xml_string(paper.title) or 'Untitled')
            link_value = _sanitize_xml_string(paper.url)
            if link_value:
                fe.link(href=link_value)
            guid = _sanitize_xml_string(paper.doi or paper.url or paper.external_id or paper.title)
            fe.guid(guid, permalink=bool(guid.startswith('http')))
            if paper.abstract:
                fe.description(_sanitize_xml_string(paper.abstract))
            if paper.authors:
                fe.dc.dc_creator(_sanitize_xml_string(", ".join(paper.authors)))
            if paper.doi:
                fe.dc.dc_identifier(_sanitize_xml_string(paper.doi))
            published = _published(paper.published_date)
            if published:
                fe.pubDate(published)
        except ValueError as e:
            logger.warning(f"Skipping problematic item '{paper.title[:60]}': {e}")

    return fg.rss_str(pretty=True).decode('utf-8')


class FeedTokenServer:
    """Serves the RSS for a feed token by live extraction."""

    def __init__(self, db: DatabaseQueue, page_fetcher: Optional[PageFetcher] = None):
        self.db = db
        self.page_fetcher = page_fetcher or PageFetcher()

    @trace_span(
        "feed.serve",
        tracer_name="feed_server",
        attr_from_args=lambda self, token: {"feed.token_length": len(token or "")},
    )
    async def serve(self, token: str) -> FeedResponse:
        try:
            feed: Optional[Dict[str, Any]] = await self.db.execute("get_generated_feed_by_token", feed_token=token)
        except Exception as e:
            logger.error(f"Feed lookup failed: {e}")
            return FeedResponse(503, f"Failed to fetch feed: {e}")
        if not feed:
            return FeedResponse(404, "Feed not found")

        recipe = SelectorRecipe.from_dict((feed.get("extraction_config") or {}).get("selectors"))
        if not recipe.is_configured():
            return FeedResponse(503, "Feed not configured. Please regenerate the feed.")

        try:
            page = await self.page_fetcher.fetch_and_reduce(feed["source_url"])
            extraction = extract(page.html, recipe, page.final_url)
        except EngineError as e:
            logger.warning(f"Live extraction failed for journal {feed.get('journal_id')}: {e.message}")
            return FeedResponse(503, f"Failed to fetch feed: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected error serving journal {feed.get('journal_id')}: {e}")
            return FeedResponse(503, f"Failed to fetch feed: {e}")

        title = feed.get("journal_name") or page.title or page.final_url
        body = render_rss(
            title=title,
            link=page.final_url,
            description=f"Latest papers from {feed.get('journal_full_name') or title}",
            papers=extraction.papers,
        )
        logger.info(f"Served {len(extraction.papers)} items for journal {feed.get('journal_id')}")
        return FeedResponse(
            200,
            body,
            content_type=RSS_CONTENT_TYPE,
            headers={"Cache-Control": f"public, max-age={config.FEED_CACHE_SECONDS}"},
        )


__all__ = ["FeedTokenServer", "FeedResponse", "render_rss"]
