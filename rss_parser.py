#!/usr/bin/env python3
"""
RSS/Atom parsing into candidate papers.

A pure transform: raw feed bytes in, ordered CandidatePaper list out. Only a
document that feedparser cannot make sense of at all raises FeedUnreadable;
individual bad fields degrade to None.
"""

import re
from typing import Any, Dict, List, Optional, Tuple

import feedparser

from config import get_logger
from dates import parse_date
from errors import FeedUnreadable
from models import CandidatePaper
from rss_metadata import extract_metadata
from telemetry import trace_span
from utils import extract_doi, html_to_text, title_date_id

logger = get_logger("rss_parser")

MIN_ABSTRACT_LENGTH = 50

# Journal-level blurbs some publishers put in every item description
BOILERPLATE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r'^The International Journal of',
        r'^This journal publishes',
        r'^Subscribe to',
        r'^Access the full',
        r'^Click here',
        r'^Read the full',
        r'publishes original research',
    )
]

_AUTHOR_SPLIT = re.compile(r'\s*[;,]\s*|\s+and\s+')


def _get(entry: Any, key: str) -> Any:
    """Read a field from a FeedParserDict or a plain mapping."""
    if hasattr(entry, 'get'):
        return entry.get(key)
    return getattr(entry, key, None)


def clean_abstract(raw: Optional[str]) -> Optional[str]:
    """Plain-text abstract, or None when missing, too short or boilerplate."""
    text = html_to_text(raw)
    if len(text) <= MIN_ABSTRACT_LENGTH:
        return None
    if any(pattern.search(text) for pattern in BOILERPLATE_PATTERNS):
        return None
    return text


def extract_authors(entry: Any) -> List[str]:
    """Author names in feed order."""
    names: List[str] = []
    for author in _get(entry, 'authors') or []:
        name = author.get('name') if isinstance(author, dict) else None
        if name:
            names.extend(n for n in _AUTHOR_SPLIT.split(name) if n.strip())
    if not names:
        single = _get(entry, 'author') or _get(entry, 'dc_creator')
        if isinstance(single, str):
            names = [n for n in _AUTHOR_SPLIT.split(single) if n.strip()]
    seen = set()
    ordered = []
    for name in (n.strip() for n in names):
        if name and name not in seen:
            seen.add(name)
            ordered.append(name)
    return ordered


def extract_entry_doi(entry: Any) -> Optional[str]:
    """DOI from prism/dc tags, falling back to the entry link."""
    for key in ('prism_doi', 'dc_identifier'):
        value = _get(entry, key)
        if isinstance(value, str):
            doi = extract_doi(value)
            if doi:
                return doi
    return extract_doi(_get(entry, 'link') or _get(entry, 'id'))


def entry_description(entry: Any) -> Optional[str]:
    return _get(entry, 'description') or _get(entry, 'summary')


def entry_to_candidate(entry: Any, extraction_config: Optional[Dict[str, Any]] = None) -> Optional[CandidatePaper]:
    """Normalize one feed entry; entries without a title are dropped.

    When the journal has a description extraction config, metadata found in
    the description fills whatever the feed elements left empty, and the
    labelled abstract replaces the raw description.
    """
    description = entry_description(entry)
    embedded = extract_metadata(description, extraction_config)

    title = html_to_text(_get(entry, 'title')) or embedded.get('title')
    if not title:
        return None

    url = _get(entry, 'link')
    doi = extract_entry_doi(entry) or embedded.get('doi')

    published = None
    for key in ('published_parsed', 'updated_parsed', 'created_parsed'):
        published = parse_date(_get(entry, key))
        if published:
            break
    if not published:
        for key in ('published', 'updated', 'prism_publicationdate', 'dc_date'):
            published = parse_date(_get(entry, key))
            if published:
                break

    published = published or embedded.get('published_date')

    if 'abstract' in embedded:
        abstract = clean_abstract(embedded['abstract'])
    elif set(embedded) - {'doi'}:
        # The description is a metadata block without an abstract label
        abstract = None
    else:
        abstract = clean_abstract(description)
    authors = extract_authors(entry) or embedded.get('authors') or []

    return CandidatePaper(
        title=title,
        url=url,
        authors=authors,
        abstract=abstract,
        doi=doi,
        published_date=published,
        external_id=doi or _get(entry, 'id') or url or title_date_id(title, published),
    )


def _parse_raw(content: bytes, base_url: Optional[str] = None) -> Any:
    feed = feedparser.parse(
        content,
        sanitize_html=True,
        resolve_relative_uris=True,
        response_headers={'content-location': base_url} if base_url else None,
    )
    entries = feed.get('entries') or []

    if feed.get('bozo'):
        problem = feed.get('bozo_exception')
        if not entries and not feed.get('version'):
            raise FeedUnreadable(f"Feed unreadable: {problem or 'unrecognised document'}")
        logger.warning(f"Feed parsing warning: {problem}")

    if not entries and not feed.get('version'):
        raise FeedUnreadable("Feed unreadable: no RSS or Atom structure found")
    return feed


def _parse_document(content: bytes, base_url: Optional[str] = None,
                    extraction_config: Optional[Dict[str, Any]] = None) -> Tuple[Dict[str, Any], List[CandidatePaper]]:
    feed = _parse_raw(content, base_url)
    candidates = []
    for entry in feed.get('entries') or []:
        candidate = entry_to_candidate(entry, extraction_config)
        if candidate is None:
            logger.debug("Skipping feed entry without a title")
            continue
        candidates.append(candidate)
    logger.debug(f"Parsed {len(candidates)} candidates from {feed.get('version') or 'feed'}")
    return feed.get('feed') or {}, candidates


@trace_span(
    "rss.parse",
    tracer_name="rss_parser",
    attr_from_args=lambda content, base_url=None, extraction_config=None: {"rss.bytes": len(content or b"")},
)
def parse_feed(content: bytes, base_url: Optional[str] = None,
               extraction_config: Optional[Dict[str, Any]] = None) -> List[CandidatePaper]:
    """Parse a raw RSS/Atom document into candidate papers.

    Args:
        content: Raw document bytes
        base_url: Used to resolve relative links
        extraction_config: Journal's description extraction config, if any

    Raises:
        FeedUnreadable: when the document is not a recognisable feed
    """
    return _parse_document(content, base_url, extraction_config)[1]


def sample_descriptions(content: bytes, limit: int = 5) -> List[str]:
    """Non-empty item descriptions from the first entries, for layout detection."""
    descriptions = []
    for entry in _parse_raw(content).get('entries') or []:
        description = entry_description(entry)
        if description and description.strip():
            descriptions.append(description)
        if len(descriptions) >= limit:
            break
    return descriptions


def describe_feed(content: bytes, base_url: Optional[str] = None,
                  extraction_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Channel title plus parsed candidates, for dry-run feed tests."""
    channel, candidates = _parse_document(content, base_url, extraction_config)
    return {
        'title': html_to_text(channel.get('title')) or None,
        'candidates': candidates,
    }


__all__ = ["parse_feed", "describe_feed", "sample_descriptions", "entry_to_candidate", "clean_abstract"]
