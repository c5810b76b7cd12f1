#!/usr/bin/env python3
"""
Utility classes and functions shared across the ingestion engine.

Rate limiting, retry backoff, URL/DOI normalization and small text helpers
used by the parsers, the extractor and the deduplicator.
"""

from asyncio import Lock, sleep
from hashlib import md5
from time import time
from typing import Optional
import re
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from bs4 import BeautifulSoup

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

DOI_PATTERN = re.compile(r'10\.\d{4,}/[^\s"\'<>]+')
_DOI_TRAILING = '.,;:)'
_TRACKING_PARAM = re.compile(r'^(utm_\w+|fbclid|gclid)$', re.IGNORECASE)
_WHITESPACE = re.compile(r'\s+')


class RateLimiter:
    """Spaces calls at least 60/requests_per_minute seconds apart; 0 disables it."""

    def __init__(self, requests_per_minute: int):
        self.min_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0
        self._next_slot = 0.0
        self._lock = Lock()

    async def acquire(self):
        if not self.min_interval:
            return
        async with self._lock:
            wait = self._next_slot - time()
            if wait > 0:
                logger.debug(f"AI rate limit: waiting {wait:.2f}s")
                await sleep(wait)
            self._next_slot = time() + self.min_interval


class RetryHelper:
    """Exponential backoff schedule: base_delay * 2**attempt, capped at max_delay.

    Shared by the page fetcher (network retries) and the job worker (job
    redelivery delays).
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 60.0):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds for a 0-based attempt number."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Backing off {delay:.2f}s before attempt {attempt + 2}")
            await sleep(delay)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url or any(ch.isspace() for ch in url):
        return False

    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme not in ('http', 'https') or not parts.hostname:
        return False
    return '.' in parts.hostname or parts.hostname == 'localhost' or parts.hostname.replace('.', '').isdigit()


def normalize_url(url: Optional[str]) -> Optional[str]:
    """Canonical form of a URL for identity comparison.

    Lowercases scheme and host, drops default ports, fragments, tracking
    query parameters and trailing slashes.
    """
    if not url or not isinstance(url, str):
        return None
    url = url.strip()
    if not url:
        return None
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    scheme = parts.scheme.lower()
    host = (parts.hostname or '').lower()
    port = parts.port if parts.port and (scheme, parts.port) not in (('http', 80), ('https', 443)) else None
    netloc = f"{host}:{port}" if port else host
    query = urlencode([(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
                       if not _TRACKING_PARAM.match(k)])
    path = parts.path.rstrip('/')
    return urlunsplit((scheme, netloc, path, query, ''))


def normalize_doi(doi: Optional[str]) -> Optional[str]:
    """Lowercase bare DOI (no resolver prefix), or None."""
    if not doi or not isinstance(doi, str):
        return None
    value = doi.strip()
    value = re.sub(r'^(https?://(dx\.)?doi\.org/|doi:\s*)', '', value, flags=re.IGNORECASE)
    value = value.rstrip(_DOI_TRAILING).strip()
    return value.lower() or None


def extract_doi(text: Optional[str], pattern: Optional[str] = None) -> Optional[str]:
    """Find a DOI inside arbitrary text or a URL.

    Args:
        text: Text to search
        pattern: Optional custom regex; falls back to the standard DOI pattern
                 when it is invalid or does not match

    Returns:
        The DOI with trailing punctuation stripped, or None
    """
    if not text:
        return None
    match = None
    if pattern:
        try:
            match = re.search(pattern, text)
        except re.error:
            logger.debug(f"Invalid DOI pattern {pattern!r}; using default")
    if match is None:
        match = DOI_PATTERN.search(text)
    if match is None:
        return None
    found = match.group(0).rstrip(_DOI_TRAILING)
    # Custom patterns sometimes capture a prefix such as "doi:"
    inner = DOI_PATTERN.search(found)
    return inner.group(0).rstrip(_DOI_TRAILING) if inner else found or None


def collapse_whitespace(text: Optional[str]) -> str:
    """Collapse runs of whitespace to single spaces and strip."""
    if not text:
        return ""
    return _WHITESPACE.sub(' ', text).strip()


def title_date_id(title: Optional[str], published_date: Optional[str] = None) -> Optional[str]:
    """Stable identifier for papers with no DOI, URL or guid.

    Hashes the case-folded, whitespace-collapsed title plus the publication
    date, so the same listing entry maps to the same id on every fetch.
    """
    normalized = collapse_whitespace(title).casefold()
    if not normalized:
        return None
    combined = f"{normalized}|{published_date or ''}"
    return f"title-md5:{md5(combined.encode('utf-8')).hexdigest()}"


def html_to_text(html_content: Optional[str]) -> str:
    """Strip markup from an HTML fragment, returning collapsed plain text."""
    if not html_content:
        return ""
    if '<' not in html_content:
        return collapse_whitespace(html_content)
    soup = BeautifulSoup(html_content, 'html.parser')
    return collapse_whitespace(soup.get_text(' '))


def format_duration(seconds: Optional[float]) -> str:
    """Render seconds as e.g. "2h 5m" or "45s"."""
    total = max(0, int(seconds or 0))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m"), (secs, "s")) if value]
    return " ".join(parts) or "0s"


def truncate_string(text: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Cut text to max_length characters, marking the cut with suffix."""
    if not text or len(text) <= max_length:
        return text
    keep = max(max_length - len(suffix), 0)
    return (text[:keep] + suffix)[:max_length]
