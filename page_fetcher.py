#!/usr/bin/env python3
"""
HTTP retrieval of feeds and journal pages.

PageFetcher wraps a shared aiohttp session. ``fetch_bytes`` is the plain GET
used for real RSS feeds; ``fetch_and_reduce`` follows redirects by hand
(recording every hop, including meta-refresh and trivial JavaScript
redirects) and shrinks the final HTML to a budget an AI classifier can take.
"""

import re
from asyncio import TimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin

from aiohttp import ClientError, ClientSession, ClientTimeout, ClientResponseError, TooManyRedirects
from bs4 import BeautifulSoup, Comment

from config import config, get_logger
from errors import RedirectLimitExceeded, SourceUnreadable
from telemetry import trace_span
from utils import RetryHelper, collapse_whitespace

logger = get_logger("page_fetcher")

HTTP_REDIRECT_CODES = (301, 302, 303, 307, 308)
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
TRUNCATION_MARKER = "... [truncated]"
BOILERPLATE_TAGS = ["script", "style", "svg", "noscript", "iframe", "nav", "footer", "header", "link", "meta"]

# Client-side redirects are only trusted on near-empty pages
CLIENT_REDIRECT_MAX_TEXT = 500
_META_REFRESH_URL = re.compile(r'url\s*=\s*[\'"]?([^\'";]+)', re.IGNORECASE)
_JS_REDIRECTS = [
    re.compile(r'(?:window\.|document\.|top\.)?location(?:\.href)?\s*=\s*["\']([^"\']+)["\']'),
    re.compile(r'location\.(?:replace|assign)\(\s*["\']([^"\']+)["\']\s*\)'),
]

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9,ja;q=0.8",
}
FEED_HEADERS = {
    "Accept": "application/rss+xml,application/atom+xml,application/xml;q=0.9,text/xml;q=0.8,*/*;q=0.5",
}


@dataclass
class RedirectHop:
    from_url: str
    to_url: str
    page_type: str

    def to_dict(self) -> Dict[str, str]:
        return {"from": self.from_url, "to": self.to_url, "page_type": self.page_type}


@dataclass
class PageFetchResult:
    """Outcome of fetch_and_reduce."""

    requested_url: str
    final_url: str
    html: str
    reduced_html: str
    original_size: int
    reduced_size: int
    truncated: bool
    content_type: str
    title: Optional[str] = None
    redirect_history: List[RedirectHop] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested_url": self.requested_url,
            "final_url": self.final_url,
            "original_size": self.original_size,
            "reduced_size": self.reduced_size,
            "truncated": self.truncated,
            "content_type": self.content_type,
            "title": self.title,
            "redirect_history": [hop.to_dict() for hop in self.redirect_history],
        }


def reduce_html(html: str, budget: Optional[int] = None) -> Tuple[str, bool]:
    """Strip boilerplate from HTML and cap it at ``budget`` UTF-8 bytes.

    Removes scripts, styles, navigation chrome and comments, drops inline
    style, event handler and data-* attributes, and collapses whitespace.

    Returns:
        (reduced_html, truncated)
    """
    budget = budget or config.REDUCED_HTML_MAX_BYTES
    soup = BeautifulSoup(html or "", "html.parser")

    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()
    for tag in soup(BOILERPLATE_TAGS):
        tag.decompose()
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            lowered = attr.lower()
            if lowered == "style" or lowered.startswith("on") or lowered.startswith("data-"):
                del tag[attr]

    text = collapse_whitespace(str(soup))
    text = re.sub(r">\s+<", "><", text)

    encoded = text.encode("utf-8")
    if len(encoded) <= budget:
        return text, False
    # errors="ignore" drops a multi-byte character cut in half at the boundary
    return encoded[:budget].decode("utf-8", errors="ignore") + TRUNCATION_MARKER, True


def detect_client_redirect(html: str, base_url: str) -> Optional[Tuple[str, str]]:
    """Find a meta-refresh or trivial JavaScript redirect.

    Returns:
        (absolute_target_url, kind) or None
    """
    soup = BeautifulSoup(html or "", "html.parser")
    meta = soup.find("meta", attrs={"http-equiv": re.compile(r"^refresh$", re.IGNORECASE)})
    if meta and meta.get("content"):
        match = _META_REFRESH_URL.search(meta["content"])
        if match:
            return urljoin(base_url, match.group(1).strip()), "meta_refresh"

    scripts = " ".join(script.get_text() for script in soup.find_all("script"))
    if not scripts:
        return None
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    if len(collapse_whitespace(soup.get_text(" "))) > CLIENT_REDIRECT_MAX_TEXT:
        return None
    for pattern in _JS_REDIRECTS:
        match = pattern.search(scripts)
        if match:
            return urljoin(base_url, match.group(1).strip()), "js_redirect"
    return None


def _format_client_error(error: ClientError) -> str:
    """Produce a concise description for aiohttp client errors."""
    if isinstance(error, ClientResponseError):
        return f"HTTP {error.status}: {error.message}"
    message = str(error).strip()
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


def _is_html(content_type: str, body: bytes) -> bool:
    if content_type:
        return content_type.lower() in HTML_CONTENT_TYPES
    head = body[:1024].lower()
    return b"<html" in head or b"<!doctype html" in head


class PageFetcher:
    """Fetches feeds and pages over a shared aiohttp session."""

    def __init__(self, session: Optional[ClientSession] = None, timeout: Optional[int] = None,
                 max_retries: Optional[int] = None):
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout or config.HTTP_TIMEOUT
        self.max_retries = config.MAX_RETRIES if max_retries is None else max_retries
        self.retry_helper = RetryHelper(max_retries=self.max_retries, base_delay=config.RETRY_DELAY_BASE)

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={"User-Agent": config.USER_AGENT})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session if this fetcher created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _with_retries(self, label: str, operation):
        """Run ``operation`` retrying transient network failures with backoff."""
        for attempt in range(self.max_retries + 1):
            try:
                return await operation()
            except TimeoutError:
                if attempt < self.max_retries:
                    logger.warning("Timeout fetching %s (attempt %d/%d)", label, attempt + 1, self.max_retries + 1)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise SourceUnreadable(f"Timed out after {self.timeout}s fetching {label}")
            except TooManyRedirects:
                raise RedirectLimitExceeded(f"Too many redirects fetching {label}")
            except ClientError as e:
                detail = _format_client_error(e)
                if attempt < self.max_retries:
                    logger.warning("Retry %d/%d for %s due to error: %s", attempt + 1, self.max_retries, label, detail)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise SourceUnreadable(f"Network error fetching {label}: {detail}")

    @trace_span(
        "fetch_bytes",
        tracer_name="page_fetcher",
        attr_from_args=lambda self, url, max_redirects=None: {"http.url": url},
    )
    async def fetch_bytes(self, url: str, max_redirects: Optional[int] = None) -> bytes:
        """GET a feed document, following HTTP redirects transparently.

        Raises:
            SourceUnreadable: on timeouts, network errors or HTTP errors
        """
        session = await self._get_session()
        limit = config.MAX_REDIRECTS if max_redirects is None else max_redirects

        async def _get() -> bytes:
            async with session.get(
                url,
                headers=FEED_HEADERS,
                timeout=ClientTimeout(total=self.timeout),
                max_redirects=limit,
                allow_redirects=limit > 0,
            ) as response:
                if response.status in HTTP_REDIRECT_CODES:
                    raise RedirectLimitExceeded(f"Redirect not followed for {url} (limit {limit})")
                if response.status != 200:
                    raise SourceUnreadable(f"HTTP {response.status} fetching {url}")
                return await response.read()

        return await self._with_retries(url, _get)

    async def _get_once(self, session: ClientSession, url: str) -> Tuple[int, Optional[str], str, bytes, Optional[str], str]:
        async with session.get(
            url,
            headers=DEFAULT_HEADERS,
            timeout=ClientTimeout(total=self.timeout),
            allow_redirects=False,
        ) as response:
            body = b"" if response.status in HTTP_REDIRECT_CODES else await response.read()
            return (
                response.status,
                response.headers.get("Location"),
                response.content_type if response.headers.get("Content-Type") else "",
                body,
                response.charset,
                str(response.url),
            )

    @trace_span(
        "fetch_and_reduce",
        tracer_name="page_fetcher",
        attr_from_args=lambda self, url, max_redirects=None, follow_client_redirects=True: {"http.url": url},
    )
    async def fetch_and_reduce(self, url: str, max_redirects: Optional[int] = None,
                               follow_client_redirects: bool = True) -> PageFetchResult:
        """Fetch an HTML page and reduce it for AI analysis.

        Args:
            url: Page to fetch
            max_redirects: Bound on HTTP plus client-side redirect hops
            follow_client_redirects: Also follow meta-refresh/JS redirects

        Raises:
            RedirectLimitExceeded: more hops than allowed, or a loop
            SourceUnreadable: timeouts, network/HTTP errors, non-HTML responses
        """
        session = await self._get_session()
        limit = config.MAX_REDIRECTS if max_redirects is None else max_redirects
        history: List[RedirectHop] = []
        visited = {urldefrag(url)[0]}
        current = url

        def _hop(target: str, kind: str) -> str:
            if len(history) >= limit:
                raise RedirectLimitExceeded(
                    f"Exceeded {limit} redirects fetching {url}",
                    history=[hop.to_dict() for hop in history] + [{"from": current, "to": target, "page_type": kind}],
                )
            key = urldefrag(target)[0]
            if key in visited:
                raise RedirectLimitExceeded(
                    f"Redirect loop detected at {target}",
                    history=[hop.to_dict() for hop in history] + [{"from": current, "to": target, "page_type": kind}],
                )
            visited.add(key)
            history.append(RedirectHop(current, target, kind))
            logger.debug(f"Redirect ({kind}) {current} -> {target}")
            return target

        while True:
            status, location, content_type, body, charset, response_url = await self._with_retries(
                current, lambda: self._get_once(session, current)
            )
            if status in HTTP_REDIRECT_CODES:
                if not location:
                    raise SourceUnreadable(f"HTTP {status} without Location header at {current}")
                current = _hop(urljoin(response_url, location), "http_redirect")
                continue
            if status >= 400:
                raise SourceUnreadable(f"HTTP {status} fetching {current}")
            if not _is_html(content_type, body):
                raise SourceUnreadable(f"Unsupported content type '{content_type or 'unknown'}' at {current}")

            try:
                html = body.decode(charset or "utf-8", errors="replace")
            except LookupError:
                html = body.decode("utf-8", errors="replace")
            if follow_client_redirects:
                client_redirect = detect_client_redirect(html, response_url)
                if client_redirect:
                    current = _hop(*client_redirect)
                    continue
            break

        reduced, truncated = reduce_html(html)
        soup_title = BeautifulSoup(html, "html.parser").title
        result = PageFetchResult(
            requested_url=url,
            final_url=current,
            html=html,
            reduced_html=reduced,
            original_size=len(html.encode("utf-8")),
            reduced_size=len(reduced.encode("utf-8")),
            truncated=truncated,
            content_type=content_type or "text/html",
            title=collapse_whitespace(soup_title.get_text()) if soup_title else None,
            redirect_history=history,
        )
        logger.info(
            f"Fetched {current}: {result.original_size} bytes reduced to {result.reduced_size}"
            f"{' (truncated)' if truncated else ''}, {len(history)} redirect(s)"
        )
        return result


__all__ = ["PageFetcher", "PageFetchResult", "RedirectHop", "reduce_html", "detect_client_redirect"]
