#!/usr/bin/env python3
"""Common error types shared across modules, and the result object they become.

Components raise these; the public operations in fetcher, journals and
feed_server convert them into result objects so nothing escapes to callers.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional


class EngineError(Exception):
    """Base class for ingestion errors.

    Attributes:
        debug: Optional diagnostic payload (raw AI excerpt, selector stats, ...).
    """

    http_status = 503

    def __init__(self, message: str, debug: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.debug = debug


class FetchSkipped(EngineError):
    """The minimum inter-fetch interval has not elapsed. Informational."""

    http_status = 200

    def __init__(self, message: str, next_allowed_at: Optional[float] = None):
        super().__init__(message)
        self.next_allowed_at = next_allowed_at


class SourceUnreadable(EngineError):
    """The source could not be fetched or decoded."""


class FeedUnreadable(SourceUnreadable):
    """The feed document is malformed beyond recovery."""


class RedirectLimitExceeded(SourceUnreadable):
    """More redirects than allowed, or a redirect loop."""

    def __init__(self, message: str, history: Optional[list] = None):
        super().__init__(message, debug={"redirect_history": history or []})
        self.history = history or []


class AnalysisFailed(EngineError):
    """The AI call errored or returned output that could not be used."""


class NotAListingPage(EngineError):
    """The page is not an article list.

    Attributes:
        page_type: Classifier verdict for the page.
        suggested_url: Article list URL the classifier pointed at, if any.
    """

    http_status = 400

    def __init__(self, message: str, page_type: str, suggested_url: Optional[str] = None,
                 reason: Optional[str] = None):
        super().__init__(message)
        self.page_type = page_type
        self.suggested_url = suggested_url
        self.reason = reason


class ExtractionEmpty(EngineError):
    """The selector recipe produced no candidate papers."""


class Unconfigured(EngineError):
    """An AI-generated journal has no selector recipe yet."""


class ValidationFailed(EngineError):
    """Caller input was rejected before any network access."""

    http_status = 400


class ContentFilterError(Exception):
    """Raised when provider content filtering blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by provider", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


@dataclass
class OperationResult:
    """Outcome of a user-facing operation; errors never escape as exceptions."""

    ok: bool
    status: int = 200
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    debug: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, data: Optional[Dict[str, Any]] = None, status: int = 200) -> "OperationResult":
        return cls(ok=True, status=status, data=data or {})

    @classmethod
    def from_error(cls, error: Exception) -> "OperationResult":
        """Map an exception to its HTTP status, keeping typed payloads."""
        if not isinstance(error, EngineError):
            return cls(ok=False, status=503, error=str(error) or type(error).__name__)
        data: Dict[str, Any] = {}
        if isinstance(error, NotAListingPage):
            data = {
                "page_type": error.page_type,
                "page_type_reason": error.reason,
                "article_list_url": error.suggested_url,
            }
        if isinstance(error, FetchSkipped):
            data = {"next_allowed_at": error.next_allowed_at}
        return cls(ok=False, status=error.http_status, data=data, error=error.message, debug=error.debug)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = dict(self.data)
        body["success"] = self.ok
        if self.error is not None:
            body["error"] = self.error
        if self.debug:
            body["debug"] = self.debug
        return body


__all__ = [
    "EngineError",
    "OperationResult",
    "FetchSkipped",
    "SourceUnreadable",
    "FeedUnreadable",
    "RedirectLimitExceeded",
    "AnalysisFailed",
    "NotAListingPage",
    "ExtractionEmpty",
    "Unconfigured",
    "ValidationFailed",
    "ContentFilterError",
]
