#!/usr/bin/env python3
"""Paper identity checks against a journal's existing papers.

Identity rules, first match wins: equal DOI, then equal normalized URL, then
equal external id. Titles are never compared, so corrections and errata
with near-identical titles still come through as new papers.
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

from config import get_logger
from models import CandidatePaper
from utils import normalize_doi, normalize_url

logger = get_logger("dedup")

MATCH_DOI = "doi"
MATCH_URL = "url"
MATCH_EXTERNAL_ID = "external_id"


class Deduplicator:
    """Tracks known identities for one journal and classifies candidates."""

    def __init__(self, dois: Iterable[str] = (), urls: Iterable[str] = (), external_ids: Iterable[str] = ()):
        self.dois: Set[str] = {d for d in (normalize_doi(v) for v in dois) if d}
        self.urls: Set[str] = {u for u in (normalize_url(v) for v in urls) if u}
        self.external_ids: Set[str] = {e.strip() for e in external_ids if e and e.strip()}

    @classmethod
    def from_identities(cls, identities: Optional[Dict[str, Iterable[str]]]) -> "Deduplicator":
        """Build from the ``get_paper_identities`` database operation."""
        identities = identities or {}
        return cls(
            dois=identities.get("dois", ()),
            urls=identities.get("urls", ()),
            external_ids=identities.get("external_ids", ()),
        )

    def check(self, candidate: CandidatePaper) -> Optional[str]:
        """Name of the identity rule that matched, or None for a new paper."""
        doi = normalize_doi(candidate.doi)
        if doi and doi in self.dois:
            return MATCH_DOI
        url = normalize_url(candidate.url)
        if url and url in self.urls:
            return MATCH_URL
        external_id = (candidate.external_id or "").strip()
        if external_id and external_id in self.external_ids:
            return MATCH_EXTERNAL_ID
        return None

    def add(self, candidate: CandidatePaper) -> None:
        """Remember an accepted candidate so later duplicates in the batch are caught."""
        doi = normalize_doi(candidate.doi)
        if doi:
            self.dois.add(doi)
        url = normalize_url(candidate.url)
        if url:
            self.urls.add(url)
        if candidate.external_id and candidate.external_id.strip():
            self.external_ids.add(candidate.external_id.strip())

    def partition(self, candidates: Iterable[CandidatePaper]) -> Tuple[List[CandidatePaper], List[CandidatePaper]]:
        """Split candidates into (new, duplicates), preserving order."""
        new: List[CandidatePaper] = []
        duplicates: List[CandidatePaper] = []
        for candidate in candidates:
            match = self.check(candidate)
            if match:
                logger.debug(f"Duplicate by {match}: {candidate.title[:80]}")
                duplicates.append(candidate)
            else:
                self.add(candidate)
                new.append(candidate)
        return new, duplicates


__all__ = ["Deduplicator", "MATCH_DOI", "MATCH_URL", "MATCH_EXTERNAL_ID"]
