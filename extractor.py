#!/usr/bin/env python3
"""
Selector-based extraction of candidate papers from journal listing pages.

A SelectorRecipe is plain data (CSS selectors and attribute names) produced
once by the page analyzer and stored with the generated feed. ``extract``
replays it against fresh HTML deterministically, without any AI call.
"""

import re
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from config import get_logger
from dates import parse_date
from errors import ExtractionEmpty, Unconfigured
from models import CandidatePaper
from telemetry import trace_span
from utils import collapse_whitespace, extract_doi, title_date_id

logger = get_logger("extractor")

TEXT_ATTRS = ("", "textcontent", "text", "innertext", "innerhtml")
_AUTHOR_SPLIT = re.compile(r'\s*[,;，、]\s*')
_DOI_HOST = re.compile(r'https?://(dx\.)?doi\.org/', re.IGNORECASE)


@dataclass
class SelectorRecipe:
    """Where to find each paper field inside a listing page."""

    paper_container: Optional[str] = None
    title: Optional[str] = None
    title_attr: Optional[str] = "textContent"
    url: Optional[str] = None
    url_attr: Optional[str] = "href"
    authors: Optional[str] = None
    authors_attr: Optional[str] = "textContent"
    abstract: Optional[str] = None
    date: Optional[str] = None
    date_format: Optional[str] = None
    doi: Optional[str] = None
    doi_attr: Optional[str] = "textContent"
    doi_pattern: Optional[str] = None
    base_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SelectorRecipe":
        """Build a recipe from AI or stored JSON, ignoring unknown keys and null-ish values."""
        values = {}
        for f in fields(cls):
            raw = (data or {}).get(f.name)
            if isinstance(raw, str) and raw.strip() and raw.strip().lower() not in ("null", "none"):
                values[f.name] = raw.strip()
            elif f.default is not None:
                values[f.name] = f.default
            else:
                values[f.name] = None
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def is_configured(self) -> bool:
        return bool(self.paper_container and self.title)


@dataclass
class ExtractionResult:
    papers: List[CandidatePaper]
    containers_found: int
    skipped: int


def _read(element: Optional[Tag], attr: Optional[str]) -> Optional[str]:
    """Text content or attribute value of an element."""
    if element is None:
        return None
    if not attr or attr.strip().lower() in TEXT_ATTRS:
        return collapse_whitespace(element.get_text(" ")) or None
    value = element.get(attr)
    if isinstance(value, list):
        value = " ".join(value)
    return collapse_whitespace(value) or None


def _select_one(container: Tag, selector: Optional[str]) -> Optional[Tag]:
    if not selector:
        return container
    try:
        return container.select_one(selector)
    except SelectorSyntaxError:
        logger.debug(f"Invalid field selector {selector!r}")
        return None


def _select(container: Tag, selector: str) -> List[Tag]:
    try:
        return container.select(selector)
    except SelectorSyntaxError:
        logger.debug(f"Invalid field selector {selector!r}")
        return []


def _extract_url(container: Tag, recipe: SelectorRecipe, base_url: Optional[str]) -> Optional[str]:
    element = _select_one(container, recipe.url or recipe.title)
    attr = recipe.url_attr or "href"
    value = element.get(attr) if element is not None else None
    if not value and attr == "href" and element is not None:
        # Title selectors often point at a heading wrapping (or wrapped by) the link
        anchor = element.find("a", href=True) or element.find_parent("a", href=True)
        value = anchor.get("href") if anchor else None
    if not value:
        return None
    value = value.strip()
    return urljoin(base_url, value) if base_url else value


def _extract_authors(container: Tag, recipe: SelectorRecipe) -> List[str]:
    if not recipe.authors:
        return []
    elements = _select(container, recipe.authors)
    if len(elements) > 1:
        names = [_read(el, recipe.authors_attr) for el in elements]
    else:
        raw = _read(elements[0], recipe.authors_attr) if elements else None
        names = _AUTHOR_SPLIT.split(raw) if raw else []
    return [name.strip() for name in names if name and name.strip()]


def _extract_doi(container: Tag, recipe: SelectorRecipe, url: Optional[str]) -> Optional[str]:
    if recipe.doi:
        doi = extract_doi(_read(_select_one(container, recipe.doi), recipe.doi_attr), recipe.doi_pattern)
        if doi:
            return doi
    for anchor in container.find_all("a", href=True):
        if _DOI_HOST.search(anchor["href"]):
            doi = extract_doi(anchor["href"])
            if doi:
                return doi
    if url and _DOI_HOST.search(url):
        return extract_doi(url)
    return None


def _extract_date(container: Tag, recipe: SelectorRecipe) -> Optional[str]:
    if not recipe.date:
        return None
    element = _select_one(container, recipe.date)
    if element is None:
        return None
    machine = element.get("datetime") or element.get("content")
    return parse_date(machine) if machine else parse_date(_read(element, None), recipe.date_format)


@trace_span(
    "extract",
    tracer_name="extractor",
    attr_from_args=lambda html, recipe, page_url=None: {"extract.page_url": page_url},
)
def extract(html: str, recipe: SelectorRecipe, page_url: Optional[str] = None) -> ExtractionResult:
    """Apply a selector recipe to a listing page.

    Args:
        html: Raw page HTML
        recipe: Cached selector recipe
        page_url: Final URL of the page, used to resolve relative links

    Raises:
        Unconfigured: the recipe lacks a container or title selector
        ExtractionEmpty: nothing could be extracted; carries selector stats in ``debug``
    """
    if not recipe.is_configured():
        raise Unconfigured("Selector recipe is missing paper_container or title")

    base_url = recipe.base_url or page_url
    if recipe.base_url and page_url:
        base_url = urljoin(page_url, recipe.base_url)

    soup = BeautifulSoup(html or "", "html.parser")
    try:
        containers = soup.select(recipe.paper_container)
    except SelectorSyntaxError as e:
        raise ExtractionEmpty(
            f"Invalid paper container selector '{recipe.paper_container}': {e}",
            debug={"containers_found": 0, "skipped": 0, "selectors": recipe.to_dict()},
        )

    papers: List[CandidatePaper] = []
    skipped = 0
    for container in containers:
        title = _read(_select_one(container, recipe.title), recipe.title_attr)
        if not title and recipe.title_attr and recipe.title_attr.lower() not in TEXT_ATTRS:
            title = _read(_select_one(container, recipe.title), None)
        if not title:
            skipped += 1
            continue
        url = _extract_url(container, recipe, base_url)
        doi = _extract_doi(container, recipe, url)
        abstract = _read(_select_one(container, recipe.abstract), None) if recipe.abstract else None
        published = _extract_date(container, recipe)
        papers.append(CandidatePaper(
            title=title,
            url=url,
            authors=_extract_authors(container, recipe),
            abstract=abstract,
            doi=doi,
            published_date=published,
            external_id=doi or url or title_date_id(title, published),
        ))

    debug = {"containers_found": len(containers), "skipped": skipped, "selectors": recipe.to_dict()}
    if not papers:
        if containers:
            raise ExtractionEmpty(
                f"Found {len(containers)} containers but could not extract titles. "
                f"Check title selector '{recipe.title}'.",
                debug=debug,
            )
        raise ExtractionEmpty(
            f"No paper containers found with selector '{recipe.paper_container}'. "
            "Page structure may have changed.",
            debug=debug,
        )

    logger.debug(f"Extracted {len(papers)} papers from {len(containers)} containers ({skipped} skipped)")
    return ExtractionResult(papers=papers, containers_found=len(containers), skipped=skipped)


__all__ = ["SelectorRecipe", "ExtractionResult", "extract"]
