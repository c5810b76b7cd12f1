#!/usr/bin/env python3
"""
Paper metadata embedded in RSS item descriptions.

Some publishers leave dc/prism elements empty and write authors, DOI and
dates into the description instead, in one of a few recognisable layouts:

    bracket_label  [ Authors ] Ana Silva, Bo Chen [ DOI ] 10.1234/x
    cjk_bracket    【著者】山田太郎・佐藤花子【DOI】10.1234/y
    colon_label    Authors: Ana Silva; Bo Chen DOI: 10.1234/x
    html_tag       <span class="authors">Ana Silva</span>

detect_patterns() looks at sample descriptions and returns an extraction
config, which is stored on the journal as ``rss_extraction_config``.
extract_metadata() applies a stored config to a single description.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bs4 import BeautifulSoup

from config import get_logger
from dates import parse_date
from utils import collapse_whitespace, html_to_text

logger = get_logger("rss_metadata")

FORMAT_BRACKET = "bracket_label"
FORMAT_CJK_BRACKET = "cjk_bracket"
FORMAT_COLON = "colon_label"
FORMAT_HTML = "html_tag"
# Tie-break order when two layouts score the same
FORMATS = (FORMAT_BRACKET, FORMAT_CJK_BRACKET, FORMAT_COLON, FORMAT_HTML)

SOURCE_AUTO = "auto_detected"
SOURCE_AI = "ai"

ANALYSIS_SUCCESS = "success"
ANALYSIS_LOW_CONFIDENCE = "low_confidence"
ANALYSIS_NO_PATTERN = "no_pattern"
ANALYSIS_ERROR = "error"

# A stored config below this is ignored; detection below SAVE_CONFIDENCE is not stored
MIN_CONFIDENCE = 0.3
SAVE_CONFIDENCE = 0.5
MAX_LABELS = 10

LABEL_VARIANTS = {
    'title': ('Title', 'Paper Title', 'Article Title', 'タイトル', '題目', '題名', '論文タイトル', '标题'),
    'authors': ('Authors', 'Author', 'By', 'Creator', '著者', '著者名', '作者', '執筆者', 'Autor', 'Auteur'),
    'doi': ('DOI', 'Digital Object Identifier'),
    'published_date': ('Published', 'Publication Date', 'Pub Date', 'Published Date', 'Date', 'Release Date',
                       '公開日', '発行日', '出版日', '掲載日'),
    'abstract': ('Abstract', 'Summary', 'Synopsis', 'Description', '概要', 'アブストラクト', '要旨', '摘要'),
}
FIELDS = tuple(LABEL_VARIANTS)
KEY_FIELDS = ('doi', 'title', 'authors')

# Class name fragments for html_tag descriptions
HTML_CLASS_HINTS = {
    'title': ('article-title', 'title'),
    'authors': ('authors', 'author', 'creator'),
    'abstract': ('abstract', 'summary', 'description'),
    'doi': ('doi',),
}

_WORD = r'[^\W\d_]\w*'
_BRACKET = re.compile(r'\[\s*([^\[\]]+?)\s*\]\s*([^\[]*?)(?=\s*\[|$)', re.DOTALL)
_CJK_BRACKET = re.compile(r'【\s*([^【】]+?)\s*】\s*([^【]*?)(?=\s*【|$)', re.DOTALL)
_COLON = re.compile(
    r'(?:^|(?<=\s))(' + _WORD + r'(?: ' + _WORD + r')?)\s*[:：](?!//)[ \t]*(.+?)'
    r'(?=\s+' + _WORD + r'\s*[:：](?!//)|$)',
    re.MULTILINE,
)
_BLOCK_TAGS = ('p', 'div', 'li', 'tr', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6')

DETECTION_PATTERNS = {
    FORMAT_BRACKET: re.compile(r'\[\s*[^\[\]]+?\s*\]'),
    FORMAT_CJK_BRACKET: re.compile(r'【[^【】]+】'),
    FORMAT_COLON: re.compile(r'(?:^|\s)' + _WORD + r'\s*[:：](?!//)'),
}

# Tried in order when no labelled DOI was found
DOI_PATTERNS = (
    re.compile(r'\[\s*DOI\s*\]\s*(?:https?://(?:dx\.)?doi\.org/)?(10\.\d{4,}/[^\s\]\)]+)', re.IGNORECASE),
    re.compile(r'【\s*DOI\s*】\s*(?:https?://(?:dx\.)?doi\.org/)?(10\.\d{4,}/[^\s】]+)', re.IGNORECASE),
    re.compile(r'DOI\s*[:：]\s*(?:https?://(?:dx\.)?doi\.org/)?(10\.\d{4,}/[^\s<>"\']+)', re.IGNORECASE),
    re.compile(r'(?:https?://)?(?:dx\.)?doi\.org/(10\.\d{4,}/[^\s<>"\']+)', re.IGNORECASE),
)

_AUTHOR_SEPARATORS = (
    re.compile(r'\s*[;；]\s*'),
    re.compile(r'\s*[,，]\s*'),
    re.compile(r'\s*・\s*'),
    re.compile(r'\s+and\s+|\s*&\s*', re.IGNORECASE),
)
_AFFILIATION = re.compile(r'\s*\([^)]*\)\s*')
_NUMBERING = re.compile(r'^\d+\.\s*')


def match_label_to_field(label: str) -> Optional[str]:
    """Map a description label such as "Authors" or "著者" to a paper field."""
    label = collapse_whitespace(label)
    if not label:
        return None
    folded = label.casefold()
    for field, variants in LABEL_VARIANTS.items():
        if any(folded == variant.casefold() for variant in variants):
            return field
    for field, variants in LABEL_VARIANTS.items():
        for variant in variants:
            if variant.isascii():
                if re.search(r'(?<!\w)' + re.escape(variant) + r'(?!\w)', label, re.IGNORECASE):
                    return field
            elif variant in label:
                return field
    return None


def _clean_doi(value: str) -> Optional[str]:
    value = re.sub(r'^(?:https?://(?:dx\.)?doi\.org/|doi:\s*)', '', value.strip(), flags=re.IGNORECASE)
    match = re.match(r'10\.\d{4,}/\S+', value)
    if not match:
        return None
    return match.group(0).rstrip('.,;:)]\'"') or None


def split_authors(value: str) -> List[str]:
    """Split an author string on the first separator that yields several names."""
    names = [value]
    for separator in _AUTHOR_SEPARATORS:
        parts = separator.split(value)
        if len(parts) > 1:
            names = parts
            break
    cleaned = []
    for name in names:
        name = _NUMBERING.sub('', _AFFILIATION.sub(' ', name)).strip()
        if name and name not in cleaned:
            cleaned.append(name)
    return cleaned


def _clean_value(field: str, raw: str) -> Any:
    value = html_to_text(raw)
    if not value:
        return None
    if field == 'doi':
        return _clean_doi(value)
    if field == 'authors':
        return split_authors(value) or None
    if field == 'published_date':
        return parse_date(value)
    return value


def description_text(content: str) -> str:
    """Plain text of a description, one line per block element or <br>."""
    if '<' in content:
        soup = BeautifulSoup(content, 'html.parser')
        for tag in soup.find_all(_BLOCK_TAGS):
            tag.append('\n')
        for br in soup.find_all('br'):
            br.replace_with('\n')
        content = soup.get_text()
    lines = (collapse_whitespace(line) for line in content.splitlines())
    return '\n'.join(line for line in lines if line)


def _labelled_pairs(text: str, layout: str) -> List[Tuple[str, str]]:
    pattern = {FORMAT_BRACKET: _BRACKET, FORMAT_CJK_BRACKET: _CJK_BRACKET, FORMAT_COLON: _COLON}[layout]
    return [(m.group(1).strip(), m.group(2).strip()) for m in pattern.finditer(text)]


def _extract_html(content: str) -> Dict[str, Any]:
    soup = BeautifulSoup(content, 'html.parser')
    result: Dict[str, Any] = {}
    for field, hints in HTML_CLASS_HINTS.items():
        for element in soup.find_all(class_=True):
            classes = [c.lower() for c in element.get('class') or []]
            if any(hint in cls for hint in hints for cls in classes):
                value = _clean_value(field, element.get_text(' '))
                if value:
                    result[field] = value
                    break
    return result


def _doi_fallback(text: str) -> Optional[str]:
    for pattern in DOI_PATTERNS:
        match = pattern.search(text)
        if match:
            doi = _clean_doi(match.group(1))
            if doi:
                return doi
    return None


def extract_with_format(content: str, layout: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Pull metadata fields out of one description using a known layout.

    Args:
        content: Raw description (HTML or text)
        layout: One of FORMATS
        labels: Label to field mapping learned at detection time

    Returns:
        Dict keyed by field name; only fields that yielded a value
    """
    if not content:
        return {}
    labels = labels or {}
    text = description_text(content)
    if layout == FORMAT_HTML:
        result = _extract_html(content)
    elif layout in DETECTION_PATTERNS:
        result = {}
        for label, raw in _labelled_pairs(text, layout):
            field = labels.get(label) or match_label_to_field(label)
            if field in FIELDS and field not in result:
                value = _clean_value(field, raw)
                if value:
                    result[field] = value
    else:
        result = {}

    if 'doi' not in result:
        doi = _doi_fallback(text)
        if doi:
            result['doi'] = doi
    return result


def _html_score(content: str) -> int:
    if '<' not in content:
        return 0
    return len(_extract_html(content))


def _detect_layout(contents: List[str]) -> Tuple[Optional[str], float, Dict[str, str]]:
    scores = {layout: 0 for layout in FORMATS}
    label_counts: Dict[str, int] = {}
    for content in contents:
        text = description_text(content)
        for layout, pattern in DETECTION_PATTERNS.items():
            scores[layout] += len(pattern.findall(text))
        scores[FORMAT_HTML] += _html_score(content)

    best = max(FORMATS, key=lambda layout: (scores[layout], -FORMATS.index(layout)))
    if scores[best] == 0:
        return None, 0.0, {}

    if best != FORMAT_HTML:
        for content in contents:
            for label, _ in _labelled_pairs(description_text(content), best):
                label_counts[label] = label_counts.get(label, 0) + 1
    labels: Dict[str, str] = {}
    for label, _ in sorted(label_counts.items(), key=lambda item: -item[1]):
        field = match_label_to_field(label)
        if field and field not in labels.values():
            labels[label] = field
        if len(labels) >= MAX_LABELS:
            break

    confidence = min(1.0, scores[best] / (len(contents) * 2))
    return best, confidence, labels


def score_config(contents: Iterable[str], layout: str, labels: Dict[str, str],
                 layout_confidence: float = 1.0) -> Tuple[float, Dict[str, Any]]:
    """Confidence of a layout and label map measured against sample descriptions."""
    samples = [c for c in contents if c and c.strip()]
    validation: Dict[str, Any] = {"total_samples": len(samples), "successful_extractions": 0,
                                  "field_success_rates": {}}
    if not samples:
        return 0.0, validation

    field_hits: Dict[str, int] = {}
    for content in samples:
        extracted = extract_with_format(content, layout, labels)
        if extracted:
            validation["successful_extractions"] += 1
            for field in extracted:
                field_hits[field] = field_hits.get(field, 0) + 1
    rates = {field: hits / len(samples) for field, hits in field_hits.items()}
    validation["field_success_rates"] = rates

    extraction_rate = validation["successful_extractions"] / len(samples)
    key_rates = [rates[field] for field in KEY_FIELDS if field in rates]
    key_rate = sum(key_rates) / len(key_rates) if key_rates else 0.0
    confidence = layout_confidence * 0.3 + extraction_rate * 0.3 + key_rate * 0.4
    return round(min(1.0, confidence), 3), validation


def build_config(layout: Optional[str], confidence: float, labels: Dict[str, str],
                 source: str = SOURCE_AUTO) -> Dict[str, Any]:
    """Extraction config in the shape stored on the journal."""
    return {
        "enabled": layout is not None,
        "detected_format": layout,
        "confidence": confidence,
        "labels": dict(labels),
        "pattern_source": source,
        "detected_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
    }


def detect_patterns(contents: Iterable[str]) -> Dict[str, Any]:
    """Work out how sample descriptions embed metadata.

    Returns:
        An extraction config plus a ``validation`` summary. ``detected_format``
        is None when no known layout was found.
    """
    samples = [c for c in contents if c and c.strip()]
    if not samples:
        return {**build_config(None, 0.0, {}), "validation": {"total_samples": 0}}

    layout, layout_confidence, labels = _detect_layout(samples)
    if layout is None:
        return {**build_config(None, 0.0, {}), "validation": {"total_samples": len(samples)}}

    confidence, validation = score_config(samples, layout, labels, layout_confidence)
    logger.debug(f"Detected {layout} descriptions (confidence {confidence}) with labels {labels}")
    return {**build_config(layout, confidence, labels), "validation": validation}


def analysis_outcome(detection: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
    """(status, config to store) for a detection result; only confident layouts are stored."""
    if not detection.get("detected_format"):
        return ANALYSIS_NO_PATTERN, None
    if float(detection.get("confidence") or 0) < SAVE_CONFIDENCE:
        return ANALYSIS_LOW_CONFIDENCE, None
    return ANALYSIS_SUCCESS, {key: value for key, value in detection.items() if key != "validation"}


def is_usable(extraction_config: Optional[Dict[str, Any]]) -> bool:
    """Whether a stored config should be applied to entries."""
    if not isinstance(extraction_config, dict):
        return False
    if not extraction_config.get("enabled", True):
        return False
    if extraction_config.get("detected_format") not in FORMATS:
        return False
    try:
        return float(extraction_config.get("confidence") or 0) >= MIN_CONFIDENCE
    except (TypeError, ValueError):
        return False


def extract_metadata(content: Optional[str], extraction_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply a stored extraction config to one description; empty when it does not apply."""
    if not content or not is_usable(extraction_config):
        return {}
    labels = extraction_config.get("labels") if isinstance(extraction_config.get("labels"), dict) else {}
    return extract_with_format(content, extraction_config["detected_format"], labels)


__all__ = [
    "detect_patterns", "extract_metadata", "extract_with_format", "score_config", "build_config",
    "analysis_outcome", "is_usable", "match_label_to_field", "split_authors", "FORMATS", "SAVE_CONFIDENCE",
]
