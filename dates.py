#!/usr/bin/env python3
"""Publication date parsing shared by the RSS parser and the selector extractor.

Every entry point returns an ISO ``YYYY-MM-DD`` string or None; malformed
input never raises.
"""

import re
from datetime import date, datetime
from email.utils import parsedate_to_datetime
from time import struct_time
from typing import Any, Optional

import feedparser

from config import get_logger

logger = get_logger("dates")

MIN_PLAUSIBLE_YEAR = 1990

_MONTHS = {
    'january': 1, 'february': 2, 'march': 3, 'april': 4, 'may': 5, 'june': 6,
    'july': 7, 'august': 8, 'september': 9, 'october': 10, 'november': 11, 'december': 12,
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'jun': 6, 'jul': 7, 'aug': 8,
    'sep': 9, 'sept': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}
_MONTH_RE = '(' + '|'.join(sorted(_MONTHS, key=len, reverse=True)) + r')\.?'

_YMD = re.compile(r'(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})')
_YMD_CJK = re.compile(r'(\d{4})年\s*(\d{1,2})月\s*(\d{1,2})日')
_DAY_MONTH_YEAR = re.compile(r'\b(\d{1,2})(?:st|nd|rd|th)?\s+' + _MONTH_RE + r',?\s+(\d{4})\b', re.IGNORECASE)
_MONTH_DAY_YEAR = re.compile(r'\b' + _MONTH_RE + r'\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})\b', re.IGNORECASE)
_YEAR = re.compile(r'\b(\d{4})\b')

# PHP date() format letters as produced by the page analyzer
_PHP_TO_STRPTIME = {
    'Y': '%Y', 'y': '%y', 'm': '%m', 'n': '%m', 'd': '%d', 'j': '%d',
    'M': '%b', 'F': '%B', 'D': '%a', 'l': '%A', 'H': '%H', 'G': '%H', 'i': '%M', 's': '%S',
}


def _iso(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _to_strptime_format(date_format: str) -> str:
    """Translate a PHP-style format (e.g. ``Y-m-d``) unless it is already strftime."""
    if '%' in date_format:
        return date_format
    return ''.join(_PHP_TO_STRPTIME.get(ch, ch) for ch in date_format)


def _parse_with_format(text: str, date_format: str) -> Optional[str]:
    try:
        return datetime.strptime(text, _to_strptime_format(date_format)).date().isoformat()
    except ValueError:
        return None


def _parse_with_patterns(text: str) -> Optional[str]:
    match = _YMD.search(text)
    if match:
        parsed = _iso(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed:
            return parsed

    match = _YMD_CJK.search(text)
    if match:
        parsed = _iso(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if parsed:
            return parsed

    match = _DAY_MONTH_YEAR.search(text)
    if match:
        parsed = _iso(int(match.group(3)), _MONTHS[match.group(2).lower()], int(match.group(1)))
        if parsed:
            return parsed

    match = _MONTH_DAY_YEAR.search(text)
    if match:
        parsed = _iso(int(match.group(3)), _MONTHS[match.group(1).lower()], int(match.group(2)))
        if parsed:
            return parsed
    return None


def _parse_with_feedparser(text: str) -> Optional[str]:
    try:
        time_struct = feedparser._parse_date(text)
    except (ValueError, TypeError, AttributeError, OverflowError):
        return None
    if not time_struct or time_struct[0] <= MIN_PLAUSIBLE_YEAR:
        return None
    # feedparser normalizes out-of-range fields through mktime; the year must be in the text
    if str(time_struct[0]) not in _YEAR.findall(text):
        return None
    return _iso(time_struct[0], time_struct[1], time_struct[2])


def _parse_generic(text: str) -> Optional[str]:
    """feedparser, RFC 2822 and ISO 8601 fallbacks, rejecting implausibly old dates."""
    from_feedparser = _parse_with_feedparser(text)
    if from_feedparser:
        return from_feedparser

    parsed: Optional[datetime] = None
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        parsed = None
    if parsed is None:
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return None
    if parsed.year <= MIN_PLAUSIBLE_YEAR:
        return None
    return parsed.date().isoformat()


def parse_date(value: Any, date_format: Optional[str] = None) -> Optional[str]:
    """Best-effort conversion of a date-ish value to ``YYYY-MM-DD``.

    Accepts struct_time (feedparser ``*_parsed``), datetime/date objects and
    free text. For text, an explicit ``date_format`` is tried first, then the
    common academic publisher layouts, then feedparser and RFC 2822/ISO parsing.
    """
    if value is None:
        return None
    if isinstance(value, struct_time) or (isinstance(value, tuple) and len(value) >= 3):
        return _iso(int(value[0]), int(value[1]), int(value[2]))
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None

    text = ' '.join(value.split())
    if not text:
        return None

    if date_format:
        parsed = _parse_with_format(text, date_format)
        if parsed:
            return parsed

    parsed = _parse_with_patterns(text) or _parse_generic(text)
    if parsed is None:
        logger.debug(f"Unparseable date: {text[:60]!r}")
    return parsed


__all__ = ["parse_date"]
