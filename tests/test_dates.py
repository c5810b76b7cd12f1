import time
from datetime import date, datetime

import feedparser
import pytest

from dates import parse_date


@pytest.mark.parametrize("value,expected", [
    ("2024-03-01", "2024-03-01"),
    ("2024/3/1", "2024-03-01"),
    ("Published: 1 March 2024", "2024-03-01"),
    ("5th Feb. 2024", "2024-02-05"),
    ("March 1, 2024", "2024-03-01"),
    ("2024年3月1日", "2024-03-01"),
    ("Fri, 01 Mar 2024 10:00:00 GMT", "2024-03-01"),
    ("2024-03-01T10:00:00Z", "2024-03-01"),
])
def test_common_layouts(value, expected):
    assert parse_date(value) == expected


def test_explicit_php_style_format_wins():
    assert parse_date("01/03/2024", "d/m/Y") == "2024-03-01"


def test_struct_time_and_datetime_inputs():
    assert parse_date(time.strptime("2024-03-01", "%Y-%m-%d")) == "2024-03-01"
    assert parse_date(datetime(2024, 3, 1, 12, 30)) == "2024-03-01"
    assert parse_date(date(2024, 3, 1)) == "2024-03-01"


@pytest.mark.parametrize("value", [None, "", "   ", "not a date", "2024-13-45", "12 pages", 42])
def test_unparseable_values_return_none(value):
    assert parse_date(value) is None


def test_feedparser_date_handlers_are_consulted(monkeypatch):
    seen = []

    def fake_parse_date(text):
        seen.append(text)
        return time.strptime("2024-03-01", "%Y-%m-%d")

    monkeypatch.setattr(feedparser, "_parse_date", fake_parse_date)

    assert parse_date("Spring 2024 issue") == "2024-03-01"
    assert seen == ["Spring 2024 issue"]


def test_implausible_feedparser_dates_are_rejected(monkeypatch):
    monkeypatch.setattr(feedparser, "_parse_date", lambda text: time.gmtime(0))

    assert parse_date("the epoch") is None
