import feedparser
import pytest

from errors import FeedUnreadable
from rss_metadata import detect_patterns
from rss_parser import clean_abstract, describe_feed, entry_to_candidate, parse_feed, sample_descriptions


def test_parse_feed_keeps_order_and_fields(rss_feed):
    papers = parse_feed(rss_feed.encode("utf-8"))

    assert [p.title for p in papers] == [
        "Retrieval practice in online courses",
        "Metacognitive prompts and self-explanation",
        "Tutoring dialogues at scale",
    ]
    first = papers[0]
    assert first.url == "https://journal.example.org/article/1"
    assert first.doi == "10.1234/jot.2024.001"
    assert first.authors == ["Ana Silva", "Bo Chen"]
    assert first.published_date == "2024-03-01"
    assert first.abstract.startswith("We study how retrieval practice")
    assert first.external_id == "10.1234/jot.2024.001"


def test_short_abstract_is_dropped_and_guid_used_as_identity(rss_feed):
    papers = parse_feed(rss_feed.encode("utf-8"))

    assert papers[1].abstract is None
    assert papers[2].doi is None
    assert papers[2].authors == []
    assert papers[2].external_id == "tag:journal.example.org,2024:3"


def test_describe_feed_returns_channel_title(rss_feed):
    feed = describe_feed(rss_feed.encode("utf-8"))

    assert feed["title"] == "Journal of Testing"
    assert len(feed["candidates"]) == 3


def test_garbage_document_is_unreadable():
    with pytest.raises(FeedUnreadable):
        parse_feed(b"this is not a feed at all")


def test_entry_without_title_is_skipped():
    entry = feedparser.FeedParserDict({"link": "https://example.org/x", "summary": "Body"})
    assert entry_to_candidate(entry) is None


def test_doi_taken_from_link_when_no_prism_tag():
    entry = feedparser.FeedParserDict({
        "title": "Linked DOI",
        "link": "https://doi.org/10.5555/abc.123",
        "id": "urn:1",
    })
    candidate = entry_to_candidate(entry)

    assert candidate.doi == "10.5555/abc.123"
    assert candidate.external_id == "10.5555/abc.123"


def test_boilerplate_abstract_is_dropped():
    text = "This journal publishes original research on every aspect of learning sciences and education."
    assert clean_abstract(text) is None
    assert clean_abstract("<p>" + "A genuine abstract about learning outcomes in classrooms. " * 2 + "</p>")


LINKLESS_FEED = """<?xml version="1.0"?><rss version="2.0"><channel><title>J</title>
  <item><title>Hint sequencing</title><pubDate>Fri, 01 Mar 2024 00:00:00 GMT</pubDate></item>
</channel></rss>"""


def test_entry_without_doi_link_or_guid_gets_title_date_identity():
    first = entry_to_candidate(feedparser.parse(LINKLESS_FEED).entries[0])
    again = entry_to_candidate(feedparser.parse(LINKLESS_FEED).entries[0])

    assert first.url is None and first.doi is None
    assert first.external_id.startswith("title-md5:")
    assert first.external_id == again.external_id


def test_description_metadata_fills_missing_fields(bracket_feed):
    content = bracket_feed.encode("utf-8")
    extraction_config = detect_patterns(sample_descriptions(content))

    papers = parse_feed(content, extraction_config=extraction_config)

    first = papers[0]
    assert first.authors == ["Ana Silva", "Bo Chen"]
    assert first.doi == "10.1234/jjt.2024.1"
    assert first.published_date == "2024-03-01"
    assert first.abstract.startswith("We compare worked examples")
    assert first.external_id == "10.1234/jjt.2024.1"
    assert papers[1].authors == ["Carla Diaz"]


def test_description_left_alone_without_extraction_config(bracket_feed):
    first = parse_feed(bracket_feed.encode("utf-8"))[0]

    assert first.authors == []
    assert first.doi is None
    assert first.abstract.startswith("[ Authors ] Ana Silva")


def test_feed_elements_win_over_description_metadata():
    entry = feedparser.FeedParserDict({
        "title": "Retrieval practice",
        "link": "https://journal.example.org/article/1",
        "author": "Dana Reyes",
        "summary": "[ Authors ] Ana Silva [ DOI ] 10.1234/jot.2024.9",
    })
    extraction_config = {"enabled": True, "detected_format": "bracket_label", "confidence": 0.9,
                         "labels": {"Authors": "authors", "DOI": "doi"}}

    candidate = entry_to_candidate(entry, extraction_config)

    assert candidate.authors == ["Dana Reyes"]
    assert candidate.doi == "10.1234/jot.2024.9"
    # A metadata block without an abstract label is not an abstract
    assert candidate.abstract is None


def test_sample_descriptions_skips_empty_entries(rss_feed):
    samples = sample_descriptions(rss_feed.encode("utf-8"))

    assert len(samples) == 2
    assert samples[1] == "Short."
    assert sample_descriptions(rss_feed.encode("utf-8"), limit=1) == samples[:1]
