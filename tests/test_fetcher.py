import pytest

from config import config
from fetcher import JournalFetcher


async def add_journal(db, url, name="Journal of Testing", source_type="rss", user_id=1):
    journal_id = await db.execute("create_journal", user_id=user_id, name=name, source_url=url,
                                  source_type=source_type)
    return await db.execute("get_journal", journal_id=journal_id)


@pytest.mark.asyncio
async def test_rss_fetch_then_interval_skip_then_forced_refetch(db, site, page_fetcher, rss_feed):
    site.add("/feed.xml", rss_feed, content_type="application/rss+xml")
    journal = await add_journal(db, site.url("/feed.xml"))
    fetcher = JournalFetcher(db, page_fetcher)

    first = await fetcher.fetch_journal(journal["id"])
    assert first.status == "success"
    assert (first.papers_fetched, first.new_papers) == (3, 3)
    assert await db.execute("count_papers", journal_id=journal["id"]) == 3

    skipped = await fetcher.fetch_journal(journal["id"])
    assert skipped.status == "skipped"
    assert skipped.next_allowed_at is not None
    assert site.hits["/feed.xml"] == 1

    forced = await fetcher.fetch_journal(journal["id"], force=True)
    assert forced.status == "success"
    assert (forced.papers_fetched, forced.new_papers) == (3, 0)
    assert await db.execute("count_papers", journal_id=journal["id"]) == 3

    logs = await db.execute("list_fetch_logs", journal_id=journal["id"])
    assert [log["status"] for log in logs] == ["success", "success"]
    assert logs[0]["new_papers"] == 0 and logs[1]["new_papers"] == 3

    stored = await db.execute("list_papers", journal_id=journal["id"])
    by_doi = {p["doi"]: p for p in stored}
    assert by_doi["10.1234/jot.2024.001"]["authors"] == ["Ana Silva", "Bo Chen"]


@pytest.mark.asyncio
async def test_interval_guard_disabled_by_zero(db, site, page_fetcher, rss_feed, monkeypatch):
    monkeypatch.setattr(config, "MIN_FETCH_INTERVAL_MS", 0)
    site.add("/feed.xml", rss_feed, content_type="application/rss+xml")
    journal = await add_journal(db, site.url("/feed.xml"))
    fetcher = JournalFetcher(db, page_fetcher)

    await fetcher.fetch_journal(journal["id"])
    second = await fetcher.fetch_journal(journal["id"])

    assert second.status == "success"
    assert second.new_papers == 0


@pytest.mark.asyncio
async def test_failed_fetch_is_logged_and_stamped(db, site, page_fetcher):
    site.add("/broken.xml", "server exploded", status=500, content_type="text/plain")
    journal = await add_journal(db, site.url("/broken.xml"))
    fetcher = JournalFetcher(db, page_fetcher)

    result = await fetcher.fetch_journal(journal)

    assert result.status == "error"
    assert "HTTP 500" in result.error
    logs = await db.execute("list_fetch_logs", journal_id=journal["id"])
    assert logs[0]["status"] == "error"
    assert "HTTP 500" in logs[0]["error_message"]
    refreshed = await db.execute("get_journal", journal_id=journal["id"])
    assert refreshed["last_fetched_at"] is not None


@pytest.mark.asyncio
async def test_ai_generated_journal_without_recipe_is_unconfigured(db, page_fetcher):
    journal = await add_journal(db, "https://journal.example.org/latest", source_type="ai_generated")

    result = await JournalFetcher(db, page_fetcher).fetch_journal(journal["id"])

    assert result.status == "error"
    assert result.error == "Feed not configured. Please regenerate the feed."


@pytest.mark.asyncio
async def test_ai_generated_journal_replays_recipe(db, site, page_fetcher, listing_html, listing_selectors):
    site.add("/latest", listing_html)
    journal = await add_journal(db, site.url("/latest"), source_type="ai_generated")
    await db.execute("save_generated_feed", journal_id=journal["id"], user_id=1, source_url=site.url("/latest"),
                     extraction_config={"selectors": listing_selectors}, ai_provider="openai", ai_model="gpt-4o")

    result = await JournalFetcher(db, page_fetcher).fetch_journal(journal["id"])

    assert result.status == "success"
    assert (result.papers_fetched, result.new_papers) == (3, 3)
    assert result.ai_provider == "openai"


@pytest.mark.asyncio
async def test_linkless_listing_entries_are_fetched_once(db, site, page_fetcher, monkeypatch):
    monkeypatch.setattr(config, "MIN_FETCH_INTERVAL_MS", 0)
    site.add("/latest", """<html><body><ul>
        <li class="article"><h3 class="title">Tutoring dialogue acts</h3></li>
        <li class="article"><h3 class="title">Hint sequencing</h3></li>
    </ul></body></html>""")
    journal = await add_journal(db, site.url("/latest"), source_type="ai_generated")
    await db.execute("save_generated_feed", journal_id=journal["id"], user_id=1, source_url=site.url("/latest"),
                     extraction_config={"selectors": {"paper_container": "li.article", "title": "h3.title"}},
                     ai_provider="openai", ai_model="gpt-4o")
    fetcher = JournalFetcher(db, page_fetcher)

    first = await fetcher.fetch_journal(journal["id"])
    second = await fetcher.fetch_journal(journal["id"])

    assert (first.papers_fetched, first.new_papers) == (2, 2)
    assert (second.papers_fetched, second.new_papers) == (2, 0)
    assert await db.execute("count_papers", journal_id=journal["id"]) == 2


@pytest.mark.asyncio
async def test_batch_isolates_failures_and_writes_summary_log(db, site, page_fetcher, rss_feed):
    site.add("/feed.xml", rss_feed, content_type="application/rss+xml")
    good = await add_journal(db, site.url("/feed.xml"), name="Good")
    bad = await add_journal(db, site.url("/gone.xml"), name="Bad")
    other_user = await add_journal(db, site.url("/feed.xml"), name="Other", user_id=2)
    fetcher = JournalFetcher(db, page_fetcher)

    batch = await fetcher.fetch_for_user(1)

    assert batch.status == "success"
    assert set(batch.results) == {good["id"], bad["id"]}
    assert batch.results[good["id"]].new_papers == 3
    assert batch.results[bad["id"]].status == "error"
    assert batch.summary["error_count"] == 1
    assert batch.summary["total_new"] == 3
    assert other_user["id"] not in batch.results

    batch_logs = [log for log in await db.execute("list_fetch_logs") if log["journal_id"] is None]
    assert batch_logs[0]["status"] == "success"
    assert batch_logs[0]["error_message"] == "1 of 2 journals failed"


@pytest.mark.asyncio
async def test_concurrent_batch_is_skipped(db, page_fetcher):
    fetcher = JournalFetcher(db, page_fetcher)
    JournalFetcher._running_batches.add("all")
    try:
        result = await fetcher.fetch_all()
    finally:
        JournalFetcher._running_batches.discard("all")

    assert result.status == "skipped"
    assert result.reason == "Batch fetch already running"


@pytest.mark.asyncio
async def test_feed_dry_run(db, site, page_fetcher, rss_feed):
    site.add("/feed.xml", rss_feed, content_type="application/rss+xml")
    fetcher = JournalFetcher(db, page_fetcher)

    result = await fetcher.test_feed(site.url("/feed.xml"))

    assert result.ok
    assert result.data["title"] == "Journal of Testing"
    assert result.data["item_count"] == 3
    assert len(result.data["sample_items"]) == 3
    assert await db.execute("list_journals", active_only=False) == []


@pytest.mark.asyncio
async def test_feed_dry_run_rejects_invalid_url_without_network(db, site, page_fetcher):
    result = await JournalFetcher(db, page_fetcher).test_feed("not a url")

    assert result.status == 400
    assert result.error == "Invalid URL format"
    assert site.hits == {}


@pytest.mark.asyncio
async def test_feed_dry_run_reports_unreadable_feed(db, site, page_fetcher):
    site.add("/page.html", "<html><body>no feed here</body></html>")

    result = await JournalFetcher(db, page_fetcher).test_feed(site.url("/page.html"))

    assert not result.ok
    assert result.status == 503
    assert "Feed unreadable" in result.error


@pytest.mark.asyncio
async def test_first_fetch_learns_description_layout(db, site, page_fetcher, bracket_feed, monkeypatch):
    monkeypatch.setattr(config, "MIN_FETCH_INTERVAL_MS", 0)
    site.add("/feed.xml", bracket_feed, content_type="application/rss+xml")
    journal = await add_journal(db, site.url("/feed.xml"))
    fetcher = JournalFetcher(db, page_fetcher)

    result = await fetcher.fetch_journal(journal["id"])

    assert (result.status, result.new_papers) == ("success", 2)
    refreshed = await db.execute("get_journal", journal_id=journal["id"])
    assert refreshed["rss_analysis_status"] == "success"
    assert refreshed["rss_extraction_config"]["detected_format"] == "bracket_label"
    assert refreshed["rss_extraction_config"]["labels"]["Authors"] == "authors"
    stored = {p["doi"]: p for p in await db.execute("list_papers", journal_id=journal["id"])}
    assert stored["10.1234/jjt.2024.1"]["authors"] == ["Ana Silva", "Bo Chen"]
    assert stored["10.1234/jjt.2024.1"]["published_date"] == "2024-03-01"

    # The stored layout is reused rather than analyzed again
    await fetcher.fetch_journal(journal["id"])
    again = await db.execute("get_journal", journal_id=journal["id"])
    assert again["rss_analyzed_at"] == refreshed["rss_analyzed_at"]


@pytest.mark.asyncio
async def test_feed_without_description_metadata_stores_no_layout(db, site, page_fetcher, rss_feed):
    site.add("/feed.xml", rss_feed, content_type="application/rss+xml")
    journal = await add_journal(db, site.url("/feed.xml"))

    await JournalFetcher(db, page_fetcher).fetch_journal(journal["id"])

    refreshed = await db.execute("get_journal", journal_id=journal["id"])
    assert refreshed["rss_analysis_status"] == "no_pattern"
    assert refreshed["rss_extraction_config"] is None


@pytest.mark.asyncio
async def test_feed_dry_run_reports_description_layout(db, site, page_fetcher, bracket_feed):
    site.add("/feed.xml", bracket_feed, content_type="application/rss+xml")

    result = await JournalFetcher(db, page_fetcher).test_feed(site.url("/feed.xml"))

    assert result.ok
    layout = result.data["description_layout"]
    assert layout["status"] == "success"
    assert layout["detected_format"] == "bracket_label"
    assert result.data["sample_items"][0]["doi"] == "10.1234/jjt.2024.1"
