import json

import pytest
import pytest_asyncio
from aiohttp import test_utils

from analyzer import PageStructureAnalyzer
from config import config
from llm_client import AICredentials
from server import USER_HEADER, create_app

USER = {USER_HEADER: "1"}


@pytest_asyncio.fixture
async def api(db, page_fetcher, scripted_llm):
    client_llm = scripted_llm([])
    analyzer = PageStructureAnalyzer(page_fetcher, credentials=AICredentials("openai", "sk-test", "gpt-4o"),
                                     client_override=client_llm)
    client = test_utils.TestClient(test_utils.TestServer(create_app(db, page_fetcher, analyzer)))
    await client.start_server()
    client.llm = client_llm
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_management_routes_require_user_header(api, db):
    resp = await api.post("/api/journals", json={"name": "J", "source_url": "https://journal.example.org/rss"})
    assert resp.status == 401
    body = await resp.json()
    assert body["success"] is False

    for path in ("/api/fetch", "/api/users/42/fetch", "/api/users/42/register"):
        resp = await api.post(path)
        assert resp.status == 401, path

    assert await db.execute("list_journals", active_only=False) == []
    assert await db.execute("list_jobs") == []


@pytest.mark.asyncio
async def test_user_routes_refuse_other_users(api, db):
    for path in ("/api/users/42/fetch", "/api/users/42/register"):
        resp = await api.post(path, headers=USER)
        assert resp.status == 403, path

    assert await db.execute("list_journals", active_only=False) == []
    assert await db.execute("list_jobs") == []


@pytest.mark.asyncio
async def test_create_update_and_delete_journal(api):
    resp = await api.post("/api/journals", headers=USER,
                          json={"name": "J", "source_url": "https://journal.example.org/rss"})
    assert resp.status == 201
    created = await resp.json()
    assert created["success"] is True
    journal_id = created["journal"]["id"]
    assert created["job_id"]

    resp = await api.patch(f"/api/journals/{journal_id}", headers=USER, json={"source_type": "ai_generated"})
    assert resp.status == 400

    resp = await api.patch(f"/api/journals/{journal_id}", headers={USER_HEADER: "2"}, json={"name": "X"})
    assert resp.status == 404

    resp = await api.delete(f"/api/journals/{journal_id}", headers=USER)
    assert resp.status == 200
    assert (await resp.json())["journal"]["is_active"] == 0


@pytest.mark.asyncio
async def test_invalid_json_body_is_rejected(api):
    resp = await api.post("/api/journals", headers={**USER, "Content-Type": "application/json"}, data="{broken")

    assert resp.status == 400
    assert (await resp.json())["error"] == "Request body must be valid JSON"


@pytest.mark.asyncio
async def test_fetch_journal_route(api, site, rss_feed):
    site.add("/feed.xml", rss_feed, content_type="application/rss+xml")
    resp = await api.post("/api/journals", headers=USER, json={"name": "J", "source_url": site.url("/feed.xml")})
    journal_id = (await resp.json())["journal"]["id"]

    resp = await api.post(f"/api/journals/{journal_id}/fetch", headers=USER, json={"force": True})
    assert resp.status == 200
    body = await resp.json()
    assert body["status"] == "success"
    assert body["new_papers"] == 3

    resp = await api.post(f"/api/journals/{journal_id}/fetch", headers={USER_HEADER: "9"})
    assert resp.status == 404


@pytest.mark.asyncio
async def test_batch_fetch_always_answers_200(api, site):
    resp = await api.post("/api/journals", headers=USER, json={"name": "J", "source_url": site.url("/gone.xml")})
    assert resp.status == 201

    resp = await api.post("/api/fetch", headers=USER)
    assert resp.status == 200
    body = await resp.json()
    assert body["summary"]["error_count"] == 1

    resp = await api.post("/api/users/1/fetch?force=true", headers=USER)
    assert resp.status == 200


@pytest.mark.asyncio
async def test_dry_run_routes(api, site, rss_feed):
    site.add("/feed.xml", rss_feed, content_type="application/rss+xml")

    resp = await api.post("/api/test/feed", headers=USER, json={"url": site.url("/feed.xml")})
    assert resp.status == 200
    assert (await resp.json())["item_count"] == 3

    resp = await api.post("/api/test/feed", headers=USER, json={"url": "nope"})
    assert resp.status == 400
    assert (await resp.json())["error"] == "Invalid URL format"

    resp = await api.post("/api/test/page", headers=USER, json={"url": "nope"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_feed_token_route(api, db, site, listing_html, listing_selectors):
    site.add("/latest", listing_html)
    api.llm.replies = [
        '{"page_type": "article_list"}',
        '{"selectors": %s}' % json.dumps(listing_selectors),
    ]
    resp = await api.post("/api/journals", headers=USER,
                          json={"name": "J", "source_url": site.url("/latest"), "source_type": "ai_generated"})
    assert resp.status == 201
    token = (await resp.json())["feed_token"]

    resp = await api.get(f"/feeds/{token}")
    assert resp.status == 200
    assert resp.headers["Content-Type"].startswith("text/xml")
    assert "Worked examples for novice programmers" in await resp.text()

    resp = await api.get("/feeds/unknown")
    assert resp.status == 404
    assert await resp.text() == "Feed not found"


@pytest.mark.asyncio
async def test_register_user_route(api, monkeypatch):
    monkeypatch.setattr(config, "DEFAULT_JOURNALS", [])

    resp = await api.post("/api/users/5/register", headers={USER_HEADER: "5"})

    assert resp.status == 200
    body = await resp.json()
    assert body["created_journal_ids"] == []
    assert body["job_id"]


@pytest.mark.asyncio
async def test_description_layout_routes(api, site, bracket_feed):
    site.add("/feed.xml", bracket_feed, content_type="application/rss+xml")
    resp = await api.post("/api/journals", headers=USER, json={"name": "JJT", "source_url": site.url("/feed.xml")})
    journal_id = (await resp.json())["journal"]["id"]

    resp = await api.post(f"/api/journals/{journal_id}/analyze-rss", json={"use_ai": False})
    assert resp.status == 401

    resp = await api.post(f"/api/journals/{journal_id}/analyze-rss", headers=USER, json={"use_ai": False})
    assert resp.status == 200
    body = await resp.json()
    assert body["detected_format"] == "bracket_label"
    assert body["journal"]["rss_analysis_status"] == "success"

    resp = await api.post(f"/api/journals/{journal_id}/analyze-rss", headers={USER_HEADER: "9"})
    assert resp.status == 404

    resp = await api.delete(f"/api/journals/{journal_id}/rss-extraction", headers=USER)
    assert resp.status == 200
    assert (await resp.json())["journal"]["rss_extraction_config"] is None
