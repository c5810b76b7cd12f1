import pytest

from analyzer import Listing, PageStructureAnalyzer, Redirect, Unsupported, parse_json_response
from config import config
from errors import AnalysisFailed, ValidationFailed
from llm_client import AICredentials

CREDENTIALS = AICredentials("openai", "sk-test", "gpt-4o")


def analyzer_with(page_fetcher, client):
    return PageStructureAnalyzer(page_fetcher, credentials=CREDENTIALS, client_override=client)


def extract_reply(selectors):
    return {
        "selectors": selectors,
        "base_url": None,
        "sample_papers": [
            {"title": "Worked examples for novice programmers", "url": "/article/101", "doi": "10.1234/jot.101"},
            {"title": "Feedback timing in intelligent tutors", "url": "/article/102"},
            {"title": "Peer assessment reliability", "url": "/article/103"},
            {"title": "One too many", "url": "/article/104"},
        ],
    }


def test_parse_json_response_accepts_fences_and_chatter():
    assert parse_json_response('```json\n{"page_type": "other"}\n```') == {"page_type": "other"}
    assert parse_json_response('Sure! {"a": 1} Hope that helps.') == {"a": 1}


def test_parse_json_response_keeps_raw_excerpt_on_failure():
    with pytest.raises(AnalysisFailed) as excinfo:
        parse_json_response("I cannot help with that" * 100)
    assert len(excinfo.value.debug["raw_response"]) == 500

    with pytest.raises(AnalysisFailed):
        parse_json_response("[1, 2, 3]")


@pytest.mark.asyncio
async def test_article_list_yields_listing_with_recipe(site, page_fetcher, scripted_llm, listing_html,
                                                       listing_selectors):
    site.add("/latest", listing_html)
    client = scripted_llm([
        {"page_type": "article_list", "reason": "Latest papers list"},
        extract_reply(listing_selectors),
    ])

    result = await analyzer_with(page_fetcher, client).analyze(site.url("/latest"))

    assert isinstance(result, Listing)
    assert result.recipe.paper_container == "li.article"
    assert result.reason == "Latest papers list"
    assert result.provider == "openai"
    assert len(result.sample_papers) == config.SAMPLE_PAPER_LIMIT
    assert result.sample_papers[0]["url"] == site.url("/article/101")
    stored = result.extraction_config()
    assert stored["selectors"]["title"] == "h3.title"
    assert stored["page_type"] == "article_list"
    user_message = client.calls[0]["messages"][1]["content"]
    assert user_message.startswith(f"URL: {site.url('/latest')}")
    assert "<script" not in user_message


@pytest.mark.asyncio
async def test_single_pass_returns_redirect_without_following(site, page_fetcher, scripted_llm, home_html):
    site.add("/", home_html)
    client = scripted_llm([
        {"page_type": "journal_home", "reason": "Landing page"},
        {"article_list_url": "/latest"},
    ])

    result = await analyzer_with(page_fetcher, client).analyze(site.url("/"))

    assert isinstance(result, Redirect)
    assert result.target_url == site.url("/latest")
    assert site.hits.get("/latest") is None
    assert result.to_dict()["article_list_url"] == site.url("/latest")


@pytest.mark.asyncio
async def test_auto_redirect_follows_suggestion_to_listing(site, page_fetcher, scripted_llm, home_html,
                                                           listing_html, listing_selectors):
    site.add("/", home_html)
    site.add("/latest", listing_html)
    client = scripted_llm([
        {"page_type": "journal_home", "reason": "Landing page"},
        {"article_list_url": "/latest"},
        {"page_type": "article_list", "reason": "List"},
        extract_reply(listing_selectors),
    ])

    result = await analyzer_with(page_fetcher, client).analyze_with_redirects(site.url("/"))

    assert isinstance(result, Listing)
    assert result.url == site.url("/latest")
    assert result.redirect_history == [
        {"from": site.url("/"), "to": site.url("/latest"), "page_type": "journal_home"},
    ]


@pytest.mark.asyncio
async def test_auto_redirect_stops_at_hop_limit(site, page_fetcher, scripted_llm, home_html):
    site.add("/", home_html)
    client = scripted_llm([
        {"page_type": "journal_home"},
        {"article_list_url": "/latest"},
    ])

    result = await analyzer_with(page_fetcher, client).analyze_with_redirects(site.url("/"), max_redirects=0)

    assert isinstance(result, Redirect)
    assert site.hits.get("/latest") is None


@pytest.mark.asyncio
async def test_auto_redirect_loop_becomes_unsupported(site, page_fetcher, scripted_llm, home_html):
    site.add("/a", home_html)
    site.add("/b", home_html)
    client = scripted_llm([
        {"page_type": "journal_home"},
        {"article_list_url": "/b"},
        {"page_type": "other"},
        {"article_list_url": "/a"},
    ])

    result = await analyzer_with(page_fetcher, client).analyze_with_redirects(site.url("/a"))

    assert isinstance(result, Unsupported)
    assert result.url == site.url("/b")
    assert "already visited" in result.reason


@pytest.mark.asyncio
async def test_article_detail_is_unsupported_without_redirect_call(site, page_fetcher, scripted_llm, home_html):
    site.add("/article/1", home_html)
    client = scripted_llm([{"page_type": "article_detail", "reason": "Single paper"}])

    result = await analyzer_with(page_fetcher, client).analyze(site.url("/article/1"))

    assert isinstance(result, Unsupported)
    assert len(client.calls) == 1
    assert result.to_dict()["is_article_list_page"] is False


@pytest.mark.asyncio
async def test_unknown_page_type_and_legacy_flag(site, page_fetcher, scripted_llm, listing_html, listing_selectors):
    site.add("/latest", listing_html)
    client = scripted_llm([
        {"is_article_list_page": True},
        extract_reply(listing_selectors),
    ])
    analyzer = analyzer_with(page_fetcher, client)

    assert isinstance(await analyzer.analyze(site.url("/latest")), Listing)

    client.replies = ['{"page_type": "landing"}', '{"article_list_url": null}']
    result = await analyzer.analyze(site.url("/latest"))
    assert isinstance(result, Unsupported)
    assert result.page_type == "unknown"


@pytest.mark.asyncio
async def test_unusable_ai_output_raises_analysis_failed(site, page_fetcher, scripted_llm, listing_html):
    site.add("/latest", listing_html)
    client = scripted_llm([
        {"page_type": "article_list"},
        {"selectors": {"title": "h3"}},
    ])

    with pytest.raises(AnalysisFailed) as excinfo:
        await analyzer_with(page_fetcher, client).analyze(site.url("/latest"))
    assert "paper_container" in excinfo.value.message

    client.replies = ["not json"]
    with pytest.raises(AnalysisFailed) as excinfo:
        await analyzer_with(page_fetcher, client).analyze(site.url("/latest"))
    assert excinfo.value.debug["raw_response"] == "not json"


@pytest.mark.asyncio
async def test_missing_credentials_rejected_before_fetch(site, page_fetcher, monkeypatch):
    monkeypatch.setattr(config, "OPENAI_API_KEY", None)
    monkeypatch.setattr(config, "ANTHROPIC_API_KEY", None)

    with pytest.raises(ValidationFailed):
        await PageStructureAnalyzer(page_fetcher).analyze(site.url("/"))
    assert site.hits == {}
