#!/usr/bin/env python3
"""
HTTP surface for the ingestion engine (aiohttp.web).

Public:
    GET  /feeds/{token}                     synthetic RSS for ai_generated journals

Management (JSON; the caller's user id arrives in the X-User-Id header set
by the upstream auth proxy):
    POST   /api/journals                    create
    PATCH  /api/journals/{id}               update
    DELETE /api/journals/{id}               deactivate
    POST   /api/journals/{id}/activate      reactivate
    POST   /api/journals/{id}/fetch         fetch one journal now
    POST   /api/journals/{id}/regenerate    re-derive the extraction recipe
    POST   /api/journals/{id}/analyze-rss   re-detect metadata embedded in RSS descriptions
    DELETE /api/journals/{id}/rss-extraction  forget the detected description layout
    POST   /api/fetch                       batch fetch of all journals
    POST   /api/users/{user_id}/fetch       batch fetch of one user's journals
    POST   /api/users/{user_id}/register    seed defaults and queue ingestion
    POST   /api/test/feed                   dry-run an RSS URL
    POST   /api/test/page                   dry-run page analysis
"""

from typing import Any, Dict, Optional

from aiohttp import web

from analyzer import PageStructureAnalyzer
from config import get_logger
from errors import OperationResult, ValidationFailed
from feed_server import FeedTokenServer
from fetcher import JournalFetcher
from jobs import JobQueue
from journals import JournalService
from models import DatabaseQueue
from page_fetcher import PageFetcher

logger = get_logger("server")

USER_HEADER = "X-User-Id"

DB_KEY = web.AppKey("db", DatabaseQueue)
PAGE_FETCHER_KEY = web.AppKey("page_fetcher", PageFetcher)
FETCHER_KEY = web.AppKey("fetcher", JournalFetcher)
JOURNALS_KEY = web.AppKey("journals", JournalService)
FEEDS_KEY = web.AppKey("feeds", FeedTokenServer)


def _respond(result: OperationResult) -> web.Response:
    return web.json_response(result.to_dict(), status=result.status)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


def _user_id(request: web.Request) -> Optional[int]:
    raw = request.headers.get(USER_HEADER, "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def _int_param(request: web.Request, name: str) -> Optional[int]:
    try:
        return int(request.match_info[name])
    except (KeyError, ValueError):
        return None


async def _json_body(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        raise ValidationFailed("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return body


async def serve_feed(request: web.Request) -> web.Response:
    response = await request.app[FEEDS_KEY].serve(request.match_info["token"])
    headers = {"Content-Type": response.content_type, **response.headers}
    return web.Response(status=response.status, text=response.body, headers=headers)


async def create_journal(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    result = await request.app[JOURNALS_KEY].create_journal(
        user_id,
        body.get("name"),
        body.get("source_url") or body.get("url"),
        source_type=body.get("source_type") or "rss",
        color=body.get("color"),
        full_name=body.get("full_name"),
    )
    return _respond(result)


async def update_journal(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    journal_id = _int_param(request, "id")
    if journal_id is None:
        return _error(404, "Journal not found")
    return _respond(await request.app[JOURNALS_KEY].update_journal(journal_id, user_id, body))


async def deactivate_journal(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    journal_id = _int_param(request, "id")
    if journal_id is None:
        return _error(404, "Journal not found")
    return _respond(await request.app[JOURNALS_KEY].deactivate_journal(journal_id, user_id))


async def activate_journal(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    journal_id = _int_param(request, "id")
    if journal_id is None:
        return _error(404, "Journal not found")
    return _respond(await request.app[JOURNALS_KEY].activate_journal(journal_id, user_id))


async def fetch_journal(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    journal_id = _int_param(request, "id")
    journal = await request.app[DB_KEY].execute("get_journal", journal_id=journal_id) if journal_id else None
    if journal is None or journal["user_id"] != user_id:
        return _error(404, "Journal not found")
    result = await request.app[FETCHER_KEY].fetch_journal(journal, force=bool(body.get("force")))
    return web.json_response(result.to_dict(), status=200 if result.ok else 503)


async def regenerate_journal(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    journal_id = _int_param(request, "id")
    if journal_id is None:
        return _error(404, "Journal not found")
    return _respond(await request.app[JOURNALS_KEY].regenerate(journal_id, user_id))


async def analyze_rss(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    journal_id = _int_param(request, "id")
    if journal_id is None:
        return _error(404, "Journal not found")
    use_ai = body.get("use_ai", True) is not False
    return _respond(await request.app[JOURNALS_KEY].analyze_rss(journal_id, user_id, use_ai=use_ai))


async def clear_rss_extraction(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    journal_id = _int_param(request, "id")
    if journal_id is None:
        return _error(404, "Journal not found")
    return _respond(await request.app[JOURNALS_KEY].clear_rss_extraction(journal_id, user_id))


async def dry_run_feed(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    return _respond(await request.app[FETCHER_KEY].test_feed(body.get("url") or ""))


async def dry_run_page(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    auto_redirect = body.get("auto_redirect", True) is not False
    return _respond(await request.app[JOURNALS_KEY].test_page(body.get("url") or "", auto_redirect=auto_redirect))


def _user_route(handler):
    """Require the X-User-Id header and a well-formed JSON body."""

    async def _wrapped(request: web.Request) -> web.Response:
        user_id = _user_id(request)
        if user_id is None:
            return _error(401, f"Missing or invalid {USER_HEADER} header")
        try:
            body = await _json_body(request)
        except ValidationFailed as e:
            return _respond(OperationResult.from_error(e))
        return await handler(request, user_id, body)

    return _wrapped


def _force(request: web.Request, body: Dict[str, Any]) -> bool:
    if "force" in body:
        return bool(body["force"])
    return request.query.get("force", "").lower() in ("1", "true", "yes")


def _own_user_param(request: web.Request, user_id: int) -> Optional[web.Response]:
    """Reject user-scoped paths that name anyone but the caller."""
    path_user = _int_param(request, "user_id")
    if path_user is None:
        return _error(404, "User not found")
    if path_user != user_id:
        return _error(403, "Cannot act on another user's journals")
    return None


async def fetch_all(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    logger.info(f"Batch fetch of all journals requested by user {user_id}")
    result = await request.app[FETCHER_KEY].fetch_all(force=_force(request, body))
    return web.json_response(result.to_dict())


async def fetch_user(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    denied = _own_user_param(request, user_id)
    if denied:
        return denied
    result = await request.app[FETCHER_KEY].fetch_for_user(user_id, force=_force(request, body))
    return web.json_response(result.to_dict())


async def register_user(request: web.Request, user_id: int, body: Dict[str, Any]) -> web.Response:
    denied = _own_user_param(request, user_id)
    if denied:
        return denied
    return _respond(await request.app[JOURNALS_KEY].register_user(user_id))


def create_app(db: DatabaseQueue, page_fetcher: Optional[PageFetcher] = None,
               analyzer: Optional[PageStructureAnalyzer] = None,
               queue: Optional[JobQueue] = None) -> web.Application:
    """Build the aiohttp application around a started DatabaseQueue."""
    page_fetcher = page_fetcher or PageFetcher()
    analyzer = analyzer or PageStructureAnalyzer(page_fetcher)
    app = web.Application()
    app[DB_KEY] = db
    app[PAGE_FETCHER_KEY] = page_fetcher
    app[FETCHER_KEY] = JournalFetcher(db, page_fetcher)
    app[JOURNALS_KEY] = JournalService(db, analyzer, queue or JobQueue(db))
    app[FEEDS_KEY] = FeedTokenServer(db, page_fetcher)

    app.router.add_get("/feeds/{token}", serve_feed)
    app.router.add_post("/api/journals", _user_route(create_journal))
    app.router.add_patch("/api/journals/{id}", _user_route(update_journal))
    app.router.add_delete("/api/journals/{id}", _user_route(deactivate_journal))
    app.router.add_post("/api/journals/{id}/activate", _user_route(activate_journal))
    app.router.add_post("/api/journals/{id}/fetch", _user_route(fetch_journal))
    app.router.add_post("/api/journals/{id}/regenerate", _user_route(regenerate_journal))
    app.router.add_post("/api/journals/{id}/analyze-rss", _user_route(analyze_rss))
    app.router.add_delete("/api/journals/{id}/rss-extraction", _user_route(clear_rss_extraction))
    app.router.add_post("/api/fetch", _user_route(fetch_all))
    app.router.add_post("/api/users/{user_id}/fetch", _user_route(fetch_user))
    app.router.add_post("/api/users/{user_id}/register", _user_route(register_user))
    app.router.add_post("/api/test/feed", _user_route(dry_run_feed))
    app.router.add_post("/api/test/page", _user_route(dry_run_page))

    async def _close_fetcher(app: web.Application) -> None:
        await app[PAGE_FETCHER_KEY].close()

    app.on_cleanup.append(_close_fetcher)
    logger.info("HTTP application created")
    return app


__all__ = ["create_app", "USER_HEADER"]
