#!/usr/bin/env python3
"""
Paper Ingestion Orchestrator

Command-line entry point for the ingestion engine:

    fetch            fetch all active journals once
    fetch-user       fetch one user's journals
    fetch-journal    fetch a single journal (--force ignores the interval guard)
    test-feed        dry-run an RSS URL
    test-page        dry-run AI page analysis (--no-redirect for a single pass)
    regenerate       re-derive an ai_generated journal's extraction recipe
    analyze-rss      re-detect metadata embedded in an rss journal's descriptions
    register-user    seed default journals for a user and queue their ingestion
    worker           process background jobs until interrupted
    scheduled        enqueue batch ingestion at the configured times
    serve            run the HTTP server (feeds and management API)
    status           show database, job queue and schedule status
"""

import argparse
import asyncio
import json
import sqlite3
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from aiohttp import web

from analyzer import PageStructureAnalyzer
from config import config, get_logger
from errors import OperationResult
from fetcher import JournalFetcher
from jobs import (JOB_FETCH_ALL, JOB_FETCH_JOURNAL, JOB_FETCH_USER, JOB_REGENERATE_FEED, Handler, JobQueue,
                  JobWorker)
from journals import JournalService
from models import DatabaseQueue
from page_fetcher import PageFetcher
from scheduler import create_scheduler
from server import create_app
from telemetry import init_telemetry, get_tracer, trace_span

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("paper-ingest-orchestrator")
_tracer = get_tracer("orchestrator")


def build_job_handlers(fetcher: JournalFetcher, journals: JournalService) -> Dict[str, Handler]:
    """Map job kinds to engine operations."""

    async def fetch_journal(payload: Dict[str, Any]):
        return await fetcher.fetch_journal(int(payload["journal_id"]), force=bool(payload.get("force")))

    async def fetch_user(payload: Dict[str, Any]):
        return await fetcher.fetch_for_user(int(payload["user_id"]), force=bool(payload.get("force")))

    async def fetch_all(payload: Dict[str, Any]):
        return await fetcher.fetch_all(force=bool(payload.get("force")))

    async def regenerate_feed(payload: Dict[str, Any]):
        return await journals.regenerate(int(payload["journal_id"]))

    return {
        JOB_FETCH_JOURNAL: fetch_journal,
        JOB_FETCH_USER: fetch_user,
        JOB_FETCH_ALL: fetch_all,
        JOB_REGENERATE_FEED: regenerate_feed,
    }


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


class IngestOrchestrator:
    """Runs one CLI mode against a freshly started database queue."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH

    @asynccontextmanager
    async def _engine(self):
        db = DatabaseQueue(self.db_path)
        await db.start()
        page_fetcher = PageFetcher()
        analyzer = PageStructureAnalyzer(page_fetcher)
        queue = JobQueue(db)
        fetcher = JournalFetcher(db, page_fetcher)
        journals = JournalService(db, analyzer, queue)
        try:
            yield db, fetcher, journals, queue
        finally:
            await page_fetcher.close()
            await db.stop()

    async def run_fetch(self, force: bool = False) -> bool:
        logger.info("📡 Fetching all active journals")
        try:
            return await self._run_fetch_impl(force)
        except Exception as e:
            logger.error(f"❌ Batch fetch failed: {e}")
            return False

    @trace_span("run_fetch", tracer_name="orchestrator")
    async def _run_fetch_impl(self, force: bool) -> bool:
        async with self._engine() as (_, fetcher, _, _):
            result = await fetcher.fetch_all(force=force)
        print_json(result.to_dict())
        return result.status != "error"

    async def run_fetch_user(self, user_id: int, force: bool = False) -> bool:
        logger.info(f"📡 Fetching journals of user {user_id}")
        try:
            return await self._run_fetch_user_impl(user_id, force)
        except Exception as e:
            logger.error(f"❌ User fetch failed: {e}")
            return False

    @trace_span("run_fetch_user", tracer_name="orchestrator",
                attr_from_args=lambda self, user_id, force=False: {"user.id": user_id})
    async def _run_fetch_user_impl(self, user_id: int, force: bool) -> bool:
        async with self._engine() as (_, fetcher, _, _):
            result = await fetcher.fetch_for_user(user_id, force=force)
        print_json(result.to_dict())
        return result.status != "error"

    async def run_fetch_journal(self, journal_id: int, force: bool = False) -> bool:
        logger.info(f"📡 Fetching journal {journal_id}")
        try:
            return await self._run_fetch_journal_impl(journal_id, force)
        except Exception as e:
            logger.error(f"❌ Journal fetch failed: {e}")
            return False

    @trace_span("run_fetch_journal", tracer_name="orchestrator",
                attr_from_args=lambda self, journal_id, force=False: {"journal.id": journal_id})
    async def _run_fetch_journal_impl(self, journal_id: int, force: bool) -> bool:
        async with self._engine() as (_, fetcher, _, _):
            result = await fetcher.fetch_journal(journal_id, force=force)
        print_json(result.to_dict())
        return result.ok

    def _report(self, label: str, result: OperationResult) -> bool:
        print_json({"status": result.status, **result.to_dict()})
        if result.ok:
            logger.info(f"✅ {label} succeeded")
        else:
            logger.error(f"❌ {label} failed: {result.error}")
        return result.ok

    async def run_test_feed(self, url: str) -> bool:
        logger.info(f"🧪 Testing feed {url}")
        try:
            return self._report("Feed test", await self._run_test_feed_impl(url))
        except Exception as e:
            logger.error(f"❌ Feed test failed: {e}")
            return False

    @trace_span("run_test_feed", tracer_name="orchestrator")
    async def _run_test_feed_impl(self, url: str) -> OperationResult:
        async with self._engine() as (_, fetcher, _, _):
            return await fetcher.test_feed(url)

    async def run_test_page(self, url: str, auto_redirect: bool = True) -> bool:
        logger.info(f"🧪 Analyzing page {url}")
        try:
            return self._report("Page test", await self._run_test_page_impl(url, auto_redirect))
        except Exception as e:
            logger.error(f"❌ Page test failed: {e}")
            return False

    @trace_span("run_test_page", tracer_name="orchestrator")
    async def _run_test_page_impl(self, url: str, auto_redirect: bool) -> OperationResult:
        async with self._engine() as (_, _, journals, _):
            return await journals.test_page(url, auto_redirect=auto_redirect)

    async def run_regenerate(self, journal_id: int) -> bool:
        logger.info(f"🔁 Regenerating feed of journal {journal_id}")
        try:
            return self._report("Regeneration", await self._run_regenerate_impl(journal_id))
        except Exception as e:
            logger.error(f"❌ Regeneration failed: {e}")
            return False

    @trace_span("run_regenerate", tracer_name="orchestrator",
                attr_from_args=lambda self, journal_id: {"journal.id": journal_id})
    async def _run_regenerate_impl(self, journal_id: int) -> OperationResult:
        async with self._engine() as (_, _, journals, _):
            return await journals.regenerate(journal_id)

    async def run_analyze_rss(self, journal_id: int, use_ai: bool = True) -> bool:
        logger.info(f"🧩 Analyzing descriptions of journal {journal_id}")
        try:
            return self._report("Description analysis", await self._run_analyze_rss_impl(journal_id, use_ai))
        except Exception as e:
            logger.error(f"❌ Description analysis failed: {e}")
            return False

    @trace_span("run_analyze_rss", tracer_name="orchestrator",
                attr_from_args=lambda self, journal_id, use_ai=True: {"journal.id": journal_id})
    async def _run_analyze_rss_impl(self, journal_id: int, use_ai: bool) -> OperationResult:
        async with self._engine() as (_, _, journals, _):
            return await journals.analyze_rss(journal_id, use_ai=use_ai)

    async def run_register_user(self, user_id: int) -> bool:
        logger.info(f"👤 Registering user {user_id}")
        try:
            return self._report("User registration", await self._run_register_user_impl(user_id))
        except Exception as e:
            logger.error(f"❌ User registration failed: {e}")
            return False

    @trace_span("run_register_user", tracer_name="orchestrator",
                attr_from_args=lambda self, user_id: {"user.id": user_id})
    async def _run_register_user_impl(self, user_id: int) -> OperationResult:
        async with self._engine() as (_, _, journals, _):
            return await journals.register_user(user_id)

    async def run_worker(self) -> bool:
        logger.info("👷 Starting job worker")
        async with self._engine() as (db, fetcher, journals, _):
            worker = JobWorker(db, build_job_handlers(fetcher, journals))
            try:
                await worker.run_forever()
            except asyncio.CancelledError:
                logger.info("👋 Job worker shutting down")
        return True

    async def run_scheduled(self, run_immediately: bool = False) -> bool:
        scheduler = create_scheduler()
        scheduler.print_schedule_status()
        async with self._engine() as (_, _, _, queue):
            try:
                await scheduler.run_forever(queue, run_immediately=run_immediately)
            except asyncio.CancelledError:
                logger.info("👋 Scheduler shutting down")
        return True

    async def run_serve(self, host: Optional[str] = None, port: Optional[int] = None) -> bool:
        host = host or config.SERVER_HOST
        port = port or config.SERVER_PORT
        db = DatabaseQueue(self.db_path)
        await db.start()
        runner = web.AppRunner(create_app(db))
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        logger.info(f"🌐 Serving on http://{host}:{port}")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            logger.info("👋 Server shutting down")
        finally:
            await runner.cleanup()
            await db.stop()
        return True

    def check_status(self) -> Dict[str, Any]:
        """Collect database, job queue and schedule status."""
        logger.info("📊 Checking system status")
        status: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'checks': {},
        }
        db_path = Path(self.db_path)
        if not db_path.exists():
            status['checks']['database'] = {'status': 'missing', 'message': 'Database file not found'}
        else:
            try:
                conn = sqlite3.connect(db_path)
                try:
                    cursor = conn.cursor()
                    counts = {}
                    for key, query in (
                        ('active_journals', "SELECT COUNT(*) FROM journals WHERE is_active = 1"),
                        ('ai_generated_journals', "SELECT COUNT(*) FROM journals WHERE source_type = 'ai_generated'"),
                        ('papers', "SELECT COUNT(*) FROM papers"),
                        ('feeds_in_error', "SELECT COUNT(*) FROM generated_feeds WHERE generation_status = 'error'"),
                    ):
                        cursor.execute(query)
                        counts[key] = cursor.fetchone()[0]
                    cursor.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
                    counts['jobs'] = {row[0]: row[1] for row in cursor.fetchall()}
                    cursor.execute("SELECT status, created_at FROM fetch_logs WHERE journal_id IS NULL "
                                   "ORDER BY id DESC LIMIT 1")
                    last_batch = cursor.fetchone()
                    counts['last_batch'] = {
                        'status': last_batch[0],
                        'at': datetime.fromtimestamp(last_batch[1], timezone.utc).isoformat(),
                    } if last_batch else None
                finally:
                    conn.close()
                status['checks']['database'] = {'status': 'ok', **counts}
            except sqlite3.Error as e:
                status['checks']['database'] = {'status': 'error', 'message': str(e)}

        status['checks']['schedule'] = create_scheduler().get_schedule_status()
        database_ok = status['checks']['database'].get('status') == 'ok'
        status['overall_status'] = 'healthy' if database_ok else 'issues_detected'
        return status

    def print_status(self, status: Dict[str, Any]) -> None:
        print("\n📊 Paper Ingestion Status")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")
        db = status['checks']['database']
        if db['status'] == 'ok':
            print("\n💾 Database:")
            print(f"   📚 Active journals: {db['active_journals']} ({db['ai_generated_journals']} AI-generated)")
            print(f"   📰 Papers: {db['papers']}")
            print(f"   ⚠️ Feeds needing regeneration: {db['feeds_in_error']}")
            print(f"   📋 Jobs: {db['jobs'] or 'none'}")
            if db['last_batch']:
                print(f"   🕐 Last batch: {db['last_batch']['status']} at {db['last_batch']['at']}")
        else:
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")
        schedule = status['checks']['schedule']
        print(f"\n⏭️ Next scheduled run: {schedule['next_run_time']} ({schedule['schedule_timezone']})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Paper Ingestion Orchestrator')
    parser.add_argument('mode', choices=[
        'fetch', 'fetch-user', 'fetch-journal', 'test-feed', 'test-page', 'regenerate',
        'analyze-rss', 'register-user', 'worker', 'scheduled', 'serve', 'status',
    ], help='Operation mode')
    parser.add_argument('--user', type=int, help='User id (fetch-user, register-user)')
    parser.add_argument('--journal', type=int, help='Journal id (fetch-journal, regenerate, analyze-rss)')
    parser.add_argument('--url', type=str, help='URL to test (test-feed, test-page)')
    parser.add_argument('--force', action='store_true', help='Ignore the minimum fetch interval')
    parser.add_argument('--no-redirect', action='store_true', help='test-page: analyze only the given URL')
    parser.add_argument('--no-ai', action='store_true', help='analyze-rss: pattern detection only')
    parser.add_argument('--run-now', action='store_true', help='scheduled: queue an ingestion immediately')
    parser.add_argument('--host', type=str, help='serve: bind address')
    parser.add_argument('--port', type=int, help='serve: port')
    parser.add_argument('--db', type=str, help='Database path (default: DATABASE_PATH)')
    return parser


REQUIRED_ARGS = {
    'fetch-user': 'user',
    'register-user': 'user',
    'fetch-journal': 'journal',
    'regenerate': 'journal',
    'analyze-rss': 'journal',
    'test-feed': 'url',
    'test-page': 'url',
}


def main():
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()
    required = REQUIRED_ARGS.get(args.mode)
    if required and getattr(args, required) is None:
        parser.error(f"{args.mode} requires --{required}")

    orchestrator = IngestOrchestrator(args.db)
    runs = {
        'fetch': lambda: orchestrator.run_fetch(force=args.force),
        'fetch-user': lambda: orchestrator.run_fetch_user(args.user, force=args.force),
        'fetch-journal': lambda: orchestrator.run_fetch_journal(args.journal, force=args.force),
        'test-feed': lambda: orchestrator.run_test_feed(args.url),
        'test-page': lambda: orchestrator.run_test_page(args.url, auto_redirect=not args.no_redirect),
        'regenerate': lambda: orchestrator.run_regenerate(args.journal),
        'analyze-rss': lambda: orchestrator.run_analyze_rss(args.journal, use_ai=not args.no_ai),
        'register-user': lambda: orchestrator.run_register_user(args.user),
        'worker': orchestrator.run_worker,
        'scheduled': lambda: orchestrator.run_scheduled(run_immediately=args.run_now),
        'serve': lambda: orchestrator.run_serve(args.host, args.port),
    }

    try:
        if args.mode == 'status':
            orchestrator.print_status(orchestrator.check_status())
            return
        success = asyncio.run(runs[args.mode]())
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
