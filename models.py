#!/usr/bin/env python3
"""
Database models and operations for the ingestion engine.

All persistence goes through DatabaseQueue: callers await
``db.execute('operation_name', **params)`` and the queue worker runs the
same-named synchronous method on its own sqlite connection, one at a time.
"""

from os import path, access, R_OK
from time import time
import json
from dataclasses import dataclass, field, asdict
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Set, Any

from config import config, get_logger
from telemetry import get_tracer, trace_span

# Module-specific logger
logger = get_logger("models")
_tracer = get_tracer("db")

JOURNAL_UPDATABLE_FIELDS = ("name", "full_name", "color", "source_url")
# Columns added after the first release, with their types
JOURNAL_ADDED_COLUMNS = (
    ("rss_extraction_config", "TEXT"),
    ("rss_analysis_status", "TEXT"),
    ("rss_analysis_error", "TEXT"),
    ("rss_analyzed_at", "REAL"),
)


class DatabaseError(RuntimeError):
    """A queued database operation failed."""


@dataclass
class CandidatePaper:
    """A not-yet-deduplicated paper from a feed or a selector extraction."""

    title: str
    url: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    abstract: Optional[str] = None
    doi: Optional[str] = None
    published_date: Optional[str] = None  # ISO YYYY-MM-DD
    external_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def initialize_database(conn) -> None:
    """Create any missing tables from the SQL schema file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='journals'")
        journals_exist = cursor.fetchone() is not None
        if journals_exist:
            _run_migrations(conn)
        # Every statement is IF NOT EXISTS, so this also adds tables introduced later
        cursor.executescript(_read_schema_file())
        conn.commit()
        if journals_exist:
            logger.info("Database already exists; schema verified")
        else:
            logger.info("Database schema initialized successfully")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add journal columns missing from databases created by older releases."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(journals)")
        columns = [column[1] for column in cursor.fetchall()]
        for column, column_type in JOURNAL_ADDED_COLUMNS:
            if column not in columns:
                logger.info(f"Adding {column} column to journals table")
                cursor.execute(f"ALTER TABLE journals ADD COLUMN {column} {column_type}")
                conn.commit()
                logger.info(f"Migration completed: added {column} column")
    except Exception as e:
        logger.error(f"Error running migrations: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH
    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")
        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")
        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")
        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _decode_json(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Discarding undecodable JSON column value")
        return default


class DatabaseQueue:
    """A queue for database operations to ensure serialized sqlite access."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or config.DATABASE_PATH
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is ready."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            self.running = False
            raise DatabaseError(f"Could not open database at {self.db_path}")
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on a result
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path) and self.db_path != ":memory:":
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            if self.conn:
                self.conn.close()
            self.conn = None
            self._ready.set()
            return
        self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn:
                        self.conn.rollback()
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a named database operation and return its result."""
        if not self.running:
            raise DatabaseError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise DatabaseError(f"Database stopped before {operation_name} completed")
            if "error" in result:
                raise DatabaseError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Journal operations
    def _journal_row(self, row) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        journal = dict(row)
        journal['rss_extraction_config'] = _decode_json(journal.get('rss_extraction_config'), None)
        return journal

    def create_journal(self, user_id: int, name: str, source_url: str, source_type: str = 'rss',
                       color: str = 'bg-gray-500', full_name: Optional[str] = None) -> int:
        """Insert a journal and return its id."""
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT INTO journals (user_id, name, full_name, source_url, source_type, color, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, 1, ?)""",
            (user_id, name, full_name, source_url, source_type, color, time()),
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_journal(self, journal_id: int) -> Optional[Dict[str, Any]]:
        """Fetch a single journal row as a dict."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM journals WHERE id = ?", (journal_id,))
            return self._journal_row(cursor.fetchone())
        except Error as e:
            logger.error(f"Error getting journal {journal_id}: {e}")
            return None

    def list_journals(self, user_id: Optional[int] = None, active_only: bool = True) -> List[Dict[str, Any]]:
        """List journals, optionally restricted to one user and/or active ones."""
        clauses = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            cursor = self.conn.cursor()
            cursor.execute(f"SELECT * FROM journals {where} ORDER BY name, id", params)
            return [self._journal_row(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing journals: {e}")
            return []

    def update_journal(self, journal_id: int, fields: Dict[str, Any]) -> bool:
        """Update mutable journal columns; unknown keys are ignored."""
        updates = {k: v for k, v in fields.items() if k in JOURNAL_UPDATABLE_FIELDS}
        if not updates:
            return False
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cursor = self.conn.cursor()
        cursor.execute(f"UPDATE journals SET {assignments} WHERE id = ?", (*updates.values(), journal_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def set_journal_active(self, journal_id: int, active: bool) -> bool:
        """Soft-delete or restore a journal."""
        cursor = self.conn.cursor()
        cursor.execute("UPDATE journals SET is_active = ? WHERE id = ?", (1 if active else 0, journal_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def save_rss_extraction(self, journal_id: int, status: str, extraction_config: Optional[Dict[str, Any]] = None,
                            error_message: Optional[str] = None) -> bool:
        """Record a description layout analysis; a None config clears the stored one."""
        payload = json.dumps(extraction_config, ensure_ascii=False) if extraction_config else None
        cursor = self.conn.cursor()
        cursor.execute(
            """UPDATE journals SET rss_extraction_config = ?, rss_analysis_status = ?, rss_analysis_error = ?,
                                   rss_analyzed_at = ?
               WHERE id = ?""",
            (payload, status, error_message, time(), journal_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def clear_rss_extraction(self, journal_id: int) -> bool:
        """Forget the description layout so the next fetch analyzes it again."""
        cursor = self.conn.cursor()
        cursor.execute(
            """UPDATE journals SET rss_extraction_config = NULL, rss_analysis_status = NULL,
                                   rss_analysis_error = NULL, rss_analyzed_at = NULL
               WHERE id = ?""",
            (journal_id,),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def update_journal_last_fetched(self, journal_id: int, timestamp: Optional[float] = None) -> bool:
        """Record a fetch attempt time for the interval guard."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE journals SET last_fetched_at = ? WHERE id = ?",
                (timestamp if timestamp is not None else time(), journal_id),
            )
            self.conn.commit()
            return True
        except Error as e:
            logger.error(f"Error updating last_fetched_at for journal {journal_id}: {e}")
            return False

    # Paper operations
    def get_paper_identities(self, journal_id: int) -> Dict[str, Set[str]]:
        """Raw identity values (doi, url, external_id) of a journal's papers."""
        identities: Dict[str, Set[str]] = {"dois": set(), "urls": set(), "external_ids": set()}
        cursor = self.conn.cursor()
        cursor.execute("SELECT doi, url, external_id FROM papers WHERE journal_id = ?", (journal_id,))
        for row in cursor.fetchall():
            if row['doi']:
                identities["dois"].add(row['doi'])
            if row['url']:
                identities["urls"].add(row['url'])
            if row['external_id']:
                identities["external_ids"].add(row['external_id'])
        return identities

    def save_papers(self, journal_id: int, papers: List[Dict[str, Any]]) -> int:
        """Insert already-deduplicated papers in one transaction; returns the count."""
        if not papers:
            return 0
        now = time()
        rows = [
            (
                journal_id,
                paper.get('external_id'),
                paper['title'],
                json.dumps(paper.get('authors') or [], ensure_ascii=False),
                paper.get('abstract'),
                paper.get('url'),
                paper.get('doi'),
                paper.get('published_date'),
                now,
            )
            for paper in papers
        ]
        cursor = self.conn.cursor()
        cursor.executemany(
            """INSERT INTO papers (journal_id, external_id, title, authors, abstract, url, doi, published_date, fetched_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            rows,
        )
        self.conn.commit()
        return len(rows)

    def count_papers(self, journal_id: int) -> int:
        """Number of stored papers for a journal."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT COUNT(*) AS n FROM papers WHERE journal_id = ?", (journal_id,))
            return cursor.fetchone()['n']
        except Error as e:
            logger.error(f"Error counting papers for journal {journal_id}: {e}")
            return 0

    def list_papers(self, journal_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recently fetched papers of a journal."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                "SELECT * FROM papers WHERE journal_id = ? ORDER BY fetched_at DESC, id DESC LIMIT ?",
                (journal_id, limit),
            )
            papers = []
            for row in cursor.fetchall():
                paper = dict(row)
                paper['authors'] = _decode_json(paper.get('authors'), [])
                papers.append(paper)
            return papers
        except Error as e:
            logger.error(f"Error listing papers for journal {journal_id}: {e}")
            return []

    # Generated feed operations
    def _generated_feed_row(self, row) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        feed = dict(row)
        feed['extraction_config'] = _decode_json(feed.get('extraction_config'), {})
        return feed

    def save_generated_feed(self, journal_id: int, user_id: int, source_url: str,
                            extraction_config: Dict[str, Any], ai_provider: Optional[str],
                            ai_model: Optional[str]) -> Dict[str, Any]:
        """Create or fully replace a journal's extraction recipe.

        The feed token of an existing row is preserved so published feed URLs
        keep working across regenerations.
        """
        now = time()
        payload = json.dumps(extraction_config, ensure_ascii=False)
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT INTO generated_feeds (journal_id, user_id, feed_token, source_url, extraction_config,
                                            ai_provider, ai_model, generation_status, error_message,
                                            last_generated_at, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 'success', NULL, ?, ?)
               ON CONFLICT(journal_id) DO UPDATE SET
                   source_url = excluded.source_url,
                   extraction_config = excluded.extraction_config,
                   ai_provider = excluded.ai_provider,
                   ai_model = excluded.ai_model,
                   generation_status = 'success',
                   error_message = NULL,
                   last_generated_at = excluded.last_generated_at""",
            (journal_id, user_id, str(uuid4()), source_url, payload, ai_provider, ai_model, now, now),
        )
        self.conn.commit()
        return self.get_generated_feed_by_journal(journal_id)

    def get_generated_feed_by_token(self, feed_token: str) -> Optional[Dict[str, Any]]:
        """Look up a generated feed (joined with its journal name) by public token."""
        try:
            cursor = self.conn.cursor()
            cursor.execute(
                """SELECT g.*, j.name AS journal_name, j.full_name AS journal_full_name
                   FROM generated_feeds g JOIN journals j ON j.id = g.journal_id
                   WHERE g.feed_token = ?""",
                (feed_token,),
            )
            return self._generated_feed_row(cursor.fetchone())
        except Error as e:
            logger.error(f"Error looking up generated feed by token: {e}")
            return None

    def get_generated_feed_by_journal(self, journal_id: int) -> Optional[Dict[str, Any]]:
        """Generated feed row for a journal, if analysis ever succeeded."""
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM generated_feeds WHERE journal_id = ?", (journal_id,))
            return self._generated_feed_row(cursor.fetchone())
        except Error as e:
            logger.error(f"Error getting generated feed for journal {journal_id}: {e}")
            return None

    def mark_generated_feed_error(self, journal_id: int, error_message: str) -> bool:
        """Flag a failed regeneration without touching the stored recipe."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE generated_feeds SET generation_status = 'error', error_message = ? WHERE journal_id = ?",
            (error_message, journal_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    # Fetch log operations
    def log_fetch(self, journal_id: Optional[int], status: str, papers_fetched: int = 0,
                  new_papers: int = 0, error_message: Optional[str] = None,
                  execution_time_ms: int = 0) -> int:
        """Append an immutable fetch log row."""
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT INTO fetch_logs (journal_id, status, papers_fetched, new_papers, error_message,
                                       execution_time_ms, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (journal_id, status, papers_fetched, new_papers, error_message, execution_time_ms, time()),
        )
        self.conn.commit()
        return cursor.lastrowid

    def list_fetch_logs(self, journal_id: Optional[int] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest fetch log rows, optionally for a single journal."""
        try:
            cursor = self.conn.cursor()
            if journal_id is None:
                cursor.execute("SELECT * FROM fetch_logs ORDER BY id DESC LIMIT ?", (limit,))
            else:
                cursor.execute(
                    "SELECT * FROM fetch_logs WHERE journal_id = ? ORDER BY id DESC LIMIT ?",
                    (journal_id, limit),
                )
            return [dict(row) for row in cursor.fetchall()]
        except Error as e:
            logger.error(f"Error listing fetch logs: {e}")
            return []

    # Job queue operations
    def _job_row(self, row) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        job = dict(row)
        job['payload'] = _decode_json(job.get('payload'), {})
        return job

    def enqueue_job(self, kind: str, payload: Dict[str, Any], available_at: Optional[float] = None,
                    max_attempts: int = 3) -> int:
        """Add a job to the queue."""
        now = time()
        cursor = self.conn.cursor()
        cursor.execute(
            """INSERT INTO jobs (kind, payload, status, attempts, max_attempts, available_at, created_at, updated_at)
               VALUES (?, ?, 'queued', 0, ?, ?, ?, ?)""",
            (kind, json.dumps(payload), max_attempts, available_at if available_at is not None else now, now, now),
        )
        self.conn.commit()
        return cursor.lastrowid

    def claim_job(self, now: float, visibility_timeout: float) -> Optional[Dict[str, Any]]:
        """Claim the next due job, including running jobs whose lock expired."""
        cursor = self.conn.cursor()
        cursor.execute(
            """SELECT id FROM jobs
               WHERE (status = 'queued' AND available_at <= ?)
                  OR (status = 'running' AND locked_until < ?)
               ORDER BY available_at, id LIMIT 1""",
            (now, now),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        cursor.execute(
            """UPDATE jobs SET status = 'running', attempts = attempts + 1, locked_until = ?, updated_at = ?
               WHERE id = ?""",
            (now + visibility_timeout, now, row['id']),
        )
        self.conn.commit()
        return self.get_job(row['id'])

    def complete_job(self, job_id: int) -> bool:
        """Mark a job as done."""
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE jobs SET status = 'done', locked_until = NULL, last_error = NULL, updated_at = ? WHERE id = ?",
            (time(), job_id),
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def fail_job(self, job_id: int, error: str, retry_at: Optional[float] = None) -> bool:
        """Record a job failure; requeue it when retry_at is given, else fail it for good."""
        cursor = self.conn.cursor()
        if retry_at is None:
            cursor.execute(
                "UPDATE jobs SET status = 'failed', locked_until = NULL, last_error = ?, updated_at = ? WHERE id = ?",
                (error, time(), job_id),
            )
        else:
            cursor.execute(
                """UPDATE jobs SET status = 'queued', locked_until = NULL, last_error = ?, available_at = ?,
                   updated_at = ? WHERE id = ?""",
                (error, retry_at, time(), job_id),
            )
        self.conn.commit()
        return cursor.rowcount > 0

    def get_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        """Fetch one job row."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._job_row(cursor.fetchone())

    def list_jobs(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Jobs ordered by id, optionally filtered by status."""
        cursor = self.conn.cursor()
        if status:
            cursor.execute("SELECT * FROM jobs WHERE status = ? ORDER BY id LIMIT ?", (status, limit))
        else:
            cursor.execute("SELECT * FROM jobs ORDER BY id LIMIT ?", (limit,))
        return [self._job_row(row) for row in cursor.fetchall()]
