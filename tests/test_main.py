import sys

import pytest

import main
from jobs import JOB_FETCH_ALL, JOB_FETCH_JOURNAL, JOB_FETCH_USER, JOB_REGENERATE_FEED


class RecordingEngine:
    def __init__(self):
        self.calls = []

    async def fetch_journal(self, journal_id, force=False):
        self.calls.append(("fetch_journal", journal_id, force))

    async def fetch_for_user(self, user_id, force=False):
        self.calls.append(("fetch_for_user", user_id, force))

    async def fetch_all(self, force=False):
        self.calls.append(("fetch_all", force))

    async def regenerate(self, journal_id):
        self.calls.append(("regenerate", journal_id))


@pytest.mark.asyncio
async def test_job_handlers_dispatch_to_engine():
    engine = RecordingEngine()
    handlers = main.build_job_handlers(engine, engine)

    await handlers[JOB_FETCH_JOURNAL]({"journal_id": "3", "force": True})
    await handlers[JOB_FETCH_USER]({"user_id": 5})
    await handlers[JOB_FETCH_ALL]({"trigger": "schedule"})
    await handlers[JOB_REGENERATE_FEED]({"journal_id": 8})

    assert engine.calls == [
        ("fetch_journal", 3, True),
        ("fetch_for_user", 5, False),
        ("fetch_all", False),
        ("regenerate", 8),
    ]


@pytest.mark.parametrize("argv", [
    ["fetch-user"],
    ["fetch-journal", "--force"],
    ["regenerate"],
    ["analyze-rss", "--no-ai"],
    ["test-page", "--no-redirect"],
])
def test_modes_require_their_arguments(monkeypatch, argv):
    monkeypatch.setattr(sys, "argv", ["main.py", *argv])

    with pytest.raises(SystemExit) as exc:
        main.main()

    assert exc.value.code == 2


def test_parser_flags():
    args = main.build_parser().parse_args(["test-page", "--url", "https://journal.example.org", "--no-redirect"])

    assert args.mode == "test-page"
    assert args.url == "https://journal.example.org"
    assert args.no_redirect is True
    assert args.force is False


def test_status_reports_missing_database(tmp_path):
    status = main.IngestOrchestrator(str(tmp_path / "absent.db")).check_status()

    assert status["checks"]["database"]["status"] == "missing"
    assert status["overall_status"] == "issues_detected"
    assert "next_run_time" in status["checks"]["schedule"]


@pytest.mark.asyncio
async def test_status_counts_rows(db, tmp_path):
    journal_id = await db.execute("create_journal", user_id=1, name="J", source_url="https://journal.example.org/rss")
    await db.execute("create_journal", user_id=1, name="AI", source_url="https://journal.example.org/latest",
                     source_type="ai_generated")
    await db.execute("log_fetch", journal_id=journal_id, status="success", papers_fetched=2, new_papers=2)
    await db.execute("log_fetch", journal_id=None, status="success")

    status = main.IngestOrchestrator(str(tmp_path / "test.db")).check_status()

    database = status["checks"]["database"]
    assert status["overall_status"] == "healthy"
    assert database["active_journals"] == 2
    assert database["ai_generated_journals"] == 1
    assert database["papers"] == 0
    assert database["jobs"] == {}
    assert database["last_batch"]["status"] == "success"
