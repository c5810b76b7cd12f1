#!/usr/bin/env python3
"""
Periodic ingestion trigger.

Reads the ``schedule:`` section of journals.yaml and, at each scheduled
time, enqueues a ``fetch_all`` job for the job worker to pick up. The engine
itself never runs fetches on a timer; this process is the external trigger.

Supported formats:

    schedule:
      timezone: Europe/Lisbon
      times: ["06:00", "18:30"]

    schedule:
      - time: "06:00"

Without any schedule, ingestion runs daily at 06:00 in the configured
timezone.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from config import config, get_logger
from jobs import JOB_FETCH_ALL, JobQueue
from telemetry import get_tracer, init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")

init_telemetry("paper-ingest-scheduler")
_tracer = get_tracer("scheduler")

DEFAULT_SCHEDULE_TIMES = ("06:00",)
ERROR_BACKOFF_SECONDS = 60


class ScheduleEntry:
    """A daily run time such as "06:00" or "6:30"."""

    def __init__(self, time_str: str):
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    def _parse_time(self, time_str: str) -> time:
        parts = time_str.split(':')
        try:
            if len(parts) != 2:
                raise ValueError("expected HH:MM")
            hour, minute = int(parts[0]), int(parts[1])
            return time(hour=hour, minute=minute)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}")

    def next_occurrence(self, from_time: Optional[datetime] = None, tz=None) -> datetime:
        """Next occurrence strictly after ``from_time``, as a UTC datetime."""
        tz = tz or timezone.utc
        from_time = from_time or datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate <= ref_local:
            candidate = datetime.combine(ref_local.date() + timedelta(days=1), self.time, tzinfo=tz)
        return candidate.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"ScheduleEntry({self.time_str})"


class IngestScheduler:
    """Enqueues batch ingestion jobs at configured times of day."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or config.JOURNALS_CONFIG_PATH
        self.schedule_entries: List[ScheduleEntry] = []
        self.schedule_timezone_name = "UTC"
        self.schedule_timezone = timezone.utc
        self._set_timezone(config.SCHEDULER_TIMEZONE)
        self._load_schedule()

    def _set_timezone(self, name: Optional[str]) -> None:
        if not name:
            return
        try:
            self.schedule_timezone = ZoneInfo(str(name))
            self.schedule_timezone_name = str(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Invalid timezone '{name}', keeping {self.schedule_timezone_name}")

    def _load_schedule(self) -> None:
        """Load schedule times from the YAML config, falling back to the default time."""
        raw_entries: List[Any] = []
        try:
            if Path(self.config_path).exists():
                with open(self.config_path, 'r') as f:
                    data = yaml.safe_load(f) or {}
                section = data.get('schedule') if isinstance(data, dict) else None
                if isinstance(section, list):
                    raw_entries = section
                elif isinstance(section, dict):
                    self._set_timezone(section.get('timezone') or section.get('tz'))
                    raw_entries = section.get('times') or []
                    if not isinstance(raw_entries, list):
                        logger.error("Schedule 'times' must be a list; ignoring")
                        raw_entries = []
            else:
                logger.warning(f"Config file not found: {self.config_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading schedule from {self.config_path}: {e}")

        entries: List[ScheduleEntry] = []
        for raw in raw_entries:
            value = raw.get('time') if isinstance(raw, dict) else raw
            if value is None:
                logger.warning(f"Invalid schedule entry format: {raw}")
                continue
            try:
                entries.append(ScheduleEntry(value))
            except ValueError as e:
                logger.error(f"Failed to parse schedule entry {raw}: {e}")

        if not entries:
            entries = [ScheduleEntry(t) for t in DEFAULT_SCHEDULE_TIMES]
            logger.info(f"No schedule configured; using default {', '.join(DEFAULT_SCHEDULE_TIMES)}")
        self.schedule_entries = entries
        logger.info(f"Scheduled times ({self.schedule_timezone_name}): "
                    f"{', '.join(e.time_str for e in self.schedule_entries)}")

    def reload_schedule(self) -> None:
        logger.info("Reloading schedule configuration")
        self._load_schedule()

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest upcoming run across all schedule entries (UTC)."""
        if not self.schedule_entries:
            return None
        from_time = from_time or datetime.now(timezone.utc)
        return min(entry.next_occurrence(from_time, self.schedule_timezone) for entry in self.schedule_entries)

    def seconds_until_next_run(self, from_time: Optional[datetime] = None) -> Optional[float]:
        from_time = from_time or datetime.now(timezone.utc)
        next_run = self.get_next_run_time(from_time)
        if next_run is None:
            return None
        return (next_run - from_time).total_seconds()

    def get_schedule_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summary of the schedule for the status command."""
        now = now or datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = self.seconds_until_next_run(now)
        return {
            'current_time': now.isoformat(),
            'schedule_times': [entry.time_str for entry in self.schedule_entries],
            'schedule_timezone': self.schedule_timezone_name,
            'next_run_time': next_run.isoformat() if next_run else None,
            'seconds_until_next_run': seconds_until,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
        }

    def print_schedule_status(self) -> None:
        status = self.get_schedule_status()
        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        print(f"🌍 Timezone: {status['schedule_timezone']}")
        print(f"🎯 Scheduled times: {', '.join(status['schedule_times'])}")
        if status['next_run_time']:
            print(f"⏭️ Next run: {status['next_run_time']} (in {format_duration(status['seconds_until_next_run'])})")

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float) -> None:
        await asyncio.sleep(sleep_time)

    @trace_span("scheduler.trigger", tracer_name="scheduler")
    async def trigger(self, queue: JobQueue) -> int:
        """Enqueue one batch ingestion job."""
        job_id = await queue.enqueue(JOB_FETCH_ALL, {"trigger": "schedule"})
        logger.info(f"⏰ Scheduled ingestion queued as job {job_id}")
        return job_id

    async def run_forever(self, queue: JobQueue, run_immediately: bool = False) -> None:
        """Sleep until each scheduled time and enqueue a fetch_all job, until cancelled."""
        logger.info(f"🚀 Starting scheduler with {len(self.schedule_entries)} daily times")
        if run_immediately:
            await self.trigger(queue)

        while True:
            try:
                next_time = self.get_next_run_time()
                if next_time is None:
                    logger.error("No next run time calculated; stopping scheduler")
                    break
                sleep_time = max(1.0, (next_time - datetime.now(timezone.utc)).total_seconds() + 1)
                logger.info(f"😴 Sleeping {format_duration(sleep_time)} until next run "
                            f"(timezone: {self.schedule_timezone_name})")
                await self._sleep_until(next_time, sleep_time)
                await self.trigger(queue)
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled; shutting down")
                raise
            except Exception as e:
                logger.error(f"💥 Error in scheduler loop: {e}")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)


def create_scheduler(config_path: Optional[str] = None) -> IngestScheduler:
    """Create an IngestScheduler for the given journals.yaml path."""
    return IngestScheduler(config_path)
