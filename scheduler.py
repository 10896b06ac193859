#!/usr/bin/env python3
"""
Weekly report scheduler

Runs the two recurring jobs defined in schedule.yaml:

- weekly_reports: regenerate every subscribed report (BatchScheduler)
- admin_reports: email the admin reports (AdminDistributor)

Each job is a weekday plus an HH:MM time in the schedule timezone. The loop
sleeps until the earliest due job, runs it, and keeps going after failures.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo
from typing import Any, Dict, List, Optional, Tuple

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("scheduler")

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

JOB_WEEKLY_REPORTS = "weekly_reports"
JOB_ADMIN_REPORTS = "admin_reports"
KNOWN_JOBS = (JOB_WEEKLY_REPORTS, JOB_ADMIN_REPORTS)


class WeeklyScheduleEntry:
    """A weekday and time of day, e.g. Monday 11:00."""

    def __init__(self, day: str, time_str: str):
        """
        Raises:
            ValueError: If the day or time is invalid.
        """
        self.day_name = str(day).strip().lower()
        if self.day_name not in WEEKDAYS:
            raise ValueError(f"Invalid weekday '{day}'")
        self.weekday = WEEKDAYS.index(self.day_name)
        self.time_str = str(time_str)
        self.time = self._parse_time(time_str)

    def _parse_time(self, time_str: str) -> time:
        """Parse "HH:MM" or "H:MM"."""
        try:
            clean_time = str(time_str).strip().strip('"\'')
            parts = clean_time.split(':')
            if len(parts) != 2:
                raise ValueError(f"Time must be in HH:MM format, got: {time_str}")
            hour = int(parts[0])
            minute = int(parts[1])
            if not (0 <= hour <= 23):
                raise ValueError(f"Hour must be 0-23, got: {hour}")
            if not (0 <= minute <= 59):
                raise ValueError(f"Minute must be 0-59, got: {minute}")
            return time(hour=hour, minute=minute)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}")

    def next_occurrence(self, from_time: Optional[datetime] = None, tz: Optional[Any] = None) -> datetime:
        """Next occurrence strictly after ``from_time``, returned in UTC."""
        if tz is None:
            tz = timezone.utc
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        days_ahead = (self.weekday - ref_local.weekday()) % 7
        candidate_local = datetime.combine(ref_local.date() + timedelta(days=days_ahead), self.time, tzinfo=tz)
        if candidate_local <= ref_local:
            candidate_local = candidate_local + timedelta(days=7)
        return candidate_local.astimezone(timezone.utc)

    def __str__(self) -> str:
        return f"{self.day_name.capitalize()} {self.time.strftime('%H:%M')}"

    def __repr__(self) -> str:
        return f"WeeklyScheduleEntry({self})"


class ReportScheduler:
    """Sleeps until the next weekly job and dispatches it to the services."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or config.SCHEDULE_CONFIG_PATH
        self.jobs: Dict[str, WeeklyScheduleEntry] = {}
        self.schedule_timezone_name = "UTC"
        try:
            if config.SCHEDULER_TIMEZONE:
                self.schedule_timezone_name = str(config.SCHEDULER_TIMEZONE)
            self.schedule_timezone = ZoneInfo(self.schedule_timezone_name)
        except Exception:
            logger.warning(f"Invalid timezone '{self.schedule_timezone_name}', falling back to UTC")
            self.schedule_timezone_name = "UTC"
            self.schedule_timezone = timezone.utc
        self._load_schedule()

    def _load_schedule(self) -> None:
        data = config.load_yaml(self.config_path, "schedule")
        self.jobs = {}
        if not isinstance(data, dict):
            return
        schedule = data.get('schedule')
        if not isinstance(schedule, dict):
            logger.error(f"'schedule' in {self.config_path} must be a mapping of job name to day/time")
            return

        tz_name = schedule.get('timezone')
        if tz_name:
            try:
                self.schedule_timezone = ZoneInfo(str(tz_name))
                self.schedule_timezone_name = str(tz_name)
            except Exception:
                logger.error(f"Invalid schedule timezone '{tz_name}', keeping '{self.schedule_timezone_name}'")

        for name, entry in schedule.items():
            if name == 'timezone':
                continue
            if name not in KNOWN_JOBS:
                logger.warning(f"Ignoring unknown scheduled job '{name}'")
                continue
            if not isinstance(entry, dict) or 'day' not in entry or 'time' not in entry:
                logger.error(f"Scheduled job '{name}' needs 'day' and 'time'")
                continue
            try:
                self.jobs[name] = WeeklyScheduleEntry(entry['day'], entry['time'])
            except ValueError as e:
                logger.error(f"Failed to parse schedule for '{name}': {e}")

        if self.jobs:
            listing = ", ".join(f"{name} {entry}" for name, entry in self.jobs.items())
            logger.info(f"Loaded schedule ({self.schedule_timezone_name}): {listing}")

    def reload_schedule(self) -> None:
        logger.info("Reloading schedule configuration")
        self._load_schedule()

    def get_next_job(self, from_time: Optional[datetime] = None) -> Tuple[Optional[datetime], List[str]]:
        """Earliest next run time and every job due at that instant."""
        if not self.jobs:
            return None, []
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        upcoming = {name: entry.next_occurrence(from_time, self.schedule_timezone) for name, entry in self.jobs.items()}
        earliest = min(upcoming.values())
        # Keep the configured order so batch regeneration precedes admin mail at the same instant
        due = [name for name in KNOWN_JOBS if upcoming.get(name) == earliest]
        return earliest, due

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_run, due = self.get_next_job(now)
        seconds_until = (next_run - now).total_seconds() if next_run else None
        return {
            'current_time': now.isoformat(),
            'schedule_timezone': self.schedule_timezone_name,
            'jobs': {
                name: {
                    'schedule': str(entry),
                    'next_run': entry.next_occurrence(now, self.schedule_timezone).isoformat(),
                }
                for name, entry in self.jobs.items()
            },
            'next_run_time': next_run.isoformat() if next_run else None,
            'next_jobs': due,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
            'schedule_active': bool(self.jobs),
        }

    def print_schedule_status(self) -> None:
        status = self.get_schedule_status()
        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        print(f"🌍 Timezone: {status['schedule_timezone']}")
        if not status['schedule_active']:
            print("❌ No schedule configured")
            return
        for name, job in status['jobs'].items():
            print(f"🎯 {name}: {job['schedule']} (next: {job['next_run']})")
        print(f"⏭️ Next run: {', '.join(status['next_jobs'])} at {status['next_run_time']}")
        print(f"⏳ Time until next run: {status['minutes_until_next_run']:.1f} minutes")

    async def run_job(self, name: str, services) -> Any:
        if name == JOB_WEEKLY_REPORTS:
            return await services.batch.run()
        if name == JOB_ADMIN_REPORTS:
            return await services.distributor.process_all()
        raise ValueError(f"Unknown scheduled job '{name}'")

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_scheduled(self, services) -> None:
        """Loop forever running due jobs against an initialized ``ReportServices``."""
        if not self.jobs:
            logger.error("No schedule configured - cannot run in scheduled mode")
            logger.info(f"Configure weekly_reports/admin_reports in {self.config_path}")
            return

        logger.info(f"🚀 Starting scheduler with {len(self.jobs)} job(s)")

        if config.SCHEDULER_RUN_IMMEDIATELY:
            logger.info("🎬 Running weekly batch immediately on startup (SCHEDULER_RUN_IMMEDIATELY=true)")
            try:
                await self.run_job(JOB_WEEKLY_REPORTS, services)
            except Exception as e:
                logger.error(f"💥 Startup batch failed: {e}")

        while True:
            try:
                next_time, due = self.get_next_job()
                if next_time is None:
                    logger.error("No next run time calculated - stopping scheduler")
                    break

                now = datetime.now(timezone.utc)
                sleep_time = max(1, (next_time - now).total_seconds() + 1)
                logger.info(
                    f"😴 Sleeping {sleep_time / 60:.1f} minutes until {', '.join(due)} "
                    f"(timezone: {self.schedule_timezone_name})"
                )
                await self._sleep_until(next_time, sleep_time, due)

                for name in due:
                    logger.info(f"⏰ Starting scheduled job {name}")
                    success, duration = await self._run_job_with_span(name, services, next_time)
                    if success:
                        logger.info(f"✅ Scheduled job {name} completed in {duration:.1f}s")
                    else:
                        logger.error(f"❌ Scheduled job {name} failed after {duration:.1f}s")

            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled - shutting down")
                break
            except Exception as e:
                logger.error(f"💥 Error in scheduler loop: {e}")
                await asyncio.sleep(60)

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time, due: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
            "scheduled.jobs": ",".join(due),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float, due: List[str]) -> None:
        await asyncio.sleep(sleep_time)

    @trace_span(
        "scheduler.job_run",
        tracer_name="scheduler",
        attr_from_args=lambda self, name, services, next_time: {
            "scheduled.job": name,
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _run_job_with_span(self, name: str, services, next_time: datetime) -> Tuple[bool, float]:
        start_time = datetime.now(timezone.utc)
        try:
            await self.run_job(name, services)
            success = True
        except Exception as e:
            logger.error(f"Scheduled job {name} raised: {e}", exc_info=True)
            success = False
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        return success, duration


def create_scheduler(config_path: Optional[str] = None) -> ReportScheduler:
    return ReportScheduler(config_path)
