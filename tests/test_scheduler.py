from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from scheduler import JOB_ADMIN_REPORTS, JOB_WEEKLY_REPORTS, ReportScheduler, WeeklyScheduleEntry


def test_next_occurrence_same_week_and_rollover():
    entry = WeeklyScheduleEntry("monday", "11:00")
    sunday = datetime(2025, 3, 2, 18, 0, tzinfo=timezone.utc)
    assert entry.next_occurrence(sunday) == datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc)

    monday_early = datetime(2025, 3, 3, 10, 59, tzinfo=timezone.utc)
    assert entry.next_occurrence(monday_early) == datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc)

    monday_on_time = datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc)
    assert entry.next_occurrence(monday_on_time) == datetime(2025, 3, 10, 11, 0, tzinfo=timezone.utc)


def test_next_occurrence_honours_schedule_timezone():
    entry = WeeklyScheduleEntry("Monday", "11:00")
    lisbon_summer = ZoneInfo("Europe/Lisbon")
    ref = datetime(2025, 6, 1, 0, 0, tzinfo=timezone.utc)
    assert entry.next_occurrence(ref, lisbon_summer) == datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("day,time_str", [("funday", "11:00"), ("monday", "25:00"), ("monday", "1100")])
def test_invalid_entries_raise(day, time_str):
    with pytest.raises(ValueError):
        WeeklyScheduleEntry(day, time_str)


def test_scheduler_loads_jobs_and_orders_same_instant(tmp_path):
    schedule = tmp_path / "schedule.yaml"
    schedule.write_text(
        "schedule:\n"
        "  admin_reports:\n    day: monday\n    time: \"11:00\"\n"
        "  weekly_reports:\n    day: monday\n    time: \"11:00\"\n"
        "  unknown_job:\n    day: monday\n    time: \"09:00\"\n"
    )
    scheduler = ReportScheduler(str(schedule))
    assert set(scheduler.jobs) == {JOB_WEEKLY_REPORTS, JOB_ADMIN_REPORTS}

    when, due = scheduler.get_next_job(datetime(2025, 3, 2, 12, 0, tzinfo=timezone.utc))
    assert when == datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc)
    assert due == [JOB_WEEKLY_REPORTS, JOB_ADMIN_REPORTS]

    status = scheduler.get_schedule_status()
    assert status["schedule_active"] is True
    assert set(status["jobs"]) == {JOB_WEEKLY_REPORTS, JOB_ADMIN_REPORTS}


def test_default_schedule_runs_batch_before_admin():
    scheduler = ReportScheduler()
    when, due = scheduler.get_next_job(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))
    assert due == [JOB_WEEKLY_REPORTS]
    assert when.hour == 11
    when, due = scheduler.get_next_job(datetime(2025, 3, 3, 12, 0, tzinfo=timezone.utc))
    assert due == [JOB_ADMIN_REPORTS]
    assert when.hour == 15


def test_missing_schedule_file_means_inactive(tmp_path):
    scheduler = ReportScheduler(str(tmp_path / "missing.yaml"))
    assert scheduler.get_next_job() == (None, [])
    assert scheduler.get_schedule_status()["schedule_active"] is False


@pytest.mark.asyncio
async def test_run_job_dispatches_to_services():
    calls = []

    class Batch:
        async def run(self):
            calls.append("batch")

    class Distributor:
        async def process_all(self):
            calls.append("admin")

    class Services:
        batch = Batch()
        distributor = Distributor()

    scheduler = ReportScheduler()
    await scheduler.run_job(JOB_WEEKLY_REPORTS, Services())
    await scheduler.run_job(JOB_ADMIN_REPORTS, Services())
    assert calls == ["batch", "admin"]
    with pytest.raises(ValueError):
        await scheduler.run_job("nope", Services())
