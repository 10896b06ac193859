from datetime import datetime, timedelta, timezone

import pytest

from batch import BatchScheduler
from config import config
from generator import ReportGenerator
from registry import DedupRegistry
from conftest import FakeAnalyzer, FakeFetcher, make_items, make_report


class ExplodingGenerator:
    """Generator double that raises for one target and delegates otherwise."""

    def __init__(self, inner, explode_for):
        self.inner = inner
        self.explode_for = explode_for

    async def process(self, platform_type, target):
        if target == self.explode_for:
            raise RuntimeError("unexpected failure")
        return await self.inner.process(platform_type, target)


async def _seed(registry):
    await registry.add_or_increment("reddit", "dotnet")
    await registry.add_or_increment("reddit", "python")
    await registry.add_or_increment("github", "owner/repo")


@pytest.mark.asyncio
async def test_batch_records_successes_and_failures(db, store, cache):
    registry = DedupRegistry(db)
    await _seed(registry)
    fetcher = FakeFetcher({"dotnet": make_items("d", 3), "owner/repo": make_items("g", 2)})
    generator = ReportGenerator({"reddit": fetcher, "github": fetcher}, FakeAnalyzer(), store, cache)
    batch = BatchScheduler(registry, generator, store, cache, reuse_window_hours=0)

    summary = await batch.run()

    assert summary.total_requests == 3
    assert summary.success_count == 2
    assert summary.failed_request_ids == ["reddit_python"]
    assert summary.success_count + summary.failure_count == summary.total_requests
    blobs = await store.list_blobs(config.SUMMARIES_CONTAINER)
    assert [b["name"] for b in blobs] == [summary.blob_name]
    persisted = await store.get_json(config.SUMMARIES_CONTAINER, summary.blob_name)
    assert persisted["successCount"] == 2
    assert persisted["failedRequestIds"] == ["reddit_python"]
    assert {r["subSource"] for r in persisted["generatedReports"]} == {"dotnet", "owner/repo"}


@pytest.mark.asyncio
async def test_exception_for_one_request_does_not_stop_the_run(db, store, cache):
    registry = DedupRegistry(db)
    await _seed(registry)
    fetcher = FakeFetcher({t: make_items("x", 2) for t in ("dotnet", "python", "owner/repo")})
    inner = ReportGenerator({"reddit": fetcher, "github": fetcher}, FakeAnalyzer(), store, cache)
    batch = BatchScheduler(registry, ExplodingGenerator(inner, "dotnet"), store, cache, reuse_window_hours=0)

    summary = await batch.run()

    assert summary.failed_request_ids == ["reddit_dotnet"]
    assert summary.success_count == 2


@pytest.mark.asyncio
async def test_recent_cached_report_is_reused_unless_forced(db, store, cache):
    registry = DedupRegistry(db)
    await registry.add_or_increment("reddit", "dotnet")
    cache.set(make_report(report_id="recent", age_hours=1))
    fetcher = FakeFetcher({"dotnet": make_items("d", 2)})
    generator = ReportGenerator({"reddit": fetcher}, FakeAnalyzer(), store, cache)
    batch = BatchScheduler(registry, generator, store, cache, reuse_window_hours=24)

    summary = await batch.run()
    assert [r["id"] for r in summary.generated_reports] == ["recent"]
    assert fetcher.list_calls == 0

    forced = await batch.run(force=True)
    assert fetcher.list_calls == 1
    assert forced.generated_reports[0]["id"] != "recent"


@pytest.mark.asyncio
async def test_list_summaries_newest_first_with_limit(db, store, cache):
    registry = DedupRegistry(db)
    times = iter([
        datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc),
        datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc),
        datetime(2025, 3, 10, 11, 0, tzinfo=timezone.utc),
        datetime(2025, 3, 10, 11, 0, tzinfo=timezone.utc),
    ])
    generator = ReportGenerator({}, FakeAnalyzer(), store, cache)
    batch = BatchScheduler(registry, generator, store, cache, clock=lambda: next(times))

    await batch.run()
    await batch.run()

    summaries = await batch.list_summaries(limit=1)
    assert len(summaries) == 1
    names = [s["name"] for s in await batch.list_summaries(limit=10)]
    assert len(names) == 2
    assert sorted(name[:len("weekly-summary-2025-03-03-11-00-00-000")] for name in names) == [
        "weekly-summary-2025-03-03-11-00-00-000",
        "weekly-summary-2025-03-10-11-00-00-000",
    ]
    assert all(s["totalRequests"] == 0 for s in await batch.list_summaries())


@pytest.mark.asyncio
async def test_platform_fetch_error_fails_only_that_request(db, store, cache):
    registry = DedupRegistry(db)
    await _seed(registry)
    reddit = FakeFetcher({"dotnet": make_items("d", 2), "python": make_items("p", 2)})
    github = FakeFetcher({"owner/repo": make_items("g", 2)})
    github.list_error = RuntimeError("GitHub API unavailable")
    generator = ReportGenerator({"reddit": reddit, "github": github}, FakeAnalyzer(), store, cache)
    batch = BatchScheduler(registry, generator, store, cache, reuse_window_hours=0)

    summary = await batch.run()

    persisted = await store.get_json(config.SUMMARIES_CONTAINER, summary.blob_name)
    assert persisted["totalRequests"] == 3
    assert persisted["successCount"] == 2
    assert persisted["failureCount"] == 1
    assert persisted["failedRequestIds"] == ["github_owner_repo"]
    assert all(r["subSource"] != "owner/repo" for r in persisted["generatedReports"])
    assert reddit.list_calls == 2
