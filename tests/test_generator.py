import asyncio
from contextlib import asynccontextmanager

import pytest

from config import config
from generator import ReportGenerator, flatten_comments, rank_candidates
from platforms import CandidateItem, Comment
from conftest import FakeAnalyzer, FakeFetcher, make_items, make_report


def _generator(fetcher, analyzer, store, cache):
    return ReportGenerator({"reddit": fetcher, "github": fetcher}, analyzer, store, cache)


def test_rank_candidates_uses_weighted_engagement():
    busy = CandidateItem(id="busy", title="Busy", url="u1", comment_count=100, score=0)
    popular = CandidateItem(id="popular", title="Popular", url="u2", comment_count=0, score=200)
    quiet = CandidateItem(id="quiet", title="Quiet", url="u3", comment_count=1, score=1)
    assert [c.id for c in rank_candidates([quiet, popular, busy], 2)] == ["busy", "popular"]


def test_flatten_comments_is_depth_first():
    tree = [
        Comment(id="a", body="a", replies=[Comment(id="a1", body="a1", replies=[Comment(id="a1x", body="a1x")])]),
        Comment(id="b", body="b"),
    ]
    assert [c.id for c in flatten_comments(tree)] == ["a", "a1", "a1x", "b"]


@pytest.mark.asyncio
async def test_process_generates_persists_and_caches(store, cache, monkeypatch):
    monkeypatch.setattr(config, "REPORT_TOP_ITEMS", 3)
    fetcher = FakeFetcher({"dotnet": make_items("t", 5)})
    generator = _generator(fetcher, FakeAnalyzer(), store, cache)

    report = await generator.process("reddit", "DotNet")

    assert report is not None
    assert report.source == "reddit"
    assert report.sub_source == "dotnet"
    assert report.thread_count == 3
    assert report.comment_count == 6
    assert "r/dotnet" in report.html_content
    assert cache.get("reddit_dotnet").id == report.id
    stored = await store.get_json(config.REPORTS_CONTAINER, f"{report.id}.json")
    assert stored["subSource"] == "dotnet"
    # Highest-engagement items are the ones analyzed
    assert [item_id for _, item_id in fetcher.detail_calls] == ["t5", "t4", "t3"]


@pytest.mark.asyncio
async def test_failed_items_are_skipped(store, cache, monkeypatch):
    monkeypatch.setattr(config, "REPORT_TOP_ITEMS", 3)
    fetcher = FakeFetcher({"dotnet": make_items("t", 3)})
    fetcher.fail_detail_ids = {"t3"}
    generator = _generator(fetcher, FakeAnalyzer(), store, cache)

    report = await generator.process("reddit", "dotnet")

    assert report is not None
    assert report.thread_count == 2


@pytest.mark.asyncio
async def test_all_items_failing_returns_none(store, cache):
    fetcher = FakeFetcher({"dotnet": make_items("t", 2)})
    generator = _generator(fetcher, FakeAnalyzer(fail_purposes={"reddit_item"}), store, cache)

    assert await generator.process("reddit", "dotnet") is None
    assert cache.get("reddit_dotnet") is None
    assert await store.list_blobs(config.REPORTS_CONTAINER) == []


@pytest.mark.asyncio
async def test_empty_window_returns_none(store, cache):
    generator = _generator(FakeFetcher({}), FakeAnalyzer(), store, cache)
    assert await generator.process("github", "owner/repo") is None


@pytest.mark.asyncio
async def test_listing_failure_returns_none(store, cache):
    fetcher = FakeFetcher({"dotnet": make_items("t", 2)})
    fetcher.list_error = RuntimeError("platform down")
    generator = _generator(fetcher, FakeAnalyzer(), store, cache)
    assert await generator.process("reddit", "dotnet") is None


@pytest.mark.asyncio
async def test_weekly_summary_failure_still_produces_report(store, cache):
    fetcher = FakeFetcher({"dotnet": make_items("t", 2)})
    generator = _generator(fetcher, FakeAnalyzer(fail_purposes={"reddit_weekly"}), store, cache)
    report = await generator.process("reddit", "dotnet")
    assert report is not None
    assert "could not be generated" in report.html_content


@pytest.mark.asyncio
async def test_concurrent_process_for_same_key_generates_once(store, cache):
    fetcher = FakeFetcher({"dotnet": make_items("t", 2)}, delay=0.05)
    generator = _generator(fetcher, FakeAnalyzer(), store, cache)

    first, second = await asyncio.gather(
        generator.process("reddit", "dotnet"),
        generator.process("Reddit", "DotNet"),
    )

    assert fetcher.list_calls == 1
    assert first.id == second.id
    assert not generator.locks.locked("reddit_dotnet")


@pytest.mark.asyncio
async def test_report_stored_while_queued_is_reused(store, cache, monkeypatch):
    fetcher = FakeFetcher({"dotnet": make_items("t", 2)})
    generator = _generator(fetcher, FakeAnalyzer(), store, cache)

    @asynccontextmanager
    async def hold_after_other_generation(key):
        # Another holder finished just before this caller acquired the lock
        cache.set(make_report(report_id="from-other-holder"))
        yield False

    monkeypatch.setattr(generator.locks, "hold", hold_after_other_generation)

    report = await generator.process("reddit", "dotnet")

    assert report.id == "from-other-holder"
    assert fetcher.list_calls == 0
