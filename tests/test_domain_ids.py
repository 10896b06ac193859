from datetime import datetime, timedelta, timezone

import pytest

from domain import (
    CacheEntry,
    Report,
    RunSummary,
    compute_request_id,
    from_iso,
    partition_key_from_id,
    resolve_target,
    to_iso,
)
from errors import ValidationError
from conftest import make_report


@pytest.mark.parametrize("platform_type,target,expected", [
    ("reddit", "DotNet", "reddit_dotnet"),
    ("Reddit", "dotnet", "reddit_dotnet"),
    ("github", "Owner/Repo", "github_owner_repo"),
    ("GITHUB", "owner/repo", "github_owner_repo"),
])
def test_compute_request_id_is_case_insensitive_and_slash_free(platform_type, target, expected):
    request_id = compute_request_id(platform_type, target)
    assert request_id == expected
    assert "/" not in request_id


def test_partition_key_is_prefix_before_first_underscore():
    assert partition_key_from_id("reddit_dotnet") == "reddit"
    assert partition_key_from_id("github_my_org_repo") == "github"
    with pytest.raises(ValidationError):
        partition_key_from_id("nounderscore")


def test_compute_request_id_requires_type_and_target():
    with pytest.raises(ValidationError, match="Source type is required"):
        compute_request_id("", "dotnet")
    with pytest.raises(ValidationError, match="Target is required"):
        compute_request_id("reddit", "  ")


def test_resolve_target_reddit_strips_prefix_and_lowercases():
    assert resolve_target("reddit", subreddit="r/DotNet") == ("reddit", "dotnet")


def test_resolve_target_github_from_fields_or_combined_target():
    assert resolve_target("github", owner="Microsoft", repo="VSCode") == ("github", "microsoft/vscode")
    assert resolve_target("github", target="Microsoft/VSCode") == ("github", "microsoft/vscode")


@pytest.mark.parametrize("kwargs,message", [
    ({"platform_type": None}, "Source type is required"),
    ({"platform_type": "twitter", "target": "x"}, "Invalid source type"),
    ({"platform_type": "reddit"}, "Subreddit is required for Reddit reports"),
    ({"platform_type": "reddit", "subreddit": "bad name!"}, "Invalid subreddit name"),
    ({"platform_type": "github", "owner": "microsoft"}, "Owner and repository are required for GitHub reports"),
    ({"platform_type": "github", "owner": "-bad", "repo": "x"}, "Invalid GitHub owner"),
])
def test_resolve_target_validation_messages(kwargs, message):
    with pytest.raises(ValidationError, match=message):
        resolve_target(**kwargs)


def test_report_key_matches_subscription_id():
    report = make_report(source="github", sub_source="owner/repo")
    assert report.key == compute_request_id("github", "Owner/Repo")


def test_report_dict_round_trip_keeps_summary_fields():
    report = make_report()
    restored = Report.from_dict(report.to_dict())
    assert restored == report
    assert set(report.summary()) == {"id", "source", "subSource", "generatedAt", "threadCount", "commentCount", "cutoffDate"}


def test_iso_helpers_use_utc_and_accept_epoch():
    when = datetime(2025, 3, 3, 11, 0, tzinfo=timezone.utc)
    assert to_iso(when) == "2025-03-03T11:00:00Z"
    assert from_iso("2025-03-03T11:00:00Z") == when
    assert from_iso(int(when.timestamp())) == when


def test_run_summary_counts_and_blob_name():
    summary = RunSummary(
        processed_at=datetime(2025, 3, 3, 11, 0, 5, tzinfo=timezone.utc),
        total_requests=3,
        generated_reports=[{"id": "a"}, {"id": "b"}],
        failed_request_ids=["reddit_x"],
        run_id="ab12cd34",
    )
    assert summary.success_count + summary.failure_count == summary.total_requests
    assert summary.blob_name == "weekly-summary-2025-03-03-11-00-05-000-ab12cd34.json"
    assert summary.to_dict()["failedRequestIds"] == ["reddit_x"]


def test_cache_entry_staleness_uses_generation_time():
    entry = CacheEntry(report=make_report(age_hours=200), stored_at=datetime.now(timezone.utc))
    assert entry.is_stale(timedelta(hours=168))
    assert not entry.is_stale(None)


def test_runs_in_the_same_second_get_distinct_blobs():
    processed_at = datetime(2025, 3, 3, 11, 0, 5, 250000, tzinfo=timezone.utc)
    first = RunSummary(processed_at=processed_at)
    second = RunSummary(processed_at=processed_at)
    assert first.blob_name != second.blob_name
    assert first.blob_name.startswith("weekly-summary-2025-03-03-11-00-05-250-")
