import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from accounts import ApiKeyAccountService
from admin import AdminConfigStore
from api import create_app
from cache import ReportCache
from models import DatabaseQueue
from services import ReportServices
from storage import LocalReportStore
from conftest import FakeAnalyzer, FakeEmailSender, FakeFetcher, NoWaitLimiter, make_items, make_report

ADMIN_KEY = "admin-key"
USER_KEY = "user-key"


@pytest.fixture
def services(tmp_path):
    fetcher = FakeFetcher({"dotnet": make_items("d", 3), "owner/repo": make_items("g", 2)})
    return ReportServices(
        db=DatabaseQueue(str(tmp_path / "reports.db")),
        store=LocalReportStore(str(tmp_path / "blobs")),
        cache=ReportCache(max_age_hours=168),
        fetchers={"reddit": fetcher, "github": fetcher},
        analyzer=FakeAnalyzer(),
        email_sender=FakeEmailSender(),
        accounts=ApiKeyAccountService({USER_KEY: "bob"}, {ADMIN_KEY: "alice"}),
        admin_rate_limiter=NoWaitLimiter(),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _seed_admin_config(db_path, **fields):
    async def seed():
        db = DatabaseQueue(db_path)
        await db.start()
        try:
            return await AdminConfigStore(db).create(**fields)
        finally:
            await db.stop()

    return asyncio.run(seed())


def _wait_for_job(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/ReportJobs/{job_id}").json()
        if job["status"] in ("succeeded", "failed"):
            return job
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish")


def test_duplicate_subscription_shares_one_record(client):
    first = client.post("/AddReportRequest", json={"type": "reddit", "subreddit": "dotnet"})
    second = client.post("/AddReportRequest", json={"type": "Reddit", "subreddit": "DotNet"})

    assert first.status_code == 200
    assert first.json()["id"] == second.json()["id"] == "reddit_dotnet"
    assert first.json()["message"] == "Request added successfully"
    assert "jobId" in first.json()
    assert "jobId" not in second.json()

    requests = client.get("/ListReportRequests").json()["requests"]
    assert len(requests) == 1
    assert requests[0]["subscriberCount"] == 2
    assert requests[0]["partitionKey"] == "reddit"


def test_remove_decrements_then_deletes_then_404(client):
    client.post("/AddReportRequest", json={"type": "github", "owner": "Owner", "repo": "Repo"})
    client.post("/AddReportRequest", json={"type": "github", "owner": "owner", "repo": "repo"})

    response = client.delete("/reportrequest/github_owner_repo")
    assert response.status_code == 200
    assert response.text == "Request removed successfully"
    assert client.get("/ListReportRequests").json()["requests"][0]["subscriberCount"] == 1

    assert client.delete("/reportrequest/github_owner_repo").status_code == 200
    assert client.get("/ListReportRequests").json()["requests"] == []

    missing = client.delete("/reportrequest/github_owner_repo")
    assert missing.status_code == 404
    assert "not found" in missing.json()["error"]


@pytest.mark.parametrize("body,message", [
    ({}, "Source type is required"),
    ({"type": "twitter"}, "Invalid source type. Must be 'reddit' or 'github'"),
    ({"type": "reddit"}, "Subreddit is required for Reddit reports"),
    ({"type": "github", "owner": "someone"}, "Owner and repository are required for GitHub reports"),
])
def test_add_validation_errors_are_400(client, body, message):
    response = client.post("/AddReportRequest", json=body)
    assert response.status_code == 400
    assert response.json() == {"error": message}


def test_malformed_body_is_400(client):
    response = client.post("/AddReportRequest", content="not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_new_subscription_job_produces_report(client):
    job_id = client.post("/AddReportRequest", json={"type": "reddit", "subreddit": "dotnet"}).json()["jobId"]

    job = _wait_for_job(client, job_id)

    assert job["status"] == "succeeded"
    assert job["requestId"] == "reddit_dotnet"
    report = client.get(f"/Report/{job['reportId']}")
    assert report.status_code == 200
    assert report.json()["subSource"] == "dotnet"
    assert "htmlContent" in report.json()


def test_unknown_report_and_job_are_404(client):
    assert client.get("/Report/does-not-exist").status_code == 404
    assert client.get("/ReportJobs/does-not-exist").status_code == 404


def test_filter_reports_matches_subscriptions(client, services):
    services.cache.set(make_report(source="reddit", sub_source="dotnet", report_id="r-dotnet"))
    services.cache.set(make_report(source="github", sub_source="owner/repo", report_id="r-gh", age_hours=2))
    services.cache.set(make_report(source="reddit", sub_source="python", report_id="r-python"))

    response = client.post("/FilterReports", json=[
        {"id": "reddit_dotnet", "type": "reddit", "target": "dotnet", "subreddit": "dotnet"},
        {"type": "github", "owner": "Owner", "repo": "Repo"},
        {"type": "reddit", "subreddit": "nothingcached"},
    ])

    assert response.status_code == 200
    reports = response.json()["reports"]
    assert [r["id"] for r in reports] == ["r-dotnet", "r-gh"]
    assert set(reports[0]) == {"id", "source", "subSource", "generatedAt", "threadCount", "commentCount", "cutoffDate"}


def test_weekly_summaries_endpoint(client, services):
    client.portal.call(services.batch.run)
    response = client.get("/GetWeeklyProcessingSummaries?limit=5")
    assert response.status_code == 200
    summaries = response.json()["summaries"]
    assert len(summaries) == 1
    assert summaries[0]["name"].startswith("weekly-summary-")
    assert client.get("/GetWeeklyProcessingSummaries?limit=0").status_code == 400


def test_send_admin_report_now_auth_and_lookup(tmp_path, services):
    admin_config = _seed_admin_config(
        str(tmp_path / "reports.db"),
        name="Weekly .NET",
        email_recipient="admin@example.com",
        platform_type="reddit",
        target="dotnet",
    )
    services.cache.set(make_report(report_id="cached"))

    with TestClient(create_app(services)) as client:
        assert client.post(f"/SendAdminReportNow?id={admin_config.id}").status_code == 401
        assert client.post(f"/SendAdminReportNow?id={admin_config.id}", headers={"x-api-key": "wrong"}).status_code == 401
        assert client.post(f"/SendAdminReportNow?id={admin_config.id}", headers={"x-api-key": USER_KEY}).status_code == 403
        assert client.post("/SendAdminReportNow?id=missing", headers={"x-api-key": ADMIN_KEY}).status_code == 404

        response = client.post(
            f"/SendAdminReportNow?id={admin_config.id}",
            headers={"Authorization": f"Bearer {ADMIN_KEY}"},
        )

    assert response.status_code == 200
    assert services.email_sender.sent[0]["report_id"] == "cached"
    assert services.email_sender.sent[0]["title"] == "Weekly .NET"


def test_send_admin_report_now_delivery_failure_is_500(tmp_path, services):
    admin_config = _seed_admin_config(
        str(tmp_path / "reports.db"),
        name="Broken",
        email_recipient="broken@example.com",
        platform_type="reddit",
        target="dotnet",
    )
    services.cache.set(make_report(report_id="cached"))
    services.email_sender.fail_for.add("broken@example.com")

    with TestClient(create_app(services)) as client:
        response = client.post(f"/SendAdminReportNow?id={admin_config.id}", headers={"x-api-key": ADMIN_KEY})

    assert response.status_code == 500


def test_unexpected_errors_are_generic_500(services, monkeypatch):
    async def broken_list(platform_type=None):
        raise RuntimeError("database on fire")

    monkeypatch.setattr(services.registry, "list", broken_list)
    with TestClient(create_app(services), raise_server_exceptions=False) as client:
        response = client.get("/ListReportRequests")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "An internal error occurred"
    assert body["requestId"]
    assert "fire" not in response.text


def test_add_rejects_targets_that_do_not_exist(client):
    reddit = client.post("/AddReportRequest", json={"type": "reddit", "subreddit": "nosuchsub"})
    github = client.post("/AddReportRequest", json={"type": "github", "owner": "ghost", "repo": "missing"})

    assert reddit.status_code == 400
    assert reddit.json() == {"error": "Subreddit does not exist or is not accessible: nosuchsub."}
    assert github.status_code == 400
    assert github.json() == {"error": "GitHub repository does not exist or is not accessible: ghost/missing."}
    assert client.get("/ListReportRequests").json()["requests"] == []


def test_reddit_report_reuses_recent_report_unless_forced(client, services):
    fetcher = services.fetchers["reddit"]

    first = client.get("/RedditReport?subreddit=DotNet")
    assert first.status_code == 200
    assert first.headers["content-type"].startswith("text/html")
    assert first.text == services.cache.get("reddit_dotnet").html_content
    assert fetcher.list_calls == 1

    assert client.get("/RedditReport?subreddit=dotnet").text == first.text
    assert fetcher.list_calls == 1

    assert client.get("/RedditReport?subreddit=dotnet&force=true").status_code == 200
    assert fetcher.list_calls == 2


def test_on_demand_report_parameter_errors(client):
    assert client.get("/RedditReport").json() == {"error": "Subreddit parameter is required"}
    assert client.get("/GitHubIssuesReport").status_code == 400
    bad_format = client.get("/GitHubIssuesReport?repo=justonepart")
    assert bad_format.status_code == 400
    assert bad_format.json() == {"error": "Repository parameter must be in format 'owner/name'"}
    missing = client.get("/GitHubIssuesReport?repo=ghost/missing")
    assert missing.status_code == 400
    assert "does not exist" in missing.json()["error"]


def test_github_report_html_and_empty_window(client):
    response = client.get("/GitHubIssuesReport?repo=Owner/Repo")
    assert response.status_code == 200
    assert "<" in response.text

    empty = client.get("/RedditReport?subreddit=quietsub")
    assert empty.status_code == 500
    assert empty.json() == {"error": "No report could be generated for r/quietsub"}


def test_cache_maintenance_endpoints(client, services):
    assert client.get("/RedditReport?subreddit=dotnet").status_code == 200
    assert client.get("/cache/status").json()["count"] == 1

    assert client.post("/cache/clear").status_code == 401
    assert client.post("/cache/clear", headers={"x-api-key": USER_KEY}).status_code == 403
    cleared = client.post("/cache/clear", headers={"x-api-key": ADMIN_KEY})
    assert cleared.json() == {"message": "Cache cleared successfully", "removed": 1}
    assert client.get("/cache/status").json()["count"] == 0

    assert client.post("/cache/refresh", headers={"x-api-key": USER_KEY}).status_code == 403
    refreshed = client.post("/cache/refresh", headers={"Authorization": f"Bearer {ADMIN_KEY}"})
    assert refreshed.status_code == 200
    assert refreshed.json()["message"] == "Cache refreshed successfully"
    assert refreshed.json()["reportCount"] == 1
    assert refreshed.json()["refreshedAt"]
