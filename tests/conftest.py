import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from cache import ReportCache
from domain import Report
from emailer import DELIVERY_SUCCEEDED, DeliveryStatus
from models import DatabaseQueue
from platforms import CandidateItem, Comment, ItemDetail
from storage import LocalReportStore


class FakeFetcher:
    """In-memory platform: items per target, optional failures and latency."""

    platform_type = "reddit"

    def __init__(self, items: Optional[Dict[str, List[CandidateItem]]] = None, delay: float = 0.0):
        self.items = items or {}
        self.delay = delay
        self.fail_detail_ids = set()
        self.list_error: Optional[Exception] = None
        self.list_calls = 0
        self.detail_calls = []

    async def list_recent(self, target, cutoff):
        self.list_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.list_error:
            raise self.list_error
        return list(self.items.get(target, []))

    async def fetch_detail(self, target, item_id):
        self.detail_calls.append((target, item_id))
        if item_id in self.fail_detail_ids:
            raise RuntimeError(f"detail fetch failed for {item_id}")
        item = next(i for i in self.items.get(target, []) if i.id == item_id)
        comments = [
            Comment(id=f"{item_id}-c1", body=f"First comment on {item.title}", score=5, author="alice",
                    replies=[Comment(id=f"{item_id}-c2", body="A reply", score=2, author="bob")]),
        ]
        return ItemDetail(item=item, body=f"Body of {item.title}", comments=comments)

    async def exists(self, target):
        return target in self.items


class FakeAnalyzer:
    def __init__(self, fail_purposes=()):
        self.calls = []
        self.fail_purposes = set(fail_purposes)

    async def summarize(self, text, *, prompt=None, purpose="analysis"):
        self.calls.append(purpose)
        if purpose in self.fail_purposes:
            return None
        return f"Summary for {purpose}"

    def prompt_for(self, name, **values):
        return f"{name} prompt for {values.get('target')}"


class FakeEmailSender:
    def __init__(self, status: str = DELIVERY_SUCCEEDED, fail_for=()):
        self.status = status
        self.fail_for = set(fail_for)
        self.sent = []

    async def send(self, report, recipient, *, title, recipient_name="Administrator"):
        self.sent.append({"recipient": recipient, "report_id": report.id, "title": title, "recipient_name": recipient_name})
        if recipient in self.fail_for:
            return DeliveryStatus.failed("mailbox unavailable")
        return DeliveryStatus(status=self.status)


class NoWaitLimiter:
    def __init__(self):
        self.acquired = 0

    async def acquire(self):
        self.acquired += 1
        return 0.0


def make_items(prefix: str, count: int) -> List[CandidateItem]:
    return [
        CandidateItem(
            id=f"{prefix}{n}",
            title=f"{prefix} thread {n}",
            url=f"https://example.com/{prefix}/{n}",
            comment_count=n * 3,
            score=n * 10,
            created_at=datetime.now(timezone.utc) - timedelta(days=1),
            author="poster",
        )
        for n in range(1, count + 1)
    ]


def make_report(source="reddit", sub_source="dotnet", age_hours: float = 0.0, report_id="r1") -> Report:
    generated = datetime.now(timezone.utc) - timedelta(hours=age_hours)
    return Report(
        id=report_id,
        source=source,
        sub_source=sub_source,
        generated_at=generated,
        cutoff_date=generated - timedelta(days=7),
        thread_count=3,
        comment_count=12,
        html_content="<div>report</div>",
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "reports.db"))
    await queue.start()
    yield queue
    await queue.stop()


@pytest_asyncio.fixture
async def store(tmp_path):
    local = LocalReportStore(str(tmp_path / "blobs"))
    await local.initialize()
    return local


@pytest.fixture
def cache():
    return ReportCache(max_age_hours=168)
