#!/usr/bin/env python3
"""
Domain types for the report pipeline.

Holds the dataclasses passed between the registry, cache, generator and
distributors, plus the deterministic id algorithm that ties a subscription, a
cache entry and an admin config to the same generation key.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from errors import ValidationError

SUPPORTED_PLATFORMS = ("reddit", "github")

_SUBREDDIT_RE = re.compile(r"^[A-Za-z0-9_]{2,21}$")
_GITHUB_OWNER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")
_GITHUB_REPO_RE = re.compile(r"^[A-Za-z0-9._-]{1,100}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def from_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or epoch seconds) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_epoch(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value is not None else None


def normalize_target(platform_type: str, target: str) -> str:
    """Lowercase a target and replace path separators so it is safe inside an id."""
    return str(target).strip().lower().replace("/", "_")


def compute_request_id(platform_type: str, target: str) -> str:
    """Deterministic id for a (platform, target) subscription.

    ``reddit`` + ``DotNet`` -> ``reddit_dotnet``;
    ``github`` + ``Owner/Repo`` -> ``github_owner_repo``.
    """
    platform = str(platform_type or "").strip().lower()
    if not platform:
        raise ValidationError("Source type is required")
    if not target or not str(target).strip():
        raise ValidationError("Target is required")
    return f"{platform}_{normalize_target(platform, target)}"


def partition_key_from_id(request_id: str) -> str:
    """The platform type is the id's prefix up to the first underscore."""
    partition, sep, _ = request_id.partition("_")
    if not sep or not partition:
        raise ValidationError(f"Malformed request id '{request_id}'")
    return partition


def split_github_target(target: str) -> Tuple[str, str]:
    owner, sep, repo = str(target).partition("/")
    if not sep or not owner or not repo:
        raise ValidationError("Owner and repository are required for GitHub reports")
    return owner, repo


def resolve_target(
    platform_type: Optional[str],
    subreddit: Optional[str] = None,
    owner: Optional[str] = None,
    repo: Optional[str] = None,
    target: Optional[str] = None,
) -> Tuple[str, str]:
    """Validate request fields and return the normalized ``(platform_type, target)``.

    Accepts either the platform-specific fields (subreddit, owner/repo) or an
    already-combined ``target``. Values are lowercased.

    Raises:
        ValidationError: With the message returned to HTTP clients.
    """
    platform = (platform_type or "").strip().lower()
    if not platform:
        raise ValidationError("Source type is required")
    if platform not in SUPPORTED_PLATFORMS:
        raise ValidationError("Invalid source type. Must be 'reddit' or 'github'")

    if platform == "reddit":
        name = (subreddit or target or "").strip()
        if name.lower().startswith("r/"):
            name = name[2:]
        if not name:
            raise ValidationError("Subreddit is required for Reddit reports")
        if not _SUBREDDIT_RE.match(name):
            raise ValidationError(f"Invalid subreddit name '{name}'")
        return platform, name.lower()

    if target and not (owner or repo):
        owner, repo = split_github_target(target.strip())
    owner = (owner or "").strip()
    repo = (repo or "").strip()
    if not owner or not repo:
        raise ValidationError("Owner and repository are required for GitHub reports")
    if not _GITHUB_OWNER_RE.match(owner):
        raise ValidationError(f"Invalid GitHub owner '{owner}'")
    if not _GITHUB_REPO_RE.match(repo) or repo in (".", ".."):
        raise ValidationError(f"Invalid GitHub repository '{repo}'")
    return platform, f"{owner.lower()}/{repo.lower()}"


def _target_fields(platform_type: str, target: str) -> Dict[str, Optional[str]]:
    if platform_type == "github" and "/" in target:
        owner, repo = target.split("/", 1)
        return {"subreddit": None, "owner": owner, "repo": repo}
    return {"subreddit": target, "owner": None, "repo": None}


@dataclass
class ReportRequest:
    """A deduplicated subscription with its reference count."""

    id: str
    platform_type: str
    target: str
    subscriber_count: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1

    @property
    def partition_key(self) -> str:
        return self.platform_type.lower()

    @property
    def row_key(self) -> str:
        return self.id

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReportRequest":
        return cls(
            id=row["id"],
            platform_type=row["platform_type"],
            target=row["target"],
            subscriber_count=int(row["subscriber_count"]),
            created_at=from_iso(row.get("created_at")),
            updated_at=from_iso(row.get("updated_at")),
            version=int(row.get("version") or 1),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.platform_type,
            "target": self.target,
            **_target_fields(self.platform_type, self.target),
            "subscriberCount": self.subscriber_count,
            "partitionKey": self.partition_key,
            "rowKey": self.row_key,
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
        }


@dataclass(frozen=True)
class DecrementResult:
    deleted: bool
    remaining: int


@dataclass(frozen=True)
class Report:
    """An assembled report. Immutable once produced."""

    id: str
    source: str
    sub_source: str
    generated_at: datetime
    cutoff_date: datetime
    thread_count: int
    comment_count: int
    html_content: str

    @property
    def key(self) -> str:
        """Generation key, identical to the subscription id for the same target."""
        return compute_request_id(self.source, self.sub_source)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "subSource": self.sub_source,
            "generatedAt": to_iso(self.generated_at),
            "threadCount": self.thread_count,
            "commentCount": self.comment_count,
            "cutoffDate": to_iso(self.cutoff_date),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {**self.summary(), "htmlContent": self.html_content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Report":
        return cls(
            id=str(data["id"]),
            source=str(data["source"]),
            sub_source=str(data["subSource"]),
            generated_at=from_iso(data["generatedAt"]),
            cutoff_date=from_iso(data.get("cutoffDate")) or from_iso(data["generatedAt"]),
            thread_count=int(data.get("threadCount") or 0),
            comment_count=int(data.get("commentCount") or 0),
            html_content=data.get("htmlContent") or "",
        )


@dataclass
class CacheEntry:
    report: Report
    stored_at: datetime

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.report.generated_at

    def is_stale(self, max_age: Optional[timedelta], now: Optional[datetime] = None) -> bool:
        if not max_age:
            return False
        return self.age(now) > max_age


@dataclass
class AdminReportConfig:
    id: str
    name: str
    email_recipient: str
    platform_type: str
    target: str
    active: bool = True
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    last_processed_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return compute_request_id(self.platform_type, self.target)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AdminReportConfig":
        return cls(
            id=row["id"],
            name=row["name"],
            email_recipient=row["email_recipient"],
            platform_type=row["platform_type"],
            target=row["target"],
            active=bool(row.get("active", 1)),
            created_at=from_iso(row.get("created_at")),
            created_by=row.get("created_by"),
            last_processed_at=from_iso(row.get("last_processed_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "emailRecipient": self.email_recipient,
            "type": self.platform_type,
            "target": self.target,
            "isActive": self.active,
            "createdAt": to_iso(self.created_at),
            "createdBy": self.created_by,
            "lastProcessedAt": to_iso(self.last_processed_at),
        }


@dataclass
class RunSummary:
    """Outcome of one batch run. Written once, never mutated."""

    processed_at: datetime
    total_requests: int = 0
    generated_reports: List[Dict[str, Any]] = field(default_factory=list)
    failed_request_ids: List[str] = field(default_factory=list)
    run_id: str = field(default_factory=lambda: uuid4().hex[:8])

    @property
    def success_count(self) -> int:
        return len(self.generated_reports)

    @property
    def failure_count(self) -> int:
        return len(self.failed_request_ids)

    @property
    def blob_name(self) -> str:
        # Unique per run, even within one second
        stamp = self.processed_at.strftime("%Y-%m-%d-%H-%M-%S")
        return f"weekly-summary-{stamp}-{self.processed_at.microsecond // 1000:03d}-{self.run_id}.json"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processedAt": to_iso(self.processed_at),
            "totalRequests": self.total_requests,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "generatedReports": list(self.generated_reports),
            "failedRequestIds": list(self.failed_request_ids),
            "runId": self.run_id,
        }


JOB_PENDING = "pending"
JOB_RUNNING = "running"
JOB_SUCCEEDED = "succeeded"
JOB_FAILED = "failed"


@dataclass
class ReportJob:
    id: str
    request_id: str
    status: str = JOB_PENDING
    report_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReportJob":
        return cls(
            id=row["id"],
            request_id=row["request_id"],
            status=row["status"],
            report_id=row.get("report_id"),
            error=row.get("error"),
            created_at=from_iso(row.get("created_at")),
            finished_at=from_iso(row.get("finished_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.id,
            "requestId": self.request_id,
            "status": self.status,
            "reportId": self.report_id,
            "error": self.error,
            "createdAt": to_iso(self.created_at),
            "finishedAt": to_iso(self.finished_at),
        }
