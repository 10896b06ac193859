#!/usr/bin/env python3
"""
Platform fetchers: the collaborators that list recent discussion items and
fetch their full comment trees.

Only the thin Reddit (public JSON) and GitHub (REST v3) adapters live here;
ranking, analysis and report assembly happen in the generator.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from domain import split_github_target
from errors import TransientCollaboratorError
from utils import RateLimiter, RetryHelper

logger = get_logger("platforms")

HTTP_OK = 200
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429


@dataclass
class CandidateItem:
    """Lightweight listing entry (a thread or an issue)."""

    id: str
    title: str
    url: str
    comment_count: int = 0
    score: int = 0
    created_at: Optional[datetime] = None
    author: Optional[str] = None

    @property
    def engagement(self) -> float:
        return 0.7 * self.comment_count + 0.3 * self.score


@dataclass
class Comment:
    id: str
    body: str
    score: int = 0
    author: Optional[str] = None
    url: Optional[str] = None
    replies: List["Comment"] = field(default_factory=list)


@dataclass
class ItemDetail:
    item: CandidateItem
    body: str = ""
    comments: List[Comment] = field(default_factory=list)


class PlatformFetcher(Protocol):
    platform_type: str

    async def list_recent(self, target: str, cutoff: datetime) -> List[CandidateItem]:
        ...

    async def fetch_detail(self, target: str, item_id: str) -> ItemDetail:
        ...

    async def exists(self, target: str) -> bool:
        ...


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


class HttpJsonFetcher:
    """Shared aiohttp plumbing: pacing, retries and JSON decoding."""

    platform_type = ""

    def __init__(self, session: Optional[ClientSession] = None, rate_limiter: Optional[RateLimiter] = None):
        self._session = session
        self._owns_session = session is None
        self.rate_limiter = rate_limiter or RateLimiter(config.PLATFORM_REQUESTS_PER_MINUTE, name=self.platform_type or "platform")
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": config.USER_AGENT, "Accept": "application/json"}

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None, allow_404: bool = False) -> Any:
        """GET ``url`` and decode JSON, retrying transient failures.

        Raises:
            TransientCollaboratorError: When every attempt failed.
        """
        session = await self._get_session()
        last_error = "no attempt made"
        for attempt in range(self.retry_helper.max_retries + 1):
            await self.rate_limiter.acquire()
            try:
                async with session.get(url, params=params, headers=self._headers()) as resp:
                    if resp.status == HTTP_OK:
                        return await resp.json(content_type=None)
                    if resp.status == HTTP_NOT_FOUND and allow_404:
                        return None
                    last_error = f"HTTP {resp.status}"
                    if resp.status == HTTP_TOO_MANY_REQUESTS:
                        retry_after = resp.headers.get("Retry-After")
                        logger.warning(f"Rate limited by {self.platform_type} for {url} (Retry-After={retry_after})")
                    elif resp.status < 500:
                        # Client errors will not improve on retry
                        break
            except (ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
            if attempt < self.retry_helper.max_retries:
                logger.warning(
                    "Retry %d/%d for %s due to %s",
                    attempt + 1,
                    self.retry_helper.max_retries,
                    url,
                    last_error,
                )
                await self.retry_helper.sleep_for_attempt(attempt)
        raise TransientCollaboratorError(f"{self.platform_type} request to {url} failed: {last_error}")


class RedditFetcher(HttpJsonFetcher):
    """Reddit adapter using the public JSON listing endpoints."""

    platform_type = "reddit"
    base_url = "https://www.reddit.com"

    async def exists(self, target: str) -> bool:
        data = await self._get_json(f"{self.base_url}/r/{target}/about.json", allow_404=True)
        return bool(data) and data.get("kind") == "t5"

    async def list_recent(self, target: str, cutoff: datetime) -> List[CandidateItem]:
        data = await self._get_json(f"{self.base_url}/r/{target}/hot.json", params={"limit": 100})
        items: List[CandidateItem] = []
        for child in (data or {}).get("data", {}).get("children", []):
            post = child.get("data") or {}
            created = _ts(post.get("created_utc"))
            if post.get("stickied") or created is None or created < cutoff:
                continue
            items.append(CandidateItem(
                id=str(post.get("id")),
                title=post.get("title") or "(untitled)",
                url=f"{self.base_url}{post.get('permalink', '')}",
                comment_count=int(post.get("num_comments") or 0),
                score=int(post.get("score") or 0),
                created_at=created,
                author=post.get("author"),
            ))
        logger.info(f"Found {len(items)} r/{target} thread(s) since {cutoff.date()}")
        return items

    def _parse_comments(self, children: List[Dict[str, Any]], permalink: str) -> List[Comment]:
        comments = []
        for child in children or []:
            if child.get("kind") != "t1":
                continue
            data = child.get("data") or {}
            replies = data.get("replies")
            nested = replies.get("data", {}).get("children", []) if isinstance(replies, dict) else []
            comments.append(Comment(
                id=str(data.get("id")),
                body=data.get("body") or "",
                score=int(data.get("score") or 0),
                author=data.get("author"),
                url=f"{self.base_url}{permalink}{data.get('id')}/" if permalink else None,
                replies=self._parse_comments(nested, permalink),
            ))
        return comments

    async def fetch_detail(self, target: str, item_id: str) -> ItemDetail:
        data = await self._get_json(f"{self.base_url}/comments/{item_id}.json", params={"limit": 500, "sort": "top"})
        if not isinstance(data, list) or len(data) < 2:
            raise TransientCollaboratorError(f"Unexpected Reddit payload for thread {item_id}")
        post = data[0]["data"]["children"][0]["data"]
        permalink = post.get("permalink", "")
        item = CandidateItem(
            id=str(post.get("id")),
            title=post.get("title") or "(untitled)",
            url=f"{self.base_url}{permalink}",
            comment_count=int(post.get("num_comments") or 0),
            score=int(post.get("score") or 0),
            created_at=_ts(post.get("created_utc")),
            author=post.get("author"),
        )
        comments = self._parse_comments(data[1].get("data", {}).get("children", []), permalink)
        return ItemDetail(item=item, body=post.get("selftext") or "", comments=comments)


class GitHubFetcher(HttpJsonFetcher):
    """GitHub adapter using the REST API issues endpoints."""

    platform_type = "github"
    base_url = "https://api.github.com"

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": config.USER_AGENT, "Accept": "application/vnd.github+json"}
        if config.GITHUB_TOKEN:
            headers["Authorization"] = f"Bearer {config.GITHUB_TOKEN}"
        return headers

    @staticmethod
    def _reactions(payload: Dict[str, Any]) -> int:
        return int((payload.get("reactions") or {}).get("total_count") or 0)

    def _item(self, issue: Dict[str, Any]) -> CandidateItem:
        return CandidateItem(
            id=str(issue.get("number")),
            title=issue.get("title") or "(untitled)",
            url=issue.get("html_url") or "",
            comment_count=int(issue.get("comments") or 0),
            score=self._reactions(issue),
            created_at=_ts(issue.get("created_at")),
            author=(issue.get("user") or {}).get("login"),
        )

    async def exists(self, target: str) -> bool:
        owner, repo = split_github_target(target)
        return bool(await self._get_json(f"{self.base_url}/repos/{owner}/{repo}", allow_404=True))

    async def list_recent(self, target: str, cutoff: datetime) -> List[CandidateItem]:
        owner, repo = split_github_target(target)
        params = {
            "state": "all",
            "since": cutoff.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "sort": "comments",
            "direction": "desc",
            "per_page": 100,
        }
        issues = await self._get_json(f"{self.base_url}/repos/{owner}/{repo}/issues", params=params)
        # The issues endpoint also returns pull requests
        items = [self._item(i) for i in issues or [] if "pull_request" not in i]
        logger.info(f"Found {len(items)} {owner}/{repo} issue(s) active since {cutoff.date()}")
        return items

    async def fetch_detail(self, target: str, item_id: str) -> ItemDetail:
        owner, repo = split_github_target(target)
        issue = await self._get_json(f"{self.base_url}/repos/{owner}/{repo}/issues/{item_id}")
        raw_comments = await self._get_json(
            f"{self.base_url}/repos/{owner}/{repo}/issues/{item_id}/comments", params={"per_page": 100}
        )
        comments = [
            Comment(
                id=str(c.get("id")),
                body=c.get("body") or "",
                score=self._reactions(c),
                author=(c.get("user") or {}).get("login"),
                url=c.get("html_url"),
            )
            for c in raw_comments or []
        ]
        return ItemDetail(item=self._item(issue), body=issue.get("body") or "", comments=comments)


def create_fetchers() -> Dict[str, HttpJsonFetcher]:
    return {"reddit": RedditFetcher(), "github": GitHubFetcher()}
