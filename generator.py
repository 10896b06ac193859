#!/usr/bin/env python3
"""
Report generation: fetch -> rank -> analyze -> assemble -> persist.

``ReportGenerator.generate`` raises on failure; ``process`` is the entry point
used by the batch, the admin distributor and background jobs. It serializes
work per generation key and returns ``None`` instead of raising, so a failed or
empty generation is a soft failure for its callers.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from analyzer import Analyzer
from cache import ReportCache
from config import config, get_logger
from domain import Report, compute_request_id, resolve_target, utcnow
from errors import AggregateGenerationFailure, EmptyResultError, ValidationError
from platforms import CandidateItem, Comment, ItemDetail, PlatformFetcher
from renderer import render_report
from storage import ReportStore
from telemetry import trace_span
from utils import KeyedLock, format_duration, truncate_string

logger = get_logger("generator")


def rank_candidates(items: Iterable[CandidateItem], limit: int) -> List[CandidateItem]:
    """Highest weighted engagement first (0.7 * comments + 0.3 * score)."""
    return sorted(items, key=lambda i: i.engagement, reverse=True)[:limit]


def flatten_comments(comments: Iterable[Comment]) -> List[Comment]:
    """Depth-first flattening of a nested comment tree."""
    flat: List[Comment] = []
    stack = list(reversed(list(comments)))
    while stack:
        comment = stack.pop()
        flat.append(comment)
        stack.extend(reversed(comment.replies))
    return flat


def select_top_comments(pairs: Iterable[Tuple[Comment, CandidateItem]], limit: int) -> List[Dict[str, object]]:
    ranked = sorted(
        (p for p in pairs if p[0].body and p[0].body.strip() not in ("[deleted]", "[removed]")),
        key=lambda p: p[0].score,
        reverse=True,
    )[:limit]
    return [
        {
            "body": truncate_string(comment.body.strip(), 600),
            "author": comment.author,
            "score": comment.score,
            "url": comment.url,
            "item_title": item.title,
            "item_url": item.url,
        }
        for comment, item in ranked
    ]


def build_item_text(detail: ItemDetail, comments: List[Comment]) -> str:
    lines = [f"Title: {detail.item.title}", f"Content: {detail.body or '(no body)'}", "Comments:"]
    lines.extend(f"- ({c.score}) {c.body}" for c in comments if c.body)
    return "\n".join(lines)


class ReportGenerator:
    """Builds one report per (platform_type, target)."""

    def __init__(
        self,
        fetchers: Dict[str, PlatformFetcher],
        analyzer: Analyzer,
        store: ReportStore,
        cache: ReportCache,
        prompts: Optional[Callable[..., Optional[str]]] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.fetchers = fetchers
        self.analyzer = analyzer
        self.store = store
        self.cache = cache
        self._prompt_for = prompts or getattr(analyzer, "prompt_for", None)
        self.locks = locks or KeyedLock()
        self.clock = clock

    def _prompt(self, name: str, target: str) -> Optional[str]:
        if self._prompt_for is None:
            return None
        return self._prompt_for(name, target=target)

    async def process(self, platform_type: str, target: str) -> Optional[Report]:
        """Generate, persist and cache a report; None when nothing was produced.

        At most one generation per key runs at a time. A caller that had to wait
        for another generation of the same key gets that report back instead of
        starting a new one.
        """
        try:
            platform_type, target = resolve_target(platform_type, target=target)
        except ValidationError as e:
            logger.error(f"Cannot generate report for {platform_type}/{target}: {e}")
            return None
        key = compute_request_id(platform_type, target)
        requested_at = utcnow()

        async with self.locks.hold(key):
            entry = self.cache.lookup(key)
            if entry and entry.stored_at >= requested_at:
                logger.info(f"Reusing report {entry.report.id} generated for {key} while waiting")
                return entry.report
            try:
                report = await self.generate(platform_type, target)
                await self.save(report)
                return report
            except EmptyResultError as e:
                logger.info(f"📭 No report for {key}: {e}")
                return None
            except Exception as e:
                failure = AggregateGenerationFailure(key, str(e))
                logger.error(f"❌ Report generation failed for {failure.request_id}: {e}", exc_info=True)
                return None

    async def save(self, report: Report) -> None:
        """Persist the report blob, then make it the cached entry for its key."""
        await self.store.put_json(config.REPORTS_CONTAINER, f"{report.id}.json", report.to_dict())
        self.cache.set(report)
        logger.info(f"💾 Stored report {report.id} for {report.key}")

    @trace_span(
        "generator.generate",
        tracer_name="generator",
        attr_from_args=lambda self, platform_type, target: {"report.type": platform_type, "report.target": target},
    )
    async def generate(self, platform_type: str, target: str) -> Report:
        """Build a report without persisting it.

        Raises:
            EmptyResultError: No candidate items, or none could be analyzed.
            ValidationError: Unsupported platform.
        """
        fetcher = self.fetchers.get(platform_type)
        if fetcher is None:
            raise ValidationError(f"No fetcher configured for platform '{platform_type}'")

        started = self.clock()
        cutoff = started - timedelta(days=config.REPORT_WINDOW_DAYS)
        candidates = await fetcher.list_recent(target, cutoff)
        if not candidates:
            raise EmptyResultError(f"no items since {cutoff.date()}")

        selected = rank_candidates(candidates, config.REPORT_TOP_ITEMS)
        analyses: List[Dict[str, object]] = []
        comment_pairs: List[Tuple[Comment, CandidateItem]] = []
        item_prompt = self._prompt(f"{platform_type}_item", target)

        for item in selected:
            try:
                detail = await fetcher.fetch_detail(target, item.id)
                comments = flatten_comments(detail.comments)
                summary = await self.analyzer.summarize(
                    build_item_text(detail, comments),
                    prompt=item_prompt,
                    purpose=f"{platform_type}_item",
                )
                if not summary:
                    raise EmptyResultError("analyzer returned no summary")
            except Exception as e:
                logger.warning(f"⚠️ Skipping {platform_type} item {item.id} ({item.title!r}) for {target}: {e}")
                continue
            analyses.append({"item": detail.item, "summary": summary, "comment_count": len(comments)})
            comment_pairs.extend((c, detail.item) for c in comments)

        if not analyses:
            raise EmptyResultError(f"none of {len(selected)} selected items could be analyzed")

        weekly_summary = await self._weekly_summary(platform_type, target, analyses, comment_pairs)
        selected_ids = {entry["item"].id for entry in analyses}
        quick_links = [
            c for c in rank_candidates(candidates, len(candidates)) if c.id not in selected_ids
        ][:config.REPORT_QUICK_LINKS]
        generated_at = self.clock()
        stats = {
            "analyzed_items": len(analyses),
            "total_comments": len(comment_pairs),
            "candidate_count": len(candidates),
            "total_score": sum(c.score for c in candidates),
        }
        html = render_report(
            platform_type=platform_type,
            target=target,
            generated_at=generated_at,
            cutoff=cutoff,
            weekly_summary=weekly_summary,
            analyses=analyses,
            top_comments=select_top_comments(comment_pairs, config.REPORT_TOP_COMMENTS),
            quick_links=quick_links,
            stats=stats,
        )
        report = Report(
            id=str(uuid4()),
            source=platform_type,
            sub_source=target,
            generated_at=generated_at,
            cutoff_date=cutoff,
            thread_count=len(analyses),
            comment_count=len(comment_pairs),
            html_content=html,
        )
        logger.info(
            f"✅ Report for {report.key} generated in {format_duration((generated_at - started).total_seconds())}: "
            f"{report.thread_count} items, {report.comment_count} comments"
        )
        return report

    async def _weekly_summary(
        self,
        platform_type: str,
        target: str,
        analyses: List[Dict[str, object]],
        comment_pairs: List[Tuple[Comment, CandidateItem]],
    ) -> Optional[str]:
        """Second-pass summary over every collected comment; failure leaves it out."""
        if platform_type == "github":
            text = "\n\n".join(f"Issue: {a['item'].title}\n{a['summary']}" for a in analyses)
        else:
            text = "\n".join(c.body for c, _ in comment_pairs if c.body)
        if not text.strip():
            return None
        try:
            return await self.analyzer.summarize(
                text,
                prompt=self._prompt(f"{platform_type}_weekly", target),
                purpose=f"{platform_type}_weekly",
            )
        except Exception as e:
            logger.warning(f"⚠️ Weekly summary failed for {platform_type}/{target}: {e}")
            return None
