#!/usr/bin/env python3
"""
Weekly batch regeneration of every subscribed report.

Requests are processed sequentially and each one is isolated: a failing
request is recorded in the run summary and the loop moves on. The summary is
written once as an immutable, timestamped blob.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from cache import ReportCache
from config import config, get_logger
from domain import Report, RunSummary, utcnow
from generator import ReportGenerator
from registry import DedupRegistry
from storage import ReportStore
from telemetry import trace_span
from utils import format_duration

logger = get_logger("batch")


class BatchScheduler:
    """Regenerates reports for all DedupRegistry entries and records a RunSummary."""

    def __init__(
        self,
        registry: DedupRegistry,
        generator: ReportGenerator,
        store: ReportStore,
        cache: Optional[ReportCache] = None,
        reuse_window_hours: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.generator = generator
        self.store = store
        self.cache = cache
        hours = config.BATCH_REUSE_WINDOW_HOURS if reuse_window_hours is None else reuse_window_hours
        self.reuse_window = timedelta(hours=hours) if hours > 0 else None
        self.clock = clock

    def recent_report(self, request_id: str) -> Optional[Report]:
        """A cached report for this key young enough to skip regeneration."""
        if self.cache is None or self.reuse_window is None:
            return None
        entry = self.cache.lookup(request_id)
        if entry and entry.age(self.clock()) <= self.reuse_window:
            return entry.report
        return None

    @trace_span("batch.run", tracer_name="batch", attr_from_args=lambda self, force=False: {"batch.force": bool(force)})
    async def run(self, force: bool = False) -> RunSummary:
        """Process every registered request and persist the run summary."""
        started = self.clock()
        requests = await self.registry.list()
        summary = RunSummary(processed_at=started, total_requests=len(requests))
        logger.info(f"🚀 Weekly batch started for {len(requests)} report request(s)")

        for request in requests:
            try:
                report = None if force else self.recent_report(request.id)
                if report is not None:
                    logger.info(f"♻️ Reusing recent report {report.id} for {request.id}")
                else:
                    report = await self.generator.process(request.platform_type, request.target)
                if report is None:
                    summary.failed_request_ids.append(request.id)
                    logger.warning(f"⚠️ No report produced for {request.id}")
                    continue
                summary.generated_reports.append(report.summary())
            except Exception as e:
                summary.failed_request_ids.append(request.id)
                logger.error(f"❌ Error processing request {request.id}: {e}", exc_info=True)

        try:
            await self.store.put_json(config.SUMMARIES_CONTAINER, summary.blob_name, summary.to_dict())
        except Exception as e:
            logger.error(f"❌ Failed to store run summary {summary.blob_name}: {e}")

        elapsed = (self.clock() - started).total_seconds()
        logger.info(
            f"🏁 Weekly batch finished in {format_duration(elapsed)}: "
            f"{summary.success_count} succeeded, {summary.failure_count} failed of {summary.total_requests}"
        )
        return summary

    async def list_summaries(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent run summaries, newest first."""
        limit = max(1, min(int(limit), 50))
        blobs = await self.store.list_blobs(config.SUMMARIES_CONTAINER, prefix="weekly-summary-")
        summaries = []
        for blob in blobs[:limit]:
            data = await self.store.get_json(config.SUMMARIES_CONTAINER, blob["name"])
            if data is not None:
                summaries.append({"name": blob["name"], **data})
        return summaries
