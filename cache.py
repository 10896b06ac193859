#!/usr/bin/env python3
"""
In-memory cache of the latest report per generation key.

``set`` unconditionally replaces the entry for the report's key (last writer
wins). ``get`` checks freshness against ``REPORT_CACHE_MAX_AGE_HOURS`` and
treats stale entries as misses; ``lookup`` returns the entry so callers can
inspect the staleness flag themselves.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from config import config, get_logger
from domain import CacheEntry, Report, utcnow
from storage import ReportStore

logger = get_logger("cache")


class ReportCache:
    """Latest report per normalized ``platform_target`` key."""

    def __init__(self, max_age_hours: Optional[int] = None):
        hours = config.REPORT_CACHE_MAX_AGE_HOURS if max_age_hours is None else max_age_hours
        self.max_age: Optional[timedelta] = timedelta(hours=hours) if hours and hours > 0 else None
        self._entries: Dict[str, CacheEntry] = {}
        self.last_refresh: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key.lower())

    def is_stale(self, entry: CacheEntry, now: Optional[datetime] = None) -> bool:
        return entry.is_stale(self.max_age, now)

    def get(self, key: str, allow_stale: bool = False) -> Optional[Report]:
        """Return the cached report for ``key``, or None when missing or stale."""
        entry = self.lookup(key)
        if entry is None:
            return None
        if not allow_stale and self.is_stale(entry):
            logger.warning(
                f"Cached report {entry.report.id} for {key} is stale "
                f"(generated {entry.report.generated_at.isoformat()}, max age {self.max_age}); treating as miss"
            )
            return None
        return entry.report

    def set(self, report: Report) -> str:
        """Store ``report`` under its key, replacing any previous entry."""
        key = report.key
        self._entries[key] = CacheEntry(report=report, stored_at=utcnow())
        logger.debug(f"Cached report {report.id} under {key}")
        return key

    def clear(self) -> int:
        """Drop every entry; returns how many were removed."""
        removed = len(self._entries)
        self._entries.clear()
        logger.info(f"🧹 Report cache cleared ({removed} report(s) removed)")
        return removed

    def find_by_id(self, report_id: str) -> Optional[Report]:
        for entry in self._entries.values():
            if entry.report.id == report_id:
                return entry.report
        return None

    def list_reports(self, source: Optional[str] = None, sub_source: Optional[str] = None) -> List[Report]:
        """Cached reports filtered by source and sub-source (case-insensitive), newest first."""
        reports = []
        for entry in self._entries.values():
            report = entry.report
            if source and report.source.lower() != source.lower():
                continue
            if sub_source and report.sub_source.lower() != sub_source.lower():
                continue
            reports.append(report)
        return sorted(reports, key=lambda r: r.generated_at, reverse=True)

    async def warm(self, store: ReportStore) -> int:
        """Load the newest persisted report per key from the reports container.

        Entries already in memory win over older blobs. Unreadable blobs are
        skipped with a warning.
        """
        loaded = 0
        blobs = await store.list_blobs(config.REPORTS_CONTAINER)
        for blob in blobs:
            name = blob["name"]
            if not name.endswith(".json"):
                continue
            try:
                data = await store.get_json(config.REPORTS_CONTAINER, name)
                if not data:
                    continue
                report = Report.from_dict(data)
            except Exception as e:
                logger.warning(f"Skipping unreadable report blob {name}: {e}")
                continue
            current = self.lookup(report.key)
            if current and current.report.generated_at >= report.generated_at:
                continue
            self._entries[report.key] = CacheEntry(report=report, stored_at=utcnow())
            loaded += 1
        self.last_refresh = utcnow()
        logger.info(f"🔥 Report cache warmed with {loaded} report(s) from {len(blobs)} blob(s)")
        return loaded

    def status(self) -> Dict[str, object]:
        return {
            "count": len(self._entries),
            "lastRefresh": self.last_refresh.isoformat() if self.last_refresh else None,
            "maxAgeHours": self.max_age.total_seconds() / 3600 if self.max_age else None,
            "staleCount": sum(1 for e in self._entries.values() if self.is_stale(e)),
        }
