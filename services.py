#!/usr/bin/env python3
"""
Service container wiring the pipeline together.

The API, the scheduler and the CLI all build one ``ReportServices`` and share
its registry, cache, generator and distributors. Every collaborator can be
injected, which is how the tests swap in fakes.
"""

from typing import Dict, Optional

from accounts import AccountService, ApiKeyAccountService
from admin import AdminConfigStore, AdminDistributor
from analyzer import Analyzer, LLMAnalyzer
from batch import BatchScheduler
from cache import ReportCache
from config import config, get_logger
from domain import Report, compute_request_id
from emailer import EmailSender, create_email_sender
from errors import ValidationError
from generator import ReportGenerator
from jobs import JobQueue
from models import DatabaseQueue
from platforms import PlatformFetcher, create_fetchers
from registry import DedupRegistry
from storage import ReportStore, create_store
from utils import RateLimiter

logger = get_logger("services")


class ReportServices:
    """Owns the lifecycle of the database worker, blob store and job queue."""

    def __init__(
        self,
        db: Optional[DatabaseQueue] = None,
        store: Optional[ReportStore] = None,
        cache: Optional[ReportCache] = None,
        fetchers: Optional[Dict[str, PlatformFetcher]] = None,
        analyzer: Optional[Analyzer] = None,
        email_sender: Optional[EmailSender] = None,
        accounts: Optional[AccountService] = None,
        admin_rate_limiter: Optional[RateLimiter] = None,
        warm_cache: bool = True,
    ):
        self.db = db or DatabaseQueue(config.DATABASE_PATH)
        self.store = store or create_store()
        self.cache = cache if cache is not None else ReportCache()
        self.fetchers = fetchers if fetchers is not None else create_fetchers()
        self.analyzer = analyzer or LLMAnalyzer()
        self.email_sender = email_sender or create_email_sender()
        self.accounts = accounts or ApiKeyAccountService()
        self.warm_cache = warm_cache

        self.registry = DedupRegistry(self.db)
        self.generator = ReportGenerator(self.fetchers, self.analyzer, self.store, self.cache)
        self.batch = BatchScheduler(self.registry, self.generator, self.store, self.cache)
        self.admin_store = AdminConfigStore(self.db)
        self.distributor = AdminDistributor(
            self.admin_store, self.cache, self.generator, self.email_sender, rate_limiter=admin_rate_limiter
        )
        self.jobs = JobQueue(self.db)
        self._started = False

    async def initialize(self) -> None:
        if self._started:
            return
        await self.db.start()
        await self.store.initialize()
        if self.warm_cache:
            try:
                await self.cache.warm(self.store)
            except Exception as e:
                logger.warning(f"Could not warm report cache: {e}")
        await self.jobs.start()
        self._started = True
        logger.info("✅ Report services initialized")

    async def close(self) -> None:
        await self.jobs.stop()
        for fetcher in self.fetchers.values():
            close = getattr(fetcher, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.warning(f"Error closing fetcher: {e}")
        await self.store.close()
        await self.db.stop()
        self._started = False

    async def ensure_target_exists(self, platform_type: str, target: str) -> None:
        """Raise ValidationError unless the subreddit or repository can be reached."""
        fetcher = self.fetchers.get(platform_type)
        if fetcher is None:
            raise ValidationError(f"No fetcher configured for {platform_type}")
        try:
            found = await fetcher.exists(target)
        except Exception as e:
            logger.warning(f"Existence check for {platform_type}/{target} failed: {e}")
            found = False
        if found:
            return
        if platform_type == "reddit":
            message = f"Subreddit does not exist or is not accessible: {target}."
        else:
            message = f"GitHub repository does not exist or is not accessible: {target}."
        logger.warning(message)
        raise ValidationError(message)

    async def subscribe(self, platform_type: str, target: str):
        """Register a subscription; new ones get a background generation job.

        The target must exist on its platform.

        Returns:
            ``(request_id, is_new, job_id)`` where ``job_id`` is None for increments.
        """
        await self.ensure_target_exists(platform_type, target)
        request_id, is_new = await self.registry.add_or_increment(platform_type, target)
        job_id = None
        if is_new:
            request = await self.registry.get(request_id)
            ptype, ptarget = (request.platform_type, request.target) if request else (platform_type, target)
            job_id = await self.jobs.submit(request_id, lambda: self.generator.process(ptype, ptarget))
        return request_id, is_new, job_id

    async def report_on_demand(self, platform_type: str, target: str, force: bool = False) -> Optional[Report]:
        """Return a report generated within the batch reuse window, or generate one now."""
        key = compute_request_id(platform_type, target)
        report = None if force else self.batch.recent_report(key)
        if report is not None:
            logger.info(f"♻️ Using existing report {report.id} for {key} generated at {report.generated_at.isoformat()}")
            return report
        if force:
            logger.info(f"Force requested, generating new report for {key}")
        else:
            logger.info(f"No recent report for {key}, generating new report")
        return await self.generator.process(platform_type, target)

    async def get_report(self, report_id: str) -> Optional[Report]:
        """Look a report up in the cache first, then in the reports container."""
        report = self.cache.find_by_id(report_id)
        if report is not None:
            return report
        try:
            data = await self.store.get_json(config.REPORTS_CONTAINER, f"{report_id}.json")
        except ValueError:
            # Not a valid blob name, so it cannot be a stored report
            return None
        return Report.from_dict(data) if data else None

    async def status(self) -> Dict[str, object]:
        counts = await self.db.execute("count_report_requests")
        admin_configs = await self.admin_store.list_active()
        return {
            "requests": counts,
            "activeAdminConfigs": len(admin_configs),
            "cache": self.cache.status(),
            "config": config.get_config_summary(),
        }
