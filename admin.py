#!/usr/bin/env python3
"""
Admin report distribution.

For each active admin config: reuse the cached report for its key or generate
one, email it, and mark the config processed when the delivery was accepted.
Configs are handled one at a time, paced by a token bucket, and a failure for
one recipient never stops the others.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from cache import ReportCache
from config import config, get_logger
from domain import AdminReportConfig, resolve_target, to_epoch, utcnow
from emailer import EmailSender, is_valid_email
from errors import NotFoundError, ValidationError
from generator import ReportGenerator
from models import DatabaseQueue
from telemetry import trace_span
from utils import RateLimiter

logger = get_logger("admin")


class AdminConfigStore:
    """Admin report configs kept in SQLite."""

    def __init__(self, db: DatabaseQueue):
        self.db = db

    async def list_active(self) -> List[AdminReportConfig]:
        rows = await self.db.execute("list_admin_configs", active_only=True)
        return [AdminReportConfig.from_row(r) for r in rows]

    async def get(self, config_id: str) -> Optional[AdminReportConfig]:
        row = await self.db.execute("get_admin_config", config_id=config_id)
        return AdminReportConfig.from_row(row) if row else None

    async def create(
        self,
        name: str,
        email_recipient: str,
        platform_type: str,
        target: str,
        active: bool = True,
        created_by: Optional[str] = None,
    ) -> AdminReportConfig:
        platform_type, target = resolve_target(platform_type, target=target)
        if not name or not name.strip():
            raise ValidationError("Name is required")
        if not is_valid_email(email_recipient):
            raise ValidationError(f"Invalid email address '{email_recipient}'")
        config_id = str(uuid4())
        await self.db.execute(
            "create_admin_config",
            config_id=config_id,
            name=name.strip(),
            email_recipient=email_recipient.strip(),
            platform_type=platform_type,
            target=target,
            active=active,
            created_by=created_by,
        )
        return await self.get(config_id)

    async def mark_processed(self, config_id: str, when: datetime) -> bool:
        return await self.db.execute("mark_admin_config_processed", config_id=config_id, processed_at=to_epoch(when))


class AdminDistributor:
    """Sends the weekly report for every active admin config."""

    def __init__(
        self,
        store: AdminConfigStore,
        cache: ReportCache,
        generator: ReportGenerator,
        email_sender: EmailSender,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.generator = generator
        self.email_sender = email_sender
        if rate_limiter is None:
            rpm, burst = config.admin_pacing()
            rate_limiter = RateLimiter(rpm, burst=burst, name="admin")
        self.rate_limiter = rate_limiter
        self.clock = clock

    @trace_span(
        "admin.process_config",
        tracer_name="admin",
        attr_from_args=lambda self, admin_config: {"admin.config_id": admin_config.id, "report.key": admin_config.key},
    )
    async def process_config(self, admin_config: AdminReportConfig) -> bool:
        """Cache hit or generate, then send. True when the delivery was accepted."""
        key = admin_config.key
        report = self.cache.get(key)
        if report is not None:
            logger.info(f"📦 Cache hit for {key} (report {report.id}) for admin config '{admin_config.name}'")
        else:
            logger.info(f"🛠️ No fresh cached report for {key}; generating for admin config '{admin_config.name}'")
            report = await self.generator.process(admin_config.platform_type, admin_config.target)
            if report is None:
                logger.warning(f"⚠️ Could not generate report for admin config '{admin_config.name}' ({key})")
                return False
            self.cache.set(report)

        status = await self.email_sender.send(
            report,
            admin_config.email_recipient,
            title=admin_config.name,
            recipient_name="Administrator",
        )
        if not status.accepted:
            logger.error(
                f"❌ Delivery of report {report.id} to {admin_config.email_recipient} failed: "
                f"{status.status} {status.error_message or ''}".rstrip()
            )
            return False

        await self.store.mark_processed(admin_config.id, self.clock())
        logger.info(f"📧 Sent report {report.id} to {admin_config.email_recipient} ({status.status})")
        return True

    @trace_span("admin.process_all", tracer_name="admin")
    async def process_all(self) -> Dict[str, int]:
        """Process every active config sequentially."""
        configs = await self.store.list_active()
        result = {"total": len(configs), "succeeded": 0, "failed": 0}
        logger.info(f"🚀 Admin report distribution started for {len(configs)} config(s)")

        for admin_config in configs:
            waited = await self.rate_limiter.acquire()
            if waited:
                logger.debug(f"Paced {waited:.1f}s before admin config '{admin_config.name}'")
            try:
                ok = await self.process_config(admin_config)
            except Exception as e:
                ok = False
                logger.error(f"❌ Error processing admin config {admin_config.id} ('{admin_config.name}'): {e}", exc_info=True)
            result["succeeded" if ok else "failed"] += 1

        logger.info(f"🏁 Admin distribution finished: {result['succeeded']} sent, {result['failed']} failed")
        return result

    async def send_now(self, config_id: str) -> bool:
        """Send a single config immediately, ignoring its active flag.

        Raises:
            NotFoundError: Unknown config id.
        """
        admin_config = await self.store.get(config_id)
        if admin_config is None:
            raise NotFoundError(f"Admin report config {config_id} not found")
        return await self.process_config(admin_config)
