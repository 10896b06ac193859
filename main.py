#!/usr/bin/env python3
"""
Report Pipeline Orchestrator

Command line entry point for the weekly report pipeline:

- serve: run the HTTP API
- scheduled: run the weekly scheduler (batch regeneration + admin emails)
- batch / admin / send-admin: run one job once and exit
- status / schedule-status: print configuration and schedule information
"""

import argparse
import asyncio
import sys
from typing import Optional

from config import config, get_logger
from scheduler import create_scheduler
from services import ReportServices
from telemetry import init_telemetry, trace_span

logger = get_logger("orchestrator")


class ReportOrchestrator:
    """Runs one-off pipeline jobs against a freshly initialized service container."""

    def __init__(self, services: Optional[ReportServices] = None) -> None:
        self.services = services or ReportServices()

    async def run_batch(self, force: bool = False) -> bool:
        logger.info(f"📰 Running weekly batch{' (forced regeneration)' if force else ''}")
        try:
            return await self._run_batch_impl(force)
        except Exception as e:
            logger.error(f"❌ Weekly batch failed: {e}")
            return False

    @trace_span("run_batch", tracer_name="orchestrator", attr_from_args=lambda self, force=False: {"batch.force": bool(force)})
    async def _run_batch_impl(self, force: bool = False) -> bool:
        await self.services.initialize()
        try:
            summary = await self.services.batch.run(force=force)
        finally:
            await self.services.close()
        return summary.failure_count == 0

    async def run_admin(self) -> bool:
        logger.info("📧 Running admin report distribution")
        try:
            return await self._run_admin_impl()
        except Exception as e:
            logger.error(f"❌ Admin distribution failed: {e}")
            return False

    @trace_span("run_admin", tracer_name="orchestrator")
    async def _run_admin_impl(self) -> bool:
        await self.services.initialize()
        try:
            result = await self.services.distributor.process_all()
        finally:
            await self.services.close()
        return result["failed"] == 0

    async def send_admin(self, config_id: str) -> bool:
        logger.info(f"📨 Sending admin report for config {config_id}")
        try:
            await self.services.initialize()
            try:
                return await self.services.distributor.send_now(config_id)
            finally:
                await self.services.close()
        except Exception as e:
            logger.error(f"❌ Sending admin report {config_id} failed: {e}")
            return False

    async def check_status(self) -> dict:
        await self.services.initialize()
        try:
            return await self.services.status()
        finally:
            await self.services.close()

    def print_status(self, status: dict) -> None:
        print("\n📊 Report Pipeline Status")
        requests = status.get("requests") or {}
        total = sum(requests.values())
        print(f"📝 Report requests: {total}" + (f" ({', '.join(f'{k}: {v}' for k, v in sorted(requests.items()))})" if requests else ""))
        print(f"📧 Active admin configs: {status.get('activeAdminConfigs', 0)}")
        cache = status.get("cache") or {}
        print(f"📦 Cached reports: {cache.get('count', 0)} (stale: {cache.get('staleCount', 0)})")
        print("\n⚙️ Configuration")
        for key, value in (status.get("config") or {}).items():
            print(f"   {key}: {value}")


async def run_scheduled_mode() -> None:
    scheduler = create_scheduler()
    status = scheduler.get_schedule_status()
    if not status['schedule_active']:
        logger.error(f"❌ No schedule configured in {scheduler.config_path}")
        logger.info("💡 Example:\n   schedule:\n     weekly_reports:\n       day: monday\n       time: \"11:00\"")
        return

    services = ReportServices()
    await services.initialize()
    try:
        scheduler.print_schedule_status()
        await scheduler.run_scheduled(services)
    finally:
        await services.close()


def run_server() -> None:
    import uvicorn
    from api import create_app

    logger.info(f"🌐 Serving API on {config.API_HOST}:{config.API_PORT}")
    uvicorn.run(create_app(), host=config.API_HOST, port=config.API_PORT, log_level="info")


def main():
    parser = argparse.ArgumentParser(description='Weekly Report Pipeline')
    parser.add_argument('mode', choices=['serve', 'scheduled', 'batch', 'admin', 'send-admin', 'schedule-status', 'status'],
                        help='Operation mode')
    parser.add_argument('--force', action='store_true',
                        help='Regenerate every report even when a recent one is cached (batch mode)')
    parser.add_argument('--id', dest='config_id', type=str,
                        help='Admin report config id (send-admin mode)')

    args = parser.parse_args()
    init_telemetry("report-pipeline-orchestrator")

    try:
        if args.mode == 'serve':
            run_server()

        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled_mode())

        elif args.mode == 'batch':
            success = asyncio.run(ReportOrchestrator().run_batch(force=args.force))
            sys.exit(0 if success else 1)

        elif args.mode == 'admin':
            success = asyncio.run(ReportOrchestrator().run_admin())
            sys.exit(0 if success else 1)

        elif args.mode == 'send-admin':
            if not args.config_id:
                parser.error("send-admin requires --id")
            success = asyncio.run(ReportOrchestrator().send_admin(args.config_id))
            sys.exit(0 if success else 1)

        elif args.mode == 'schedule-status':
            create_scheduler().print_schedule_status()

        elif args.mode == 'status':
            orchestrator = ReportOrchestrator()
            orchestrator.print_status(asyncio.run(orchestrator.check_status()))

    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
