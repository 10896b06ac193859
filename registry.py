#!/usr/bin/env python3
"""
Deduplicated registry of report subscriptions.

Identical logical subscriptions (same platform and target, any casing) share
one record whose ``subscriber_count`` is a reference count. Updates use a
version compare-and-swap and new records use a conditional insert, so racing
subscribe/unsubscribe calls never lose a count.
"""

from typing import List, Optional, Tuple

from config import config, get_logger
from domain import (
    DecrementResult,
    ReportRequest,
    compute_request_id,
    partition_key_from_id,
    resolve_target,
)
from errors import ConcurrencyConflictError, NotFoundError
from models import DatabaseQueue
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("registry")


class DedupRegistry:
    """Reference-counted subscription records stored in SQLite."""

    def __init__(self, db: DatabaseQueue, max_attempts: Optional[int] = None, retry_helper: Optional[RetryHelper] = None):
        self.db = db
        self.max_attempts = max_attempts or config.REGISTRY_MAX_ATTEMPTS
        self.retry_helper = retry_helper or RetryHelper(max_retries=self.max_attempts, base_delay=0.05, max_delay=1.0)

    @trace_span(
        "registry.add_or_increment",
        tracer_name="registry",
        attr_from_args=lambda self, platform_type, target: {"report.type": str(platform_type), "report.target": str(target)},
    )
    async def add_or_increment(self, platform_type: str, target: str) -> Tuple[str, bool]:
        """Create the subscription with count 1, or increment an existing one.

        Returns:
            ``(request_id, is_new)``
        """
        platform_type, target = resolve_target(platform_type, target=target)
        request_id = compute_request_id(platform_type, target)

        for attempt in range(self.max_attempts):
            row = await self.db.execute("get_report_request", request_id=request_id)
            if row is None:
                created = await self.db.execute(
                    "insert_report_request",
                    request_id=request_id,
                    partition_key=partition_key_from_id(request_id),
                    platform_type=platform_type,
                    target=target,
                )
                if created:
                    logger.info(f"🆕 Created report request {request_id}")
                    return request_id, True
                # Someone else created it between our read and insert
                logger.info(f"Concurrent create for {request_id}; retrying as increment")
                continue

            new_count = int(row["subscriber_count"]) + 1
            updated = await self.db.execute(
                "update_subscriber_count",
                request_id=request_id,
                subscriber_count=new_count,
                expected_version=row["version"],
            )
            if updated:
                logger.info(f"➕ Incremented report request {request_id} to {new_count} subscribers")
                return request_id, False
            logger.debug(f"Version conflict incrementing {request_id} (attempt {attempt + 1}/{self.max_attempts})")
            await self.retry_helper.sleep_for_attempt(attempt)

        raise ConcurrencyConflictError(f"Could not update request {request_id} after {self.max_attempts} attempts")

    @trace_span(
        "registry.decrement",
        tracer_name="registry",
        attr_from_args=lambda self, request_id: {"report.request_id": str(request_id)},
    )
    async def decrement(self, request_id: str) -> DecrementResult:
        """Drop one subscriber; the record is deleted when the last one leaves.

        Raises:
            NotFoundError: If no record exists for ``request_id``.
        """
        for attempt in range(self.max_attempts):
            row = await self.db.execute("get_report_request", request_id=request_id)
            if row is None:
                raise NotFoundError(f"Request with ID {request_id} not found")

            count = int(row["subscriber_count"])
            if count <= 1:
                deleted = await self.db.execute(
                    "delete_report_request", request_id=request_id, expected_version=row["version"]
                )
                if deleted:
                    logger.info(f"🗑️ Deleted report request {request_id} (last subscriber removed)")
                    return DecrementResult(deleted=True, remaining=0)
            else:
                updated = await self.db.execute(
                    "update_subscriber_count",
                    request_id=request_id,
                    subscriber_count=count - 1,
                    expected_version=row["version"],
                )
                if updated:
                    logger.info(f"➖ Decremented report request {request_id} to {count - 1} subscribers")
                    return DecrementResult(deleted=False, remaining=count - 1)

            logger.debug(f"Version conflict decrementing {request_id} (attempt {attempt + 1}/{self.max_attempts})")
            await self.retry_helper.sleep_for_attempt(attempt)

        raise ConcurrencyConflictError(f"Could not update request {request_id} after {self.max_attempts} attempts")

    async def get(self, request_id: str) -> Optional[ReportRequest]:
        row = await self.db.execute("get_report_request", request_id=request_id)
        return ReportRequest.from_row(row) if row else None

    async def list(self, platform_type: Optional[str] = None) -> List[ReportRequest]:
        """All subscription records, one full pass per call."""
        rows = await self.db.execute(
            "list_report_requests",
            partition_key=platform_type.lower() if platform_type else None,
        )
        return [ReportRequest.from_row(row) for row in rows]
