#!/usr/bin/env python3
"""
Background report jobs.

New subscriptions queue a generation job instead of detaching an unobserved
task. Workers record each job's status in SQLite
(pending -> running -> succeeded | failed) so clients can poll it.
"""

from asyncio import CancelledError, Queue, Task, create_task
from typing import Awaitable, Callable, List, Optional
from uuid import uuid4

from config import config, get_logger
from domain import JOB_FAILED, JOB_PENDING, JOB_RUNNING, JOB_SUCCEEDED, Report, ReportJob
from models import DatabaseQueue
from telemetry import trace_span

logger = get_logger("jobs")

JobFactory = Callable[[], Awaitable[Optional[Report]]]


class JobQueue:
    """Queue plus worker tasks for report generation jobs."""

    def __init__(self, db: DatabaseQueue, workers: Optional[int] = None):
        self.db = db
        self.worker_count = workers or config.JOB_WORKERS
        self.queue: Queue = Queue()
        self._workers: List[Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [create_task(self._worker(i)) for i in range(self.worker_count)]
        logger.info(f"Report job queue started with {self.worker_count} worker(s)")

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except CancelledError:
                pass
            except Exception as e:
                logger.error(f"Report job worker exited with an error: {e}", exc_info=True)
        self._workers = []
        logger.info("Report job queue stopped")

    async def join(self) -> None:
        """Wait until every queued job has finished."""
        await self.queue.join()

    async def submit(self, request_id: str, factory: JobFactory) -> str:
        """Record a pending job and enqueue it. Returns the job id."""
        job_id = str(uuid4())
        await self.db.execute("create_job", job_id=job_id, request_id=request_id, status=JOB_PENDING)
        await self.queue.put((job_id, request_id, factory))
        logger.info(f"📥 Queued report job {job_id} for {request_id}")
        return job_id

    async def get(self, job_id: str) -> Optional[ReportJob]:
        row = await self.db.execute("get_job", job_id=job_id)
        return ReportJob.from_row(row) if row else None

    async def _worker(self, index: int) -> None:
        while True:
            job_id, request_id, factory = await self.queue.get()
            try:
                await self._run(job_id, request_id, factory)
            except CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Report job worker {index} failed on job {job_id}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    async def _set_status(self, job_id: str, status: str, **fields) -> bool:
        """Write a job status; a failed write is logged and reported as False."""
        try:
            await self.db.execute("update_job", job_id=job_id, status=status, **fields)
            return True
        except Exception as e:
            logger.error(f"Could not mark report job {job_id} as {status}: {e}", exc_info=True)
            return False

    @trace_span(
        "jobs.run",
        tracer_name="jobs",
        attr_from_args=lambda self, job_id, request_id, factory: {"job.id": job_id, "report.request_id": request_id},
    )
    async def _run(self, job_id: str, request_id: str, factory: JobFactory) -> None:
        if not await self._set_status(job_id, JOB_RUNNING):
            await self._set_status(job_id, JOB_FAILED, error="Could not start job", finished=True)
            return
        try:
            report = await factory()
        except CancelledError:
            await self._set_status(job_id, JOB_FAILED, error="cancelled", finished=True)
            raise
        except Exception as e:
            logger.error(f"❌ Report job {job_id} for {request_id} failed: {e}", exc_info=True)
            await self._set_status(job_id, JOB_FAILED, error=str(e), finished=True)
            return

        if report is None:
            await self._set_status(job_id, JOB_FAILED, error="No report could be generated", finished=True)
            logger.warning(f"⚠️ Report job {job_id} for {request_id} produced no report")
            return
        if await self._set_status(job_id, JOB_SUCCEEDED, report_id=report.id, finished=True):
            logger.info(f"✅ Report job {job_id} for {request_id} produced report {report.id}")
