#!/usr/bin/env python3
"""
HTTP surface for the report pipeline.

Subscription management (add, remove, list), report filtering and lookup,
on-demand HTML reports, run summary history, background job polling, cache
maintenance and the admin-only "send now" trigger. All endpoints delegate to
a shared ``ReportServices`` instance built in the application lifespan.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, List, Optional, Tuple
from uuid import uuid4

from fastapi import APIRouter, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel

from accounts import Account
from config import config, get_logger
from domain import Report, compute_request_id, resolve_target
from errors import ConcurrencyConflictError, NotFoundError, ValidationError
from scheduler import create_scheduler
from services import ReportServices

logger = get_logger("api")

router = APIRouter()


class AddReportRequestBody(BaseModel):
    type: Optional[str] = None
    subreddit: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None


class SubscriptionFilter(BaseModel):
    """One of the caller's subscriptions, as returned by ListReportRequests."""

    id: Optional[str] = None
    type: Optional[str] = None
    target: Optional[str] = None
    subreddit: Optional[str] = None
    owner: Optional[str] = None
    repo: Optional[str] = None


def _services(request: Request) -> ReportServices:
    return request.app.state.services


def _api_key_from(x_api_key: Optional[str], authorization: Optional[str]) -> Optional[str]:
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    return None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/AddReportRequest")
async def add_report_request(body: AddReportRequestBody, request: Request):
    """Subscribe to a weekly report; repeated subscriptions share one record."""
    platform_type, target = resolve_target(body.type, subreddit=body.subreddit, owner=body.owner, repo=body.repo)
    request_id, is_new, job_id = await _services(request).subscribe(platform_type, target)
    content = {"id": request_id, "message": "Request added successfully"}
    if job_id:
        content["jobId"] = job_id
    return content


@router.delete("/reportrequest/{request_id}", response_class=PlainTextResponse)
async def remove_report_request(request_id: str, request: Request):
    await _services(request).registry.decrement(request_id)
    return "Request removed successfully"


@router.get("/ListReportRequests")
async def list_report_requests(request: Request):
    requests = await _services(request).registry.list()
    return {"requests": [r.to_dict() for r in requests]}


@router.post("/FilterReports")
async def filter_reports(subscriptions: List[SubscriptionFilter], request: Request):
    """Reports matching the given subscriptions by (type, target), newest first."""
    services = _services(request)
    seen = set()
    reports = []
    for sub in subscriptions:
        try:
            platform_type, target = resolve_target(
                sub.type, subreddit=sub.subreddit, owner=sub.owner, repo=sub.repo, target=sub.target
            )
        except ValidationError as e:
            logger.debug(f"Skipping unmatched subscription {sub.id or sub.type}: {e}")
            continue
        key = compute_request_id(platform_type, target)
        if key in seen:
            continue
        seen.add(key)
        reports.extend(services.cache.list_reports(platform_type, target))
    reports.sort(key=lambda r: r.generated_at, reverse=True)
    return {"reports": [r.summary() for r in reports]}


@router.get("/Report/{report_id}")
async def get_report(report_id: str, request: Request):
    report = await _services(request).get_report(report_id)
    if report is None:
        raise NotFoundError(f"Report with ID {report_id} not found")
    return report.to_dict()


@router.get("/GetWeeklyProcessingSummaries")
async def get_weekly_processing_summaries(request: Request, limit: int = Query(10)):
    if limit < 1 or limit > 50:
        raise ValidationError("limit must be between 1 and 50")
    summaries = await _services(request).batch.list_summaries(limit)
    return {"summaries": summaries}


@router.get("/ReportJobs/{job_id}")
async def get_report_job(job_id: str, request: Request):
    job = await _services(request).jobs.get(job_id)
    if job is None:
        raise NotFoundError(f"Job with ID {job_id} not found")
    return job.to_dict()


async def _authorize_admin(
    services: ReportServices, x_api_key: Optional[str], authorization: Optional[str], action: str
) -> Tuple[Optional[Account], Optional[JSONResponse]]:
    """Resolve the caller's account; the second item is the error response to return, if any."""
    account = await services.accounts.authenticate(_api_key_from(x_api_key, authorization))
    if account is None:
        return None, _error(401, "Authentication required")
    if not account.is_admin:
        logger.warning(f"🚫 User {account.user_id} attempted {action} without admin rights")
        return None, _error(403, "Admin access required")
    return account, None


def _on_demand_html(report: Optional[Report], label: str):
    if report is None:
        return _error(500, f"No report could be generated for {label}")
    return HTMLResponse(report.html_content or "")


@router.get("/RedditReport", response_class=HTMLResponse)
async def reddit_report(request: Request, subreddit: Optional[str] = Query(None), force: bool = Query(False)):
    """HTML report for one subreddit, reusing one from the last day unless ``force`` is set."""
    if not subreddit or not subreddit.strip():
        raise ValidationError("Subreddit parameter is required")
    platform_type, target = resolve_target("reddit", subreddit=subreddit)
    report = await _services(request).report_on_demand(platform_type, target, force=force)
    return _on_demand_html(report, f"r/{target}")


@router.get("/GitHubIssuesReport", response_class=HTMLResponse)
async def github_issues_report(request: Request, repo: Optional[str] = Query(None), force: bool = Query(False)):
    """HTML report for one repository given as ``owner/name``."""
    if not repo or not repo.strip():
        raise ValidationError("Repository parameter is required (format: owner/name)")
    parts = repo.strip().split("/")
    if len(parts) != 2 or not all(parts):
        raise ValidationError("Repository parameter must be in format 'owner/name'")
    platform_type, target = resolve_target("github", owner=parts[0], repo=parts[1])
    services = _services(request)
    if not force and services.batch.recent_report(compute_request_id(platform_type, target)) is None:
        await services.ensure_target_exists(platform_type, target)
    report = await services.report_on_demand(platform_type, target, force=force)
    return _on_demand_html(report, target)


@router.get("/cache/status")
async def cache_status(request: Request):
    return _services(request).cache.status()


@router.post("/cache/refresh")
async def refresh_cache(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
):
    """Reload the newest persisted report per key from blob storage."""
    services = _services(request)
    account, denied = await _authorize_admin(services, x_api_key, authorization, "cache refresh")
    if denied is not None:
        return denied
    loaded = await services.cache.warm(services.store)
    status = services.cache.status()
    logger.info(f"Admin {account.user_id} refreshed the report cache ({loaded} report(s) loaded)")
    return {
        "message": "Cache refreshed successfully",
        "reportCount": status["count"],
        "refreshedAt": status["lastRefresh"],
    }


@router.post("/cache/clear")
async def clear_cache(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
):
    services = _services(request)
    account, denied = await _authorize_admin(services, x_api_key, authorization, "cache clear")
    if denied is not None:
        return denied
    removed = services.cache.clear()
    logger.info(f"Admin {account.user_id} cleared the report cache")
    return {"message": "Cache cleared successfully", "removed": removed}


@router.post("/SendAdminReportNow")
async def send_admin_report_now(
    request: Request,
    id: Optional[str] = Query(None),
    x_api_key: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
):
    """Send one admin report immediately. Requires an admin API key."""
    services = _services(request)
    account, denied = await _authorize_admin(services, x_api_key, authorization, "SendAdminReportNow")
    if denied is not None:
        return denied
    if not id or not id.strip():
        raise ValidationError("Config id is required")

    logger.info(f"📨 Admin {account.user_id} requested immediate send for config {id}")
    sent = await services.distributor.send_now(id.strip())
    if not sent:
        return _error(500, "Failed to send admin report")
    return {"id": id.strip(), "message": "Admin report sent successfully"}


@router.get("/health")
async def health(request: Request):
    services = _services(request)
    return {"status": "healthy", "cache": services.cache.status()}


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ConcurrencyConflictError)
    async def _conflict(request: Request, exc: ConcurrencyConflictError):
        logger.warning(f"Concurrency conflict on {request.url.path}: {exc}")
        return _error(409, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _bad_body(request: Request, exc: RequestValidationError):
        return _error(400, "Invalid request body")

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        request_id = uuid4().hex
        logger.error(f"💥 Unhandled error on {request.method} {request.url.path} [requestId={request_id}]: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "An internal error occurred", "requestId": request_id})


def create_app(services: Optional[ReportServices] = None) -> FastAPI:
    """Build the FastAPI application around ``services`` (created on demand)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if app.state.services is None:
            app.state.services = ReportServices()
        await app.state.services.initialize()

        scheduler_task = None
        if config.RUN_SCHEDULER_IN_API:
            logger.info("Starting in-process scheduler (RUN_SCHEDULER_IN_API=true)")
            scheduler_task = asyncio.create_task(create_scheduler().run_scheduled(app.state.services))

        yield

        logger.info("Shutting down API")
        if scheduler_task:
            scheduler_task.cancel()
            try:
                await scheduler_task
            except asyncio.CancelledError:
                pass
        await app.state.services.close()

    app = FastAPI(
        title="Report Pipeline API",
        description="Weekly Reddit and GitHub report subscriptions and admin distribution.",
        lifespan=lifespan,
    )
    app.state.services = services
    _register_exception_handlers(app)
    app.include_router(router)
    return app
