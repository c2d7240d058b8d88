"""Scheduler entry points for external cron and admin callers."""

import logging
from typing import Annotated, Any, Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.dependencies import Caller, require_cron_or_admin
from app.core.errors import get_request_id
from app.db.session import get_session_factory
from app.jobs.coverage import run_coverage_audit
from app.jobs.daily import run_daily_trigger, run_jobs
from app.jobs.reconciler import collect_due_jobs, sweep_stuck_jobs
from app.services.providers.service import ExecutorRegistry, get_executor_registry

logger = logging.getLogger(__name__)

router = APIRouter()

SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
Executors = Annotated[ExecutorRegistry, Depends(get_executor_registry)]
SchedulerCaller = Annotated[Caller, Depends(require_cron_or_admin)]


class DailyTriggerRequest(BaseModel):
    """Daily trigger options."""

    force: bool = False
    dispatch: bool = True  # run created jobs in the background


class DailyTriggerResponse(BaseModel):
    """Daily trigger outcome. Gate rejections are reported, not raised."""

    status: Literal["outside-window", "already-ran", "locked", "success"]
    key: str
    result: dict[str, Any] | None = None


class SweepResponse(BaseModel):
    """Reconciler sweep summary."""

    processedJobs: int
    finalizedJobs: int
    resumedJobs: int
    cancelledJobs: int
    failedJobs: int
    errors: int
    totalStuckFound: int
    results: list[dict[str, Any]]


@router.post("/daily-trigger", response_model=DailyTriggerResponse)
async def daily_trigger(
    request: Request,
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory,
    executors: Executors,
    caller: SchedulerCaller,
    body: DailyTriggerRequest | None = None,
):
    """
    Time-gated daily fan-out.

    Returns outside-window, already-ran or locked as 200 no-ops. On success the
    created jobs are processed after the response is sent.
    """
    body = body or DailyTriggerRequest()
    outcome = await run_daily_trigger(
        session_factory,
        force=body.force,
        correlation_id=get_request_id(request),
        trigger_source=caller.kind,
    )
    if outcome["status"] == "success" and body.dispatch and outcome["result"]["jobIds"]:
        background_tasks.add_task(run_jobs, session_factory, outcome["result"]["jobIds"], executors)
    return DailyTriggerResponse(**outcome)


@router.post("/reconcile", response_model=SweepResponse)
async def reconcile(
    session_factory: SessionFactory,
    caller: SchedulerCaller,
):
    """Detect stuck jobs and finalize or park them for resumption. Starts no work."""
    summary = await sweep_stuck_jobs(session_factory, trigger_source=caller.kind)
    return SweepResponse(**summary.to_dict())


@router.post("/coverage-audit")
async def coverage_audit(
    request: Request,
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory,
    executors: Executors,
    caller: SchedulerCaller,
    repair: Annotated[bool, Query()] = False,
) -> dict[str, Any]:
    """Audit today's org-level and prompt-level coverage; with repair=true create repair jobs."""
    result = await run_coverage_audit(
        session_factory,
        repair=repair,
        correlation_id=get_request_id(request),
        trigger_source=caller.kind,
    )
    if result["healing"]["jobIds"]:
        background_tasks.add_task(run_jobs, session_factory, result["healing"]["jobIds"], executors)
    return result


@router.post("/resume-due")
async def resume_due(
    background_tasks: BackgroundTasks,
    session_factory: SessionFactory,
    executors: Executors,
    caller: SchedulerCaller,
) -> dict[str, Any]:
    """Select parked jobs whose resume backoff has elapsed; they run after the response is sent."""
    outcome = await collect_due_jobs(session_factory, trigger_source=caller.kind)
    if outcome["jobIds"]:
        background_tasks.add_task(run_jobs, session_factory, outcome["jobIds"], executors)
    return outcome
