"""Admin endpoints for bulk triggering and batch job inspection."""

import logging
from datetime import datetime
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.app_exceptions import JobNotFoundError, job_not_found
from app.core.dependencies import Caller, require_admin
from app.core.errors import get_request_id
from app.db.session import get_db, get_session_factory
from app.jobs.daily import run_admin_bulk_trigger, run_jobs
from app.jobs.job_manager import get_job, request_cancellation, task_status_counts
from app.models.batch import BatchJob
from app.services.providers.service import ExecutorRegistry, get_executor_registry

logger = logging.getLogger(__name__)

router = APIRouter()


class BatchTriggerRequest(BaseModel):
    """Admin bulk trigger options."""

    replace: bool = False
    preflight: bool = False
    dispatch: bool = True


class BatchJobResponse(BaseModel):
    """Batch job with live task counts."""

    id: UUID
    org_id: UUID
    day_key: str
    status: str
    source: str
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    last_heartbeat: datetime | None
    runner_id: str | None
    cancellation_requested: bool
    resume_attempts: int
    next_resume_at: datetime | None
    metadata: dict[str, Any]
    task_counts: dict[str, int]


async def _job_response(db: AsyncSession, job: BatchJob) -> BatchJobResponse:
    return BatchJobResponse(
        id=job.id,
        org_id=job.org_id,
        day_key=job.day_key,
        status=job.status,
        source=job.source,
        total_tasks=job.total_tasks,
        completed_tasks=job.completed_tasks,
        failed_tasks=job.failed_tasks,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        last_heartbeat=job.last_heartbeat,
        runner_id=job.runner_id,
        cancellation_requested=job.cancellation_requested,
        resume_attempts=job.resume_attempts,
        next_resume_at=job.next_resume_at,
        metadata=job.job_metadata or {},
        task_counts=await task_status_counts(db, job.id),
    )


@router.post("/batch-trigger")
async def batch_trigger(
    request: Request,
    background_tasks: BackgroundTasks,
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    executors: Annotated[ExecutorRegistry, Depends(get_executor_registry)],
    caller: Annotated[Caller, Depends(require_admin)],
    body: BatchTriggerRequest | None = None,
) -> dict[str, Any]:
    """
    Fan out for every tenant outside the daily gate.

    preflight=true reports quotas, expected tasks and skip reasons without
    creating rows. replace=true cancels each tenant's incomplete job for today.
    """
    body = body or BatchTriggerRequest()
    logger.info(
        "Admin batch trigger",
        extra={"admin": caller.email or caller.subject, "replace": body.replace, "preflight": body.preflight},
    )
    outcome = await run_admin_bulk_trigger(
        session_factory,
        replace=body.replace,
        preflight=body.preflight,
        correlation_id=get_request_id(request),
    )
    if body.dispatch and outcome["jobIds"]:
        background_tasks.add_task(run_jobs, session_factory, outcome["jobIds"], executors)
    return outcome


@router.get("/jobs/{job_id}", response_model=BatchJobResponse)
async def get_batch_job(
    job_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    caller: Annotated[Caller, Depends(require_admin)],
):
    """Get a batch job (admin only)."""
    try:
        job = await get_job(db, job_id)
    except JobNotFoundError:
        raise job_not_found(job_id) from None
    return await _job_response(db, job)


@router.post("/jobs/{job_id}/cancel", response_model=BatchJobResponse)
async def cancel_batch_job(
    job_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    caller: Annotated[Caller, Depends(require_admin)],
):
    """Request cancellation; workers stop issuing new tasks and the reconciler finalizes the job."""
    try:
        job = await request_cancellation(db, job_id)
    except JobNotFoundError:
        raise job_not_found(job_id) from None
    return await _job_response(db, job)
