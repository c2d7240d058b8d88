"""Job worker: runs a job's pending tasks against the provider executors."""

import asyncio
import logging
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.types import UTCDateTime, utcnow
from app.jobs.heartbeat import HeartbeatMonitor
from app.jobs.job_manager import (
    finalize_job,
    get_job,
    mark_task_running,
    record_task_result,
)
from app.models.batch import ACTIVE_JOB_STATUSES, BatchJob, BatchTask, JobStatus, TaskStatus
from app.models.tenant import Prompt
from app.services.providers.base import ExecutionResult, TaskRequest
from app.services.providers.service import ExecutorRegistry

logger = logging.getLogger(__name__)


@dataclass
class JobRunSummary:
    job_id: str
    runner_id: str
    action: str  # processed, cancelled, not_claimed, heartbeat_lost
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "runnerId": self.runner_id,
            "action": self.action,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "status": self.status,
        }


def make_runner_id() -> str:
    return f"{socket.gethostname()}-{uuid4().hex[:8]}"


async def claim_job(
    db: AsyncSession,
    job_id: UUID,
    runner_id: str,
    now: datetime | None = None,
) -> bool:
    """
    Take ownership of a job.

    Succeeds only if the job is active, not flagged for cancellation, and not
    held by another runner.
    """
    now = now or utcnow()
    result = await db.execute(
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.status.in_(ACTIVE_JOB_STATUSES),
            BatchJob.cancellation_requested.is_(False),
            or_(BatchJob.runner_id.is_(None), BatchJob.runner_id == runner_id),
        )
        .values(
            runner_id=runner_id,
            status=JobStatus.PROCESSING.value,
            started_at=func.coalesce(BatchJob.started_at, literal(now, UTCDateTime())),
            last_heartbeat=now,
            next_resume_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def release_job(db: AsyncSession, job_id: UUID, runner_id: str) -> None:
    await db.execute(
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.runner_id == runner_id)
        .values(runner_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def is_cancellation_requested(db: AsyncSession, job_id: UUID) -> bool:
    result = await db.execute(select(BatchJob.cancellation_requested).where(BatchJob.id == job_id))
    return bool(result.scalar_one_or_none())


async def fetch_pending_requests(db: AsyncSession, job_id: UUID, limit: int) -> list[TaskRequest]:
    result = await db.execute(
        select(BatchTask.id, BatchTask.prompt_id, BatchTask.provider, Prompt.text)
        .join(Prompt, Prompt.id == BatchTask.prompt_id)
        .where(BatchTask.job_id == job_id, BatchTask.status == TaskStatus.PENDING.value)
        .order_by(BatchTask.created_at, BatchTask.id)
        .limit(limit)
    )
    return [
        TaskRequest(task_id=task_id, prompt_id=prompt_id, prompt_text=text, provider=provider)
        for task_id, prompt_id, provider, text in result.all()
    ]


async def process_job(
    session_factory: async_sessionmaker[AsyncSession],
    job_id: UUID,
    executors: ExecutorRegistry,
    runner_id: str | None = None,
    *,
    concurrency: int | None = None,
    task_timeout: float | None = None,
    chunk_size: int | None = None,
    heartbeat_interval: float | None = None,
) -> JobRunSummary:
    """
    Run every pending task of a job.

    Tasks already in a terminal status are never fetched, so calling this on a
    resumed job only issues provider calls for the remaining work.

    Args:
        session_factory: Session factory; each step uses a short-lived session
        job_id: Job ID
        executors: Provider executor registry
        runner_id: Runner identity (generated if None)
        concurrency: Max in-flight provider calls
        task_timeout: Per-task wall-clock timeout in seconds
        chunk_size: Pending tasks fetched per round
        heartbeat_interval: Seconds between heartbeats

    Returns:
        JobRunSummary
    """
    runner_id = runner_id or make_runner_id()
    concurrency = concurrency or settings.TASK_CONCURRENCY
    task_timeout = task_timeout or settings.TASK_TIMEOUT_SECONDS
    chunk_size = chunk_size or settings.TASK_FETCH_CHUNK
    summary = JobRunSummary(job_id=str(job_id), runner_id=runner_id, action="processed")
    log_extra = {"job_id": str(job_id), "runner_id": runner_id}

    async with session_factory() as db:
        if not await claim_job(db, job_id, runner_id):
            summary.action = "not_claimed"
            summary.status = (await get_job(db, job_id)).status
            logger.info(f"Job {job_id} not claimed by {runner_id}", extra=log_extra)
            return summary

    logger.info(f"Runner {runner_id} processing job {job_id}", extra=log_extra)
    semaphore = asyncio.Semaphore(concurrency)

    async def run_one(request: TaskRequest) -> str:
        async with semaphore:
            async with session_factory() as db:
                if await is_cancellation_requested(db, job_id):
                    return "skipped"
                if not await mark_task_running(db, request.task_id):
                    return "skipped"

            executor = executors.get(request.provider)
            if executor is None:
                outcome = ExecutionResult.failure(f"No executor configured for provider '{request.provider}'")
            else:
                try:
                    outcome = await asyncio.wait_for(executor.execute(request), timeout=task_timeout)
                except asyncio.TimeoutError:
                    outcome = ExecutionResult.failure(f"Task timed out after {task_timeout}s")
                except Exception as e:
                    logger.error(
                        f"Executor {request.provider} raised for task {request.task_id}",
                        extra={**log_extra, "task_id": str(request.task_id)},
                        exc_info=True,
                    )
                    outcome = ExecutionResult.failure(f"{type(e).__name__}: {e}")

            async with session_factory() as db:
                await record_task_result(db, job_id, request.task_id, outcome)
            return "succeeded" if outcome.success else "failed"

    try:
        async with HeartbeatMonitor(session_factory, job_id, runner_id, heartbeat_interval) as heartbeat:
            while True:
                async with session_factory() as db:
                    if await is_cancellation_requested(db, job_id):
                        summary.action = "cancelled"
                        break
                    batch = await fetch_pending_requests(db, job_id, chunk_size)
                if not batch:
                    break

                for outcome in await asyncio.gather(*(run_one(r) for r in batch)):
                    setattr(summary, outcome, getattr(summary, outcome) + 1)

                if heartbeat.lost:
                    summary.action = "heartbeat_lost"
                    break

        if summary.action == "cancelled":
            async with session_factory() as db:
                await finalize_job(db, job_id, JobStatus.CANCELLED, close_open_tasks=TaskStatus.CANCELLED)
    finally:
        async with session_factory() as db:
            await release_job(db, job_id, runner_id)

    async with session_factory() as db:
        summary.status = (await get_job(db, job_id)).status
    if summary.action == "heartbeat_lost" and summary.status not in ACTIVE_JOB_STATUSES:
        # Lost only because the last result finalized the job
        summary.action = "processed"

    logger.info(
        f"Runner {runner_id} finished job {job_id}: {summary.action}",
        extra={**log_extra, "succeeded": summary.succeeded, "failed": summary.failed, "status": summary.status},
    )
    return summary
