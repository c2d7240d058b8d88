"""Stuck-job reconciler.

A sweep finds active jobs whose worker looks dead and resolves each one:

- cancellation requested: close open tasks as cancelled, job -> cancelled
- every task accounted for: job -> completed (a terminal write was lost)
- resume budget exhausted: close open tasks as error, job -> failed
- otherwise: mark resumable (runner cleared, status processing) with a
  backoff before the next resume attempt

The sweep never starts workers. `collect_due_jobs` is the separate,
rate-limited operation that picks resumable jobs whose backoff has elapsed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, not_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.types import utcnow
from app.jobs.daily import run_jobs
from app.jobs.job_manager import finalize_job, get_job, task_status_counts
from app.jobs.registry import create_scheduler_run, finish_scheduler_run
from app.models.batch import ACTIVE_JOB_STATUSES, BatchJob, BatchTask, JobStatus, TaskStatus
from app.services.providers.service import ExecutorRegistry

logger = logging.getLogger(__name__)


@dataclass
class ResolveResult:
    job_id: str
    action: str  # finalized, resumed, cancelled, failed, skipped, error
    completed_tasks: int = 0
    failed_tasks: int = 0
    total_tasks: int = 0
    reset_tasks: int = 0
    next_resume_at: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "action": self.action,
            "completedTasks": self.completed_tasks,
            "failedTasks": self.failed_tasks,
            "totalTasks": self.total_tasks,
            "resetTasks": self.reset_tasks,
            "nextResumeAt": self.next_resume_at,
            "reason": self.reason,
        }


@dataclass
class SweepSummary:
    processed: int = 0
    finalized: int = 0
    resumed: int = 0
    cancelled: int = 0
    failed: int = 0
    errors: int = 0
    stuck_found: int = 0
    results: list[ResolveResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processedJobs": self.processed,
            "finalizedJobs": self.finalized,
            "resumedJobs": self.resumed,
            "cancelledJobs": self.cancelled,
            "failedJobs": self.failed,
            "errors": self.errors,
            "totalStuckFound": self.stuck_found,
            "results": [r.to_dict() for r in self.results],
        }


def is_really_stuck(
    job: BatchJob,
    now: datetime,
    heartbeat_timeout_seconds: int | None = None,
    grace_seconds: int | None = None,
) -> bool:
    """
    Staleness predicate.

    Stuck when the heartbeat is older than the heartbeat timeout, or when the
    job has been running longer than the grace period with zero progress. A job
    that never started is aged from its creation time.
    """
    if job.status not in ACTIVE_JOB_STATUSES:
        return False
    h = timedelta(seconds=heartbeat_timeout_seconds or settings.HEARTBEAT_TIMEOUT_SECONDS)
    g = timedelta(seconds=grace_seconds or settings.STUCK_GRACE_SECONDS)

    if job.last_heartbeat is not None and now - job.last_heartbeat > h:
        return True
    started = job.started_at or job.created_at
    return job.progress == 0 and started is not None and now - started > g


def resume_backoff(attempt: int) -> timedelta:
    """Delay before resume attempt number `attempt` (1-based)."""
    seconds = settings.RESUME_BACKOFF_BASE_SECONDS * (2 ** max(attempt - 1, 0))
    return timedelta(seconds=min(seconds, settings.RESUME_BACKOFF_MAX_SECONDS))


def _awaiting_resume():
    return and_(
        BatchJob.status == JobStatus.PROCESSING.value,
        BatchJob.runner_id.is_(None),
        BatchJob.next_resume_at.is_not(None),
    )


async def find_stuck_candidates(
    db: AsyncSession,
    now: datetime,
    limit: int | None = None,
) -> list[BatchJob]:
    """
    Active jobs matching the staleness predicate.

    Jobs already parked for resumption are excluded unless cancellation was
    requested, so repeated sweeps do not burn resume attempts.
    """
    h = now - timedelta(seconds=settings.HEARTBEAT_TIMEOUT_SECONDS)
    g = now - timedelta(seconds=settings.STUCK_GRACE_SECONDS)
    no_progress = BatchJob.completed_tasks + BatchJob.failed_tasks == 0
    result = await db.execute(
        select(BatchJob)
        .where(
            BatchJob.status.in_(ACTIVE_JOB_STATUSES),
            or_(not_(_awaiting_resume()), BatchJob.cancellation_requested.is_(True)),
            or_(
                BatchJob.last_heartbeat < h,
                and_(no_progress, BatchJob.started_at.is_not(None), BatchJob.started_at < g),
                and_(no_progress, BatchJob.started_at.is_(None), BatchJob.created_at < g),
                BatchJob.cancellation_requested.is_(True),
            ),
        )
        .order_by(BatchJob.created_at)
        .limit(limit or settings.RECONCILER_BATCH_LIMIT)
        .execution_options(populate_existing=True)
    )
    jobs = list(result.scalars().all())
    # Cancelled jobs with a live runner are left to that runner
    return [j for j in jobs if is_really_stuck(j, now) or (j.cancellation_requested and j.runner_id is None)]


async def resolve_stuck_job(
    db: AsyncSession,
    job_id: UUID,
    now: datetime | None = None,
) -> ResolveResult:
    """
    Finalize or park a stuck job based on a fresh read of its counts.

    Args:
        db: Database session
        job_id: Job ID
        now: Current time

    Returns:
        ResolveResult
    """
    now = now or utcnow()
    job = await get_job(db, job_id)
    result = ResolveResult(job_id=str(job_id), action="skipped", total_tasks=job.total_tasks)
    if job.status not in ACTIVE_JOB_STATUSES:
        result.reason = f"job already {job.status}"
        return result

    counts = await task_status_counts(db, job_id)
    open_tasks = counts[TaskStatus.PENDING.value] + counts[TaskStatus.RUNNING.value]
    counters_done = job.completed_tasks + job.failed_tasks >= job.total_tasks
    tasks_done = open_tasks == 0 and sum(counts.values()) > 0

    if job.cancellation_requested:
        done = await finalize_job(db, job_id, JobStatus.CANCELLED, now, close_open_tasks=TaskStatus.CANCELLED)
        result.action = "cancelled" if done else "skipped"
    elif counters_done or tasks_done:
        done = await finalize_job(db, job_id, JobStatus.COMPLETED, now, sync_counters=tasks_done)
        result.action = "finalized" if done else "skipped"
    elif job.resume_attempts >= settings.RESUME_MAX_ATTEMPTS:
        done = await finalize_job(
            db,
            job_id,
            JobStatus.FAILED,
            now,
            close_open_tasks=TaskStatus.ERROR,
            error=f"Gave up after {job.resume_attempts} resume attempts",
        )
        result.action = "failed" if done else "skipped"
    else:
        result = await _mark_resumable(db, job, now, result)

    job = await get_job(db, job_id)
    result.completed_tasks = job.completed_tasks
    result.failed_tasks = job.failed_tasks
    logger.info(
        f"Resolved stuck job {job_id}: {result.action}",
        extra={"job_id": str(job_id), "action": result.action, "org_id": str(job.org_id)},
    )
    return result


async def _mark_resumable(
    db: AsyncSession,
    job: BatchJob,
    now: datetime,
    result: ResolveResult,
) -> ResolveResult:
    attempt = job.resume_attempts + 1
    next_resume_at = now + resume_backoff(attempt)

    # Compare-and-swap against the runner and heartbeat we judged stale
    guards = [BatchJob.id == job.id, BatchJob.status.in_(ACTIVE_JOB_STATUSES)]
    guards.append(BatchJob.runner_id.is_(None) if job.runner_id is None else BatchJob.runner_id == job.runner_id)
    guards.append(
        BatchJob.last_heartbeat.is_(None) if job.last_heartbeat is None else BatchJob.last_heartbeat == job.last_heartbeat
    )
    parked = await db.execute(
        update(BatchJob)
        .where(*guards)
        .values(
            status=JobStatus.PROCESSING.value,
            runner_id=None,
            resume_attempts=attempt,
            next_resume_at=next_resume_at,
        )
        .execution_options(synchronize_session=False)
    )
    if parked.rowcount != 1:
        await db.rollback()
        result.reason = "job changed while resolving"
        return result

    stale_before = now - timedelta(seconds=settings.STALE_TASK_SECONDS)
    reset = await db.execute(
        update(BatchTask)
        .where(
            BatchTask.job_id == job.id,
            BatchTask.status == TaskStatus.RUNNING.value,
            or_(BatchTask.started_at.is_(None), BatchTask.started_at < stale_before),
        )
        .values(status=TaskStatus.PENDING.value, started_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    result.action = "resumed"
    result.reset_tasks = reset.rowcount
    result.next_resume_at = next_resume_at.isoformat()
    return result


async def sweep_stuck_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
    trigger_source: str = "cron",
) -> SweepSummary:
    """
    Find and resolve stuck jobs. Each job is resolved in its own session so one
    failure does not abort the sweep.
    """
    now = now or utcnow()
    summary = SweepSummary()

    async with session_factory() as db:
        run = await create_scheduler_run(db, "reconcile", now.isoformat(), trigger_source)

    try:
        async with session_factory() as db:
            candidates = await find_stuck_candidates(db, now)
    except Exception as e:
        logger.error("Reconciler sweep aborted while finding stuck jobs", extra={"run_id": str(run.id)}, exc_info=True)
        async with session_factory() as db:
            await finish_scheduler_run(db, run.id, "failed", error=str(e))
        raise
    summary.stuck_found = len(candidates)

    for job in candidates:
        try:
            async with session_factory() as db:
                resolved = await resolve_stuck_job(db, job.id, now)
        except Exception as e:
            logger.error(f"Failed to resolve stuck job {job.id}", extra={"job_id": str(job.id)}, exc_info=True)
            resolved = ResolveResult(job_id=str(job.id), action="error", reason=str(e))
            summary.errors += 1

        summary.processed += 1
        if resolved.action == "finalized":
            summary.finalized += 1
        elif resolved.action == "resumed":
            summary.resumed += 1
        elif resolved.action == "cancelled":
            summary.cancelled += 1
        elif resolved.action == "failed":
            summary.failed += 1
        summary.results.append(resolved)

    async with session_factory() as db:
        await finish_scheduler_run(db, run.id, "completed", summary.to_dict())

    logger.info(
        f"Reconciler sweep processed {summary.processed} stuck jobs",
        extra={
            "run_id": str(run.id),
            "finalized": summary.finalized,
            "resumed": summary.resumed,
            "cancelled": summary.cancelled,
            "failed": summary.failed,
        },
    )
    return summary


async def find_due_jobs(db: AsyncSession, now: datetime, limit: int | None = None) -> list[UUID]:
    result = await db.execute(
        select(BatchJob.id)
        .where(
            _awaiting_resume(),
            BatchJob.cancellation_requested.is_(False),
            BatchJob.next_resume_at <= now,
        )
        .order_by(BatchJob.next_resume_at)
        .limit(limit or settings.RECONCILER_BATCH_LIMIT)
    )
    return list(result.scalars().all())


async def collect_due_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
    limit: int | None = None,
    trigger_source: str = "cron",
) -> dict[str, Any]:
    """
    Select resumable jobs whose backoff has elapsed and record the selection.

    Starts no work. Callers hand `jobIds` to `run_jobs`, whose conditional
    runner claim keeps two concurrent callers from running the same job.

    Args:
        session_factory: Session factory
        now: Current time
        limit: Maximum number of jobs, defaults to RECONCILER_BATCH_LIMIT
        trigger_source: cron, admin, cli

    Returns:
        {dueJobs, jobIds}
    """
    now = now or utcnow()
    async with session_factory() as db:
        run = await create_scheduler_run(db, "resume-due", now.isoformat(), trigger_source)

    try:
        async with session_factory() as db:
            job_ids = await find_due_jobs(db, now, limit)
    except Exception as e:
        logger.error("Resume selection aborted", extra={"run_id": str(run.id)}, exc_info=True)
        async with session_factory() as db:
            await finish_scheduler_run(db, run.id, "failed", error=str(e))
        raise

    outcome = {"dueJobs": len(job_ids), "jobIds": [str(j) for j in job_ids]}
    async with session_factory() as db:
        await finish_scheduler_run(db, run.id, "completed", outcome)
    if job_ids:
        logger.info(f"{len(job_ids)} parked jobs due for resumption", extra={"run_id": str(run.id)})
    return outcome


async def resume_due_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    executors: ExecutorRegistry,
    now: datetime | None = None,
    limit: int | None = None,
    trigger_source: str = "cron",
) -> dict[str, Any]:
    """Select due jobs and run them to completion in this call."""
    outcome = await collect_due_jobs(session_factory, now=now, limit=limit, trigger_source=trigger_source)
    results = await run_jobs(session_factory, outcome["jobIds"], executors)
    return {
        **outcome,
        "resumedJobs": sum(1 for r in results if r.get("action") not in ("not_claimed", "error")),
        "results": results,
    }
