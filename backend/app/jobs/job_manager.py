"""Job manager: quota-clamped fan-out and task completion accounting."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.app_exceptions import JobNotFoundError
from app.db.types import utcnow
from app.jobs.clock import day_key as compute_day_key
from app.jobs.quota import clamp_fan_out, get_quota
from app.models.batch import ACTIVE_JOB_STATUSES, BatchJob, BatchTask, JobStatus, TaskStatus
from app.models.tenant import LLMProvider, Organization, Prompt
from app.services.providers.base import ExecutionResult

logger = logging.getLogger(__name__)

SKIP_NO_PROMPTS = "No active prompts found"
SKIP_NO_PROVIDERS = "No enabled providers"
SKIP_INACTIVE = "Tenant inactive"
SKIP_NO_TASKS = "No tasks would be created"


@dataclass
class TenantPlan:
    """Quota-clamped fan-out for one tenant."""

    org_id: UUID
    org_name: str
    tier: str
    active_prompt_count: int
    prompt_ids: list[UUID] = field(default_factory=list)
    providers: list[str] = field(default_factory=list)
    skip_reason: str | None = None

    @property
    def expected_tasks(self) -> int:
        return len(self.prompt_ids) * len(self.providers)


@dataclass
class FanOutResult:
    """Outcome of creating (or not creating) a job for one tenant."""

    org_id: UUID
    action: str  # created, duplicate_prevented, preflight, skipped, error
    plan: TenantPlan | None = None
    job: BatchJob | None = None
    replaced_job_ids: list[UUID] = field(default_factory=list)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.action in ("created", "duplicate_prevented", "preflight")

    def to_dict(self) -> dict[str, Any]:
        plan = self.plan
        return {
            "orgId": str(self.org_id),
            "orgName": plan.org_name if plan else None,
            "success": self.success,
            "action": self.action,
            "batchJobId": str(self.job.id) if self.job is not None else None,
            "promptCount": len(plan.prompt_ids) if plan else 0,
            "availableProviders": list(plan.providers) if plan else [],
            "expectedTasks": plan.expected_tasks if plan else 0,
            "skipReason": plan.skip_reason if plan else None,
            "replacedJobIds": [str(j) for j in self.replaced_job_ids],
            "error": self.error,
        }


def active_key_for(org_id: UUID, key: str) -> str:
    return f"{org_id}:{key}"


def terminal_job_values(status: JobStatus, now: datetime) -> dict[str, Any]:
    """Column values for any transition into a terminal job status."""
    return {
        "status": status.value,
        "completed_at": now,
        "runner_id": None,
        "active_key": None,
        "next_resume_at": None,
    }


async def list_active_organizations(db: AsyncSession) -> list[Organization]:
    result = await db.execute(
        select(Organization)
        .where(Organization.is_active.is_(True))
        .order_by(Organization.created_at, Organization.id)
    )
    return list(result.scalars().all())


async def list_enabled_providers(db: AsyncSession) -> list[str]:
    result = await db.execute(
        select(LLMProvider.name)
        .where(LLMProvider.enabled.is_(True))
        .order_by(LLMProvider.priority, LLMProvider.name)
    )
    return list(result.scalars().all())


async def plan_tenant(
    db: AsyncSession,
    org: Organization,
    providers: list[str] | None = None,
) -> TenantPlan:
    """
    Resolve prompts and providers for a tenant and clamp them to its tier quota.

    Args:
        db: Database session
        org: Tenant
        providers: Enabled providers in priority order (looked up if None)

    Returns:
        TenantPlan, with skip_reason set when no job should be created
    """
    if providers is None:
        providers = await list_enabled_providers(db)

    prompt_rows = await db.execute(
        select(Prompt.id)
        .where(Prompt.org_id == org.id, Prompt.active.is_(True))
        .order_by(Prompt.created_at, Prompt.id)
    )
    prompt_ids = list(prompt_rows.scalars().all())

    quota = get_quota(org.plan_tier)
    clamped_prompts, clamped_providers = clamp_fan_out(prompt_ids, providers, quota)

    plan = TenantPlan(
        org_id=org.id,
        org_name=org.name,
        tier=org.plan_tier,
        active_prompt_count=len(prompt_ids),
        prompt_ids=clamped_prompts,
        providers=clamped_providers,
    )

    if not prompt_ids:
        plan.skip_reason = SKIP_NO_PROMPTS
    elif not providers:
        plan.skip_reason = SKIP_NO_PROVIDERS
    elif not org.is_active:
        plan.skip_reason = SKIP_INACTIVE
    elif plan.expected_tasks == 0:
        plan.skip_reason = SKIP_NO_TASKS
    return plan


async def find_incomplete_job(db: AsyncSession, org_id: UUID, key: str) -> BatchJob | None:
    result = await db.execute(
        select(BatchJob)
        .where(
            BatchJob.org_id == org_id,
            BatchJob.day_key == key,
            BatchJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(BatchJob.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _cancel_job_in_place(db: AsyncSession, job_id: UUID, now: datetime) -> None:
    """Cancel a job and its pending tasks inside the caller's transaction."""
    await db.execute(
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.status.in_(ACTIVE_JOB_STATUSES))
        .values(cancellation_requested=True, **terminal_job_values(JobStatus.CANCELLED, now))
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(BatchTask)
        .where(BatchTask.job_id == job_id, BatchTask.status == TaskStatus.PENDING.value)
        .values(status=TaskStatus.CANCELLED.value, completed_at=now)
        .execution_options(synchronize_session=False)
    )


async def create_jobs_for_tenant(
    db: AsyncSession,
    org_id: UUID,
    correlation_id: str | None = None,
    replace: bool = False,
    *,
    source: str = "daily-trigger",
    now: datetime | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> FanOutResult:
    """
    Create today's batch job for a tenant.

    Without `replace`, an incomplete job for the same tenant-day is returned
    as-is. With `replace`, it is cancelled and a fresh job is created.

    Args:
        db: Database session
        org_id: Tenant ID
        correlation_id: Correlation id stored on the job
        replace: Cancel an existing incomplete job instead of reusing it
        source: Attribution tag (daily-trigger, admin-trigger, coverage-repair)
        now: Current time
        extra_metadata: Merged into the job metadata

    Returns:
        FanOutResult
    """
    now = now or utcnow()
    org = await db.get(Organization, org_id)
    if org is None:
        raise ValueError(f"Organization not found: {org_id}")

    key = compute_day_key(now)
    plan = await plan_tenant(db, org)
    if plan.skip_reason:
        logger.info(
            f"Skipping tenant {org_id}: {plan.skip_reason}",
            extra={"org_id": str(org_id), "correlation_id": correlation_id},
        )
        return FanOutResult(org_id=org_id, action="skipped", plan=plan)

    existing = await find_incomplete_job(db, org_id, key)
    replaced: list[UUID] = []
    if existing is not None:
        if not replace:
            return FanOutResult(org_id=org_id, action="duplicate_prevented", plan=plan, job=existing)
        await _cancel_job_in_place(db, existing.id, now)
        replaced.append(existing.id)

    metadata: dict[str, Any] = {
        "source": source,
        "correlationId": correlation_id,
        "tier": plan.tier,
        "promptCount": len(plan.prompt_ids),
        "providers": plan.providers,
    }
    if replaced:
        metadata["replaces"] = [str(j) for j in replaced]
    if extra_metadata:
        metadata.update(extra_metadata)

    job = BatchJob(
        id=uuid4(),
        org_id=org_id,
        day_key=key,
        status=JobStatus.PENDING.value,
        source=source,
        correlation_id=correlation_id,
        total_tasks=plan.expected_tasks,
        completed_tasks=0,
        failed_tasks=0,
        created_at=now,
        active_key=active_key_for(org_id, key),
        job_metadata=metadata,
    )
    db.add(job)
    db.add_all(
        BatchTask(
            id=uuid4(),
            job_id=job.id,
            prompt_id=prompt_id,
            provider=provider,
            status=TaskStatus.PENDING.value,
            created_at=now,
        )
        for prompt_id in plan.prompt_ids
        for provider in plan.providers
    )

    try:
        await db.commit()
    except IntegrityError:
        # A concurrent fan-out for the same tenant-day won the active_key slot
        await db.rollback()
        winner = await find_incomplete_job(db, org_id, key)
        if winner is None:
            raise
        return FanOutResult(org_id=org_id, action="duplicate_prevented", plan=plan, job=winner)

    logger.info(
        f"Created batch job {job.id} for tenant {org_id} with {job.total_tasks} tasks",
        extra={
            "org_id": str(org_id),
            "job_id": str(job.id),
            "source": source,
            "correlation_id": correlation_id,
        },
    )
    return FanOutResult(org_id=org_id, action="created", plan=plan, job=job, replaced_job_ids=replaced)


async def preflight_tenant(db: AsyncSession, org_id: UUID) -> FanOutResult:
    """Quota resolution and skip-reason computation without writing rows."""
    org = await db.get(Organization, org_id)
    if org is None:
        raise ValueError(f"Organization not found: {org_id}")
    plan = await plan_tenant(db, org)
    action = "skipped" if plan.skip_reason else "preflight"
    return FanOutResult(org_id=org_id, action=action, plan=plan)


async def mark_task_running(db: AsyncSession, task_id: UUID, now: datetime | None = None) -> bool:
    """
    Move a task from pending to running.

    Returns:
        False if the task was not pending (taken by someone else or terminal)
    """
    now = now or utcnow()
    result = await db.execute(
        update(BatchTask)
        .where(BatchTask.id == task_id, BatchTask.status == TaskStatus.PENDING.value)
        .values(status=TaskStatus.RUNNING.value, started_at=now, attempts=BatchTask.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def record_task_result(
    db: AsyncSession,
    job_id: UUID,
    task_id: UUID,
    outcome: ExecutionResult,
    now: datetime | None = None,
) -> bool:
    """
    Write a task's terminal outcome and roll it into the job counters.

    The task write only applies to a non-terminal task, so an outcome is counted
    at most once. Counters move through single UPDATE increments, and the job
    flips to completed in the same transaction once every task is accounted for.

    Args:
        db: Database session
        job_id: Parent job ID
        task_id: Task ID
        outcome: Provider result
        now: Current time

    Returns:
        True if this call recorded the outcome
    """
    now = now or utcnow()
    status = TaskStatus.SUCCESS if outcome.success else TaskStatus.ERROR

    task_update = await db.execute(
        update(BatchTask)
        .where(
            BatchTask.id == task_id,
            BatchTask.job_id == job_id,
            BatchTask.status.in_([TaskStatus.PENDING.value, TaskStatus.RUNNING.value]),
        )
        .values(
            status=status.value,
            completed_at=now,
            token_in=outcome.token_in,
            token_out=outcome.token_out,
            model=outcome.model,
            result=outcome.payload(),
            error_message=outcome.error,
        )
        .execution_options(synchronize_session=False)
    )
    if task_update.rowcount != 1:
        await db.rollback()
        return False

    counter = BatchJob.completed_tasks if outcome.success else BatchJob.failed_tasks
    await db.execute(
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.completed_tasks + BatchJob.failed_tasks < BatchJob.total_tasks,
        )
        .values({counter: counter + 1})
        .execution_options(synchronize_session=False)
    )
    finished = await db.execute(
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.status.in_(ACTIVE_JOB_STATUSES),
            BatchJob.completed_tasks + BatchJob.failed_tasks >= BatchJob.total_tasks,
        )
        .values(**terminal_job_values(JobStatus.COMPLETED, now))
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if finished.rowcount == 1:
        logger.info(f"Batch job {job_id} completed", extra={"job_id": str(job_id)})
    return True


async def get_job(db: AsyncSession, job_id: UUID) -> BatchJob:
    """Fresh read of a job. Raises JobNotFoundError."""
    result = await db.execute(
        select(BatchJob).where(BatchJob.id == job_id).execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def request_cancellation(db: AsyncSession, job_id: UUID) -> BatchJob:
    """
    Flag a job for cancellation. Workers stop issuing new tasks once they see it.

    Raises:
        JobNotFoundError: if the job does not exist
    """
    await db.execute(
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.status.in_(ACTIVE_JOB_STATUSES))
        .values(cancellation_requested=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    job = await get_job(db, job_id)
    logger.info(f"Cancellation requested for batch job {job_id}", extra={"job_id": str(job_id)})
    return job


async def task_status_counts(db: AsyncSession, job_id: UUID) -> dict[str, int]:
    result = await db.execute(
        select(BatchTask.status, func.count())
        .where(BatchTask.job_id == job_id)
        .group_by(BatchTask.status)
    )
    counts = {status.value: 0 for status in TaskStatus}
    for status, count in result.all():
        counts[status] = count
    return counts


async def finalize_job(
    db: AsyncSession,
    job_id: UUID,
    status: JobStatus,
    now: datetime | None = None,
    *,
    close_open_tasks: TaskStatus | None = None,
    sync_counters: bool = True,
    error: str | None = None,
) -> bool:
    """
    Move an active job into a terminal status.

    Args:
        db: Database session
        job_id: Job ID
        status: completed, failed or cancelled
        now: Current time
        close_open_tasks: Terminal status for tasks still pending/running
        sync_counters: Recompute completed/failed counters from task rows
        error: Error text stored on the job (and on closed tasks)

    Returns:
        True if this call finalized the job
    """
    now = now or utcnow()
    if close_open_tasks is not None:
        await db.execute(
            update(BatchTask)
            .where(
                BatchTask.job_id == job_id,
                BatchTask.status.in_([TaskStatus.PENDING.value, TaskStatus.RUNNING.value]),
            )
            .values(status=close_open_tasks.value, completed_at=now, error_message=error)
            .execution_options(synchronize_session=False)
        )

    values = terminal_job_values(status, now)
    if error:
        values["error_text"] = error
    if sync_counters:
        counts = await task_status_counts(db, job_id)
        values["completed_tasks"] = counts[TaskStatus.SUCCESS.value]
        values["failed_tasks"] = counts[TaskStatus.ERROR.value]

    result = await db.execute(
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.status.in_(ACTIVE_JOB_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount == 1:
        logger.info(
            f"Finalized batch job {job_id} as {status.value}",
            extra={"job_id": str(job_id), "status": status.value},
        )
        return True
    return False
