"""Coverage auditor: org-level and prompt-level completion for a day, with optional repair."""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.types import utcnow
from app.jobs.clock import day_bounds, day_key as compute_day_key
from app.jobs.job_manager import create_jobs_for_tenant
from app.jobs.registry import create_scheduler_run, finish_scheduler_run
from app.models.batch import ACTIVE_JOB_STATUSES, BatchJob, BatchTask, JobStatus, TaskStatus
from app.models.tenant import Organization, Prompt

logger = logging.getLogger(__name__)

REPAIR_SOURCE = "coverage-repair"


def coverage_percent(found: int, expected: int) -> int:
    """Rounded percentage; nothing expected counts as full coverage."""
    if expected == 0:
        return 100
    return round(found * 100 / expected)


async def _expected_prompts(db: AsyncSession) -> list[tuple[UUID, UUID]]:
    result = await db.execute(
        select(Prompt.id, Prompt.org_id)
        .join(Organization, Organization.id == Prompt.org_id)
        .where(Prompt.active.is_(True), Organization.is_active.is_(True))
    )
    return [(prompt_id, org_id) for prompt_id, org_id in result.all()]


async def _prompts_run_in(db: AsyncSession, start: datetime, end: datetime) -> set[UUID]:
    result = await db.execute(
        select(BatchTask.prompt_id)
        .where(
            BatchTask.status == TaskStatus.SUCCESS.value,
            BatchTask.completed_at >= start,
            BatchTask.completed_at < end,
        )
        .distinct()
    )
    return set(result.scalars().all())


async def _orgs_completed_on(db: AsyncSession, key: str) -> set[UUID]:
    result = await db.execute(
        select(BatchJob.org_id)
        .where(BatchJob.day_key == key, BatchJob.status == JobStatus.COMPLETED.value)
        .distinct()
    )
    return set(result.scalars().all())


async def _job_metrics(db: AsyncSession, key: str) -> dict[str, int]:
    row = (
        await db.execute(
            select(
                func.count(BatchJob.id),
                func.coalesce(func.sum(BatchJob.total_tasks), 0),
                func.coalesce(func.sum(BatchJob.completed_tasks), 0),
                func.coalesce(func.sum(BatchJob.failed_tasks), 0),
            ).where(BatchJob.day_key == key)
        )
    ).one()
    completed_jobs = (
        await db.execute(
            select(func.count(BatchJob.id)).where(
                BatchJob.day_key == key, BatchJob.status == JobStatus.COMPLETED.value
            )
        )
    ).scalar_one()
    return {
        "totalJobs": row[0],
        "completedJobs": completed_jobs,
        "totalTasks": int(row[1]),
        "completedTasks": int(row[2]),
        "failedTasks": int(row[3]),
    }


async def has_recent_repair(db: AsyncSession, org_id: UUID, key: str, now: datetime) -> bool:
    """A repair job for this tenant-day is in flight or finished within the dedup window."""
    recent = now - timedelta(minutes=settings.REPAIR_DEDUP_MINUTES)
    result = await db.execute(
        select(BatchJob.id)
        .where(
            BatchJob.org_id == org_id,
            BatchJob.day_key == key,
            BatchJob.source == REPAIR_SOURCE,
            or_(
                BatchJob.status.in_(ACTIVE_JOB_STATUSES),
                and_(BatchJob.status == JobStatus.COMPLETED.value, BatchJob.completed_at >= recent),
            ),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def run_coverage_audit(
    session_factory: async_sessionmaker[AsyncSession],
    repair: bool = False,
    now: datetime | None = None,
    correlation_id: str | None = None,
    trigger_source: str = "cron",
) -> dict[str, Any]:
    """
    Audit today's coverage and optionally create repair jobs for missing tenants.

    Args:
        session_factory: Session factory
        repair: Create repair jobs when coverage is below threshold
        now: Current time
        correlation_id: Stamped on repair jobs
        trigger_source: cron, admin, cli

    Returns:
        Audit result with promptCoverage, orgCoverage, metrics, healing and summary
    """
    now = now or utcnow()
    key = compute_day_key(now)
    start, end = day_bounds(key)
    threshold = settings.COVERAGE_THRESHOLD_PERCENT

    async with session_factory() as db:
        run = await create_scheduler_run(db, "coverage-audit", key, trigger_source)
    correlation_id = correlation_id or f"coverage-{run.id}"

    try:
        async with session_factory() as db:
            expected = await _expected_prompts(db)
            ran = await _prompts_run_in(db, start, end)
            completed_orgs = await _orgs_completed_on(db, key)
            metrics = await _job_metrics(db, key)
    except Exception as e:
        logger.error(f"Coverage audit aborted for {key}", extra={"day_key": key, "run_id": str(run.id)}, exc_info=True)
        async with session_factory() as db:
            await finish_scheduler_run(db, run.id, "failed", error=str(e))
        raise

    expected_ids = {prompt_id for prompt_id, _ in expected}
    run_today = expected_ids & ran
    missing_by_org = Counter(str(org_id) for prompt_id, org_id in expected if prompt_id not in ran)
    prompt_percent = coverage_percent(len(run_today), len(expected_ids))

    expected_orgs = {org_id for _, org_id in expected}
    found_orgs = expected_orgs & completed_orgs
    missing_orgs = sorted(expected_orgs - completed_orgs, key=str)
    org_percent = coverage_percent(len(found_orgs), len(expected_orgs))
    # Judged on exact counts; org_percent is rounded for display
    orgs_healthy = len(found_orgs) * 100 >= threshold * len(expected_orgs)

    healthy = prompt_percent >= threshold and orgs_healthy
    if not healthy:
        logger.warning(
            f"Coverage below {threshold}% for {key}: prompts {prompt_percent}%, orgs {org_percent}%",
            extra={
                "day_key": key,
                "missing_orgs": len(missing_orgs),
                "missing_prompts": len(expected_ids) - len(run_today),
                "correlation_id": correlation_id,
            },
        )

    healing: dict[str, Any] = {"attempted": 0, "results": [], "jobIds": []}
    if repair and (missing_orgs or prompt_percent < threshold):
        for org_id in missing_orgs:
            entry: dict[str, Any] = {"orgId": str(org_id)}
            try:
                async with session_factory() as db:
                    if await has_recent_repair(db, org_id, key, now):
                        entry.update(action="skipped", reason="Repair already in flight")
                    else:
                        healing["attempted"] += 1
                        fan_out = await create_jobs_for_tenant(
                            db,
                            org_id,
                            correlation_id,
                            replace=False,
                            source=REPAIR_SOURCE,
                            now=now,
                            extra_metadata={"auditRunId": str(run.id)},
                        )
                        entry.update(fan_out.to_dict())
                        if fan_out.action == "created":
                            healing["jobIds"].append(str(fan_out.job.id))
            except Exception as e:
                logger.error(
                    f"Coverage repair failed for tenant {org_id}",
                    extra={"org_id": str(org_id), "correlation_id": correlation_id},
                    exc_info=True,
                )
                entry.update(action="error", success=False, error=str(e))
            healing["results"].append(entry)

    result = {
        "dayKey": key,
        "promptCoverage": {
            "expectedActivePrompts": len(expected_ids),
            "promptsRunToday": len(run_today),
            "coveragePercent": prompt_percent,
            "missingPromptsCount": len(expected_ids) - len(run_today),
            "missingPromptsByOrg": dict(missing_by_org),
        },
        "orgCoverage": {
            "expected": len(expected_orgs),
            "found": len(found_orgs),
            "missing": len(missing_orgs),
            "coveragePercent": org_percent,
            "missingOrgIds": [str(o) for o in missing_orgs],
        },
        "metrics": metrics,
        "healing": healing,
        "summary": {
            "thresholdPercent": threshold,
            "promptCoveragePercent": prompt_percent,
            "orgCoveragePercent": org_percent,
            "repairRequested": repair,
            "overallHealth": "HEALTHY" if healthy else "NEEDS_ATTENTION",
        },
    }

    async with session_factory() as db:
        await finish_scheduler_run(db, run.id, "completed", result)

    logger.info(
        f"Coverage audit for {key}: {result['summary']['overallHealth']}",
        extra={"day_key": key, "run_id": str(run.id), "healing_attempted": healing["attempted"]},
    )
    return result
