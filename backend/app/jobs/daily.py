"""Daily trigger and admin bulk trigger orchestration."""

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.types import utcnow
from app.jobs.claim import try_claim
from app.jobs.clock import day_key as compute_day_key
from app.jobs.clock import is_window_open
from app.jobs.job_manager import (
    FanOutResult,
    create_jobs_for_tenant,
    list_active_organizations,
    preflight_tenant,
)
from app.jobs.registry import create_scheduler_run, finish_scheduler_run
from app.jobs.worker import process_job
from app.services.providers.service import ExecutorRegistry

logger = logging.getLogger(__name__)


async def _fan_out_all(
    session_factory: async_sessionmaker[AsyncSession],
    correlation_id: str,
    *,
    replace: bool,
    preflight: bool,
    source: str,
    now: datetime,
) -> list[FanOutResult]:
    """Run fan-out for every active tenant, isolating per-tenant failures."""
    async with session_factory() as db:
        org_ids = [org.id for org in await list_active_organizations(db)]

    results: list[FanOutResult] = []
    for org_id in org_ids:
        try:
            async with session_factory() as db:
                if preflight:
                    results.append(await preflight_tenant(db, org_id))
                else:
                    results.append(
                        await create_jobs_for_tenant(
                            db, org_id, correlation_id, replace=replace, source=source, now=now
                        )
                    )
        except Exception as e:
            logger.error(
                f"Fan-out failed for tenant {org_id}",
                extra={"org_id": str(org_id), "correlation_id": correlation_id},
                exc_info=True,
            )
            results.append(FanOutResult(org_id=org_id, action="error", error=str(e)))
    return results


def summarize_fan_out(results: list[FanOutResult]) -> dict[str, Any]:
    providers_used: set[str] = set()
    for r in results:
        if r.plan and not r.plan.skip_reason:
            providers_used.update(r.plan.providers)
    return {
        "totalOrgs": len(results),
        "totalPrompts": sum(len(r.plan.prompt_ids) for r in results if r.plan and not r.plan.skip_reason),
        "totalExpectedTasks": sum(r.plan.expected_tasks for r in results if r.plan and not r.plan.skip_reason),
        "providersUsed": sorted(providers_used),
        "successfulJobs": sum(1 for r in results if r.action in ("created", "duplicate_prevented")),
        "skippedOrgs": sum(1 for r in results if r.action == "skipped"),
        "failedOrgs": sum(1 for r in results if r.action == "error"),
    }


def created_job_ids(results: Iterable[FanOutResult]) -> list[UUID]:
    return [r.job.id for r in results if r.action == "created" and r.job is not None]


async def run_daily_trigger(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
    force: bool = False,
    correlation_id: str | None = None,
    trigger_source: str = "cron",
) -> dict[str, Any]:
    """
    Window gate, daily claim, then fan-out for every tenant.

    Gate rejections (outside-window, already-ran, locked) write nothing. `force`
    skips the window check but never the claim. Created jobs are returned for the
    caller to dispatch; this function never runs provider calls.

    Returns:
        {status, key, result}
    """
    now = now or utcnow()
    key = compute_day_key(now)

    if not force and not is_window_open(now):
        logger.info(f"Daily trigger outside window for {key}", extra={"day_key": key})
        return {"status": "outside-window", "key": key, "result": None}

    async with session_factory() as db:
        claim = await try_claim(db, key)
    if not claim.claimed:
        return {"status": claim.outcome, "key": key, "result": None}

    async with session_factory() as db:
        run = await create_scheduler_run(db, "daily-trigger", key, trigger_source)
    correlation_id = correlation_id or f"daily-{key}-{run.id}"

    try:
        results = await _fan_out_all(
            session_factory, correlation_id, replace=False, preflight=False, source="daily-trigger", now=now
        )
    except Exception as e:
        # The claim stands; the reconciler and coverage audit pick up the pieces
        logger.error(f"Daily fan-out aborted for {key}", extra={"day_key": key, "run_id": str(run.id)}, exc_info=True)
        async with session_factory() as db:
            await finish_scheduler_run(db, run.id, "failed", error=str(e))
        raise

    summary = summarize_fan_out(results)
    result = {
        "runId": str(run.id),
        "correlationId": correlation_id,
        "totalOrgs": summary["totalOrgs"],
        "successfulJobs": summary["successfulJobs"],
        "failedJobs": summary["failedOrgs"],
        "skippedOrgs": summary["skippedOrgs"],
        "jobIds": [str(j) for j in created_job_ids(results)],
        "orgResults": [r.to_dict() for r in results],
    }
    async with session_factory() as db:
        await finish_scheduler_run(db, run.id, "completed", result)

    logger.info(
        f"Daily trigger for {key} created {len(result['jobIds'])} jobs",
        extra={"day_key": key, "run_id": str(run.id), "correlation_id": correlation_id},
    )
    return {"status": "success", "key": key, "result": result}


async def run_admin_bulk_trigger(
    session_factory: async_sessionmaker[AsyncSession],
    replace: bool = False,
    preflight: bool = False,
    now: datetime | None = None,
    correlation_id: str | None = None,
    trigger_source: str = "admin",
) -> dict[str, Any]:
    """
    Admin fan-out for every tenant, bypassing the window and the daily claim.

    In preflight mode quotas and skip reasons are computed without creating rows.
    """
    now = now or utcnow()
    key = compute_day_key(now)

    async with session_factory() as db:
        run = await create_scheduler_run(db, "admin-batch-trigger", key, trigger_source)
    correlation_id = correlation_id or f"admin-{run.id}"

    try:
        results = await _fan_out_all(
            session_factory, correlation_id, replace=replace, preflight=preflight, source="admin-trigger", now=now
        )
    except Exception as e:
        logger.error(f"Admin fan-out aborted for {key}", extra={"day_key": key, "run_id": str(run.id)}, exc_info=True)
        async with session_factory() as db:
            await finish_scheduler_run(db, run.id, "failed", error=str(e))
        raise
    outcome = {
        "success": all(r.action != "error" for r in results),
        "runId": str(run.id),
        "correlationId": correlation_id,
        "preflight": preflight,
        "replace": replace,
        "results": [r.to_dict() for r in results],
        "summary": summarize_fan_out(results),
        "jobIds": [str(j) for j in created_job_ids(results)],
    }
    async with session_factory() as db:
        await finish_scheduler_run(db, run.id, "completed", outcome)
    return outcome


async def run_jobs(
    session_factory: async_sessionmaker[AsyncSession],
    job_ids: Iterable[UUID | str],
    executors: ExecutorRegistry,
    max_parallel_jobs: int = 4,
) -> list[dict[str, Any]]:
    """Process several jobs with bounded parallelism; one job failing does not stop the rest."""
    semaphore = asyncio.Semaphore(max_parallel_jobs)

    async def run(job_id: UUID) -> dict[str, Any]:
        async with semaphore:
            try:
                return (await process_job(session_factory, job_id, executors)).to_dict()
            except Exception as e:
                logger.error(f"Worker failed for job {job_id}", extra={"job_id": str(job_id)}, exc_info=True)
                return {"jobId": str(job_id), "action": "error", "error": str(e)}

    ids = [j if isinstance(j, UUID) else UUID(j) for j in job_ids]
    return list(await asyncio.gather(*(run(j) for j in ids)))
