"""Tests for the daily trigger and the admin bulk trigger."""

from datetime import datetime, timezone
from uuid import UUID

import pytest
from sqlalchemy import func, select

from app.jobs.daily import run_admin_bulk_trigger, run_daily_trigger, run_jobs
from app.jobs.job_manager import get_job
from app.models.batch import BatchJob, JobStatus
from app.models.scheduler import GLOBAL_STATE_ID, SchedulerRun, SchedulerState
from app.models.tenant import PlanTier
from tests.helpers.seed import create_providers, create_tenant

# 09:00 and 01:00 in America/New_York
IN_WINDOW = datetime(2025, 1, 15, 14, 0, tzinfo=timezone.utc)
BEFORE_WINDOW = datetime(2025, 1, 15, 6, 0, tzinfo=timezone.utc)


async def seed(session_factory):
    async with session_factory() as db:
        await create_providers(db, ["openai", "perplexity"])
        await create_tenant(db, prompt_count=3, name="Acme")
        await create_tenant(db, prompt_count=30, tier=PlanTier.FREE, name="Tiny")
        await create_tenant(db, prompt_count=0, name="Empty")


async def count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_outside_window_writes_nothing(session_factory):
    await seed(session_factory)

    outcome = await run_daily_trigger(session_factory, now=BEFORE_WINDOW)

    assert outcome == {"status": "outside-window", "key": "2025-01-15", "result": None}
    assert await count(session_factory, BatchJob) == 0
    assert await count(session_factory, SchedulerRun) == 0


@pytest.mark.asyncio
async def test_daily_trigger_fans_out_every_tenant(session_factory):
    await seed(session_factory)

    outcome = await run_daily_trigger(session_factory, now=IN_WINDOW, correlation_id="corr-daily")

    assert outcome["status"] == "success"
    result = outcome["result"]
    assert result["totalOrgs"] == 3
    assert result["successfulJobs"] == 2
    assert result["skippedOrgs"] == 1
    assert result["failedJobs"] == 0
    assert len(result["jobIds"]) == 2
    by_name = {r["orgName"]: r for r in result["orgResults"]}
    assert by_name["Acme"]["expectedTasks"] == 6
    assert by_name["Tiny"]["expectedTasks"] == 20
    assert by_name["Empty"]["skipReason"] == "No active prompts found"

    async with session_factory() as db:
        state = await db.get(SchedulerState, GLOBAL_STATE_ID)
        run = (await db.execute(select(SchedulerRun))).scalar_one()
        jobs = (await db.execute(select(BatchJob))).scalars().all()
    assert state.last_run_day_key == "2025-01-15"
    assert run.status == "completed"
    assert run.result_json["jobIds"] == result["jobIds"]
    assert all(j.day_key == "2025-01-15" and j.correlation_id == "corr-daily" for j in jobs)


@pytest.mark.asyncio
async def test_second_trigger_same_day_is_rejected(session_factory):
    await seed(session_factory)

    first = await run_daily_trigger(session_factory, now=IN_WINDOW)
    second = await run_daily_trigger(session_factory, now=IN_WINDOW.replace(hour=20))

    assert first["status"] == "success"
    assert second["status"] == "already-ran"
    assert second["result"] is None
    assert await count(session_factory, BatchJob) == 2
    assert await count(session_factory, SchedulerRun) == 1


@pytest.mark.asyncio
async def test_force_skips_window_but_not_claim(session_factory):
    await seed(session_factory)

    forced = await run_daily_trigger(session_factory, now=BEFORE_WINDOW, force=True)
    again = await run_daily_trigger(session_factory, now=BEFORE_WINDOW, force=True)

    assert forced["status"] == "success"
    assert again["status"] == "already-ran"


@pytest.mark.asyncio
async def test_admin_preflight_creates_nothing(session_factory):
    await seed(session_factory)

    outcome = await run_admin_bulk_trigger(session_factory, preflight=True, now=IN_WINDOW)

    assert outcome["success"]
    assert outcome["preflight"]
    assert outcome["jobIds"] == []
    assert outcome["summary"]["totalExpectedTasks"] == 26
    assert outcome["summary"]["providersUsed"] == ["openai", "perplexity"]
    assert await count(session_factory, BatchJob) == 0


@pytest.mark.asyncio
async def test_admin_replace_supersedes_daily_jobs(session_factory):
    await seed(session_factory)
    daily = await run_daily_trigger(session_factory, now=IN_WINDOW)

    outcome = await run_admin_bulk_trigger(session_factory, replace=True, now=IN_WINDOW)

    assert len(outcome["jobIds"]) == 2
    replaced = [j for r in outcome["results"] for j in r["replacedJobIds"]]
    assert sorted(replaced) == sorted(daily["result"]["jobIds"])
    async with session_factory() as db:
        for job_id in daily["result"]["jobIds"]:
            assert (await get_job(db, UUID(job_id))).status == JobStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_admin_trigger_does_not_consume_daily_claim(session_factory):
    await seed(session_factory)
    admin = await run_admin_bulk_trigger(session_factory, now=IN_WINDOW)

    daily = await run_daily_trigger(session_factory, now=IN_WINDOW)

    assert len(admin["jobIds"]) == 2
    assert daily["status"] == "success"
    assert daily["result"]["successfulJobs"] == 2
    assert daily["result"]["jobIds"] == []
    assert {r["action"] for r in daily["result"]["orgResults"]} == {"duplicate_prevented", "skipped"}


@pytest.mark.asyncio
async def test_run_jobs_processes_created_jobs(session_factory, executors):
    await seed(session_factory)
    daily = await run_daily_trigger(session_factory, now=IN_WINDOW)

    results = await run_jobs(session_factory, daily["result"]["jobIds"], executors)

    assert [r["action"] for r in results] == ["processed", "processed"]
    assert all(r["status"] == JobStatus.COMPLETED.value for r in results)
