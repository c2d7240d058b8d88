"""Tests for fan-out and task completion accounting."""

import asyncio
import uuid

import pytest
from sqlalchemy import func, select

from app.core.app_exceptions import JobNotFoundError
from app.jobs.job_manager import (
    SKIP_INACTIVE,
    SKIP_NO_PROMPTS,
    SKIP_NO_PROVIDERS,
    create_jobs_for_tenant,
    get_job,
    mark_task_running,
    preflight_tenant,
    record_task_result,
    request_cancellation,
)
from app.models.batch import BatchJob, BatchTask, JobStatus, TaskStatus
from app.models.tenant import PlanTier
from app.services.providers.base import ExecutionResult
from tests.helpers.seed import create_providers, create_tenant, get_tasks

OK = ExecutionResult(success=True, response_text="answer", model="m", token_in=3, token_out=7)
FAIL = ExecutionResult.failure("boom")


async def count_jobs(db, org_id) -> int:
    return (await db.execute(select(func.count(BatchJob.id)).where(BatchJob.org_id == org_id))).scalar_one()


@pytest.mark.asyncio
async def test_free_tier_fan_out_is_quota_clamped(db_session):
    await create_providers(db_session, ["openai", "perplexity", "gemini"])
    org = await create_tenant(db_session, prompt_count=30, tier=PlanTier.FREE)

    result = await create_jobs_for_tenant(db_session, org.id, "corr-1")

    assert result.action == "created"
    assert result.job.total_tasks == 20
    tasks = await get_tasks(db_session, result.job.id)
    assert len(tasks) == 20
    assert {t.provider for t in tasks} == {"openai", "perplexity"}
    assert len({t.prompt_id for t in tasks}) == 10
    assert all(t.status == TaskStatus.PENDING.value for t in tasks)


@pytest.mark.asyncio
async def test_pro_tier_job_completes_with_partial_failures(db_session):
    await create_providers(db_session, ["openai", "perplexity"])
    org = await create_tenant(db_session, prompt_count=5, tier=PlanTier.PRO)

    job = (await create_jobs_for_tenant(db_session, org.id, "corr-2")).job
    assert job.total_tasks == 10

    tasks = await get_tasks(db_session, job.id)
    for i, task in enumerate(tasks):
        assert await mark_task_running(db_session, task.id)
        assert await record_task_result(db_session, job.id, task.id, OK if i < 7 else FAIL)

    job = await get_job(db_session, job.id)
    assert job.status == JobStatus.COMPLETED.value
    assert (job.completed_tasks, job.failed_tasks) == (7, 3)
    assert job.completed_at is not None
    assert job.active_key is None


@pytest.mark.asyncio
async def test_fan_out_is_idempotent_without_replace(db_session):
    await create_providers(db_session, ["openai"])
    org = await create_tenant(db_session, prompt_count=3)

    first = await create_jobs_for_tenant(db_session, org.id)
    second = await create_jobs_for_tenant(db_session, org.id)

    assert first.action == "created"
    assert second.action == "duplicate_prevented"
    assert second.job.id == first.job.id
    assert await count_jobs(db_session, org.id) == 1


@pytest.mark.asyncio
async def test_concurrent_fan_out_creates_one_job(session_factory):
    async with session_factory() as db:
        await create_providers(db, ["openai", "gemini"])
        org = await create_tenant(db, prompt_count=4)

    async def fan_out():
        async with session_factory() as db:
            return await create_jobs_for_tenant(db, org.id)

    results = await asyncio.gather(*(fan_out() for _ in range(5)))

    assert sum(1 for r in results if r.action == "created") == 1
    assert len({r.job.id for r in results}) == 1
    async with session_factory() as db:
        assert await count_jobs(db, org.id) == 1


@pytest.mark.asyncio
async def test_replace_cancels_incomplete_job(db_session):
    await create_providers(db_session, ["openai"])
    org = await create_tenant(db_session, prompt_count=2)

    old = (await create_jobs_for_tenant(db_session, org.id)).job
    result = await create_jobs_for_tenant(db_session, org.id, replace=True)

    assert result.action == "created"
    assert result.replaced_job_ids == [old.id]
    old = await get_job(db_session, old.id)
    assert old.status == JobStatus.CANCELLED.value
    assert old.cancellation_requested
    assert all(t.status == TaskStatus.CANCELLED.value for t in await get_tasks(db_session, old.id))
    assert result.job.job_metadata["replaces"] == [str(old.id)]


@pytest.mark.asyncio
async def test_completed_job_does_not_block_new_job(db_session):
    await create_providers(db_session, ["openai"])
    org = await create_tenant(db_session, prompt_count=1)

    job = (await create_jobs_for_tenant(db_session, org.id)).job
    task = (await get_tasks(db_session, job.id))[0]
    await record_task_result(db_session, job.id, task.id, OK)

    again = await create_jobs_for_tenant(db_session, org.id, source="coverage-repair")
    assert again.action == "created"
    assert again.job.id != job.id
    assert again.job.job_metadata["source"] == "coverage-repair"


@pytest.mark.asyncio
async def test_skip_reasons(db_session):
    no_prompts = await create_tenant(db_session, prompt_count=0)
    result = await create_jobs_for_tenant(db_session, no_prompts.id)
    assert result.action == "skipped"
    assert result.plan.skip_reason == SKIP_NO_PROMPTS

    with_prompts = await create_tenant(db_session, prompt_count=2)
    result = await create_jobs_for_tenant(db_session, with_prompts.id)
    assert result.plan.skip_reason == SKIP_NO_PROVIDERS

    await create_providers(db_session, ["openai"])
    inactive = await create_tenant(db_session, prompt_count=2, is_active=False)
    result = await create_jobs_for_tenant(db_session, inactive.id)
    assert result.plan.skip_reason == SKIP_INACTIVE
    assert await count_jobs(db_session, inactive.id) == 0


@pytest.mark.asyncio
async def test_preflight_writes_nothing(db_session):
    await create_providers(db_session, ["openai", "perplexity", "gemini"])
    org = await create_tenant(db_session, prompt_count=60, tier=PlanTier.PRO)

    result = await preflight_tenant(db_session, org.id)

    assert result.action == "preflight"
    summary = result.to_dict()
    assert summary["expectedTasks"] == 150
    assert summary["promptCount"] == 50
    assert summary["availableProviders"] == ["openai", "perplexity", "gemini"]
    assert await count_jobs(db_session, org.id) == 0


@pytest.mark.asyncio
async def test_disabled_providers_are_excluded(db_session):
    await create_providers(db_session, ["openai"])
    await create_providers(db_session, ["gemini"], enabled=False)
    org = await create_tenant(db_session, prompt_count=2)

    job = (await create_jobs_for_tenant(db_session, org.id)).job
    assert {t.provider for t in await get_tasks(db_session, job.id)} == {"openai"}


@pytest.mark.asyncio
async def test_result_is_counted_once(db_session):
    await create_providers(db_session, ["openai"])
    org = await create_tenant(db_session, prompt_count=2)
    job = (await create_jobs_for_tenant(db_session, org.id)).job
    task = (await get_tasks(db_session, job.id))[0]

    assert await record_task_result(db_session, job.id, task.id, OK)
    assert not await record_task_result(db_session, job.id, task.id, FAIL)

    job = await get_job(db_session, job.id)
    assert (job.completed_tasks, job.failed_tasks) == (1, 0)
    assert job.status == JobStatus.PENDING.value
    task = (await get_tasks(db_session, job.id))[0]
    assert task.token_in == 3 and task.token_out == 7
    assert task.result["response_text"] == "answer"


@pytest.mark.asyncio
async def test_hundred_concurrent_completions_lose_no_updates(session_factory):
    async with session_factory() as db:
        await create_providers(db, ["openai", "perplexity"])
        org = await create_tenant(db, prompt_count=50, tier=PlanTier.PRO)
        job = (await create_jobs_for_tenant(db, org.id)).job
        tasks = await get_tasks(db, job.id)
    assert len(tasks) == 100

    async def complete(index: int, task: BatchTask):
        async with session_factory() as db:
            await mark_task_running(db, task.id)
            return await record_task_result(db, job.id, task.id, FAIL if index % 4 == 0 else OK)

    results = await asyncio.gather(*(complete(i, t) for i, t in enumerate(tasks)))

    assert all(results)
    async with session_factory() as db:
        job = await get_job(db, job.id)
    assert job.completed_tasks + job.failed_tasks == job.total_tasks == 100
    assert job.failed_tasks == 25
    assert job.status == JobStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_request_cancellation(db_session):
    await create_providers(db_session, ["openai"])
    org = await create_tenant(db_session, prompt_count=1)
    job = (await create_jobs_for_tenant(db_session, org.id)).job

    job = await request_cancellation(db_session, job.id)
    assert job.cancellation_requested

    with pytest.raises(JobNotFoundError):
        await request_cancellation(db_session, uuid.uuid4())
