"""Tests for the stuck-job reconciler."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from app.db.types import utcnow
from app.jobs import reconciler
from app.jobs.job_manager import create_jobs_for_tenant, get_job
from app.jobs.reconciler import (
    collect_due_jobs,
    is_really_stuck,
    resolve_stuck_job,
    resume_backoff,
    resume_due_jobs,
    sweep_stuck_jobs,
)
from app.jobs.worker import claim_job
from app.models.batch import BatchJob, JobStatus, TaskStatus
from app.models.scheduler import SchedulerRun
from tests.helpers.seed import (
    FakeExecutor,
    complete_tasks,
    create_providers,
    create_tenant,
    fake_registry,
    get_tasks,
    set_job_fields,
    set_task_fields,
)


async def running_job(session_factory, prompts: int = 5, runner_id: str = "runner-dead"):
    """A claimed job with 2 tasks per prompt."""
    async with session_factory() as db:
        await create_providers(db, ["openai", "perplexity"])
        org = await create_tenant(db, prompt_count=prompts)
        job = (await create_jobs_for_tenant(db, org.id)).job
        assert await claim_job(db, job.id, runner_id)
        return job


def make_job(**kwargs) -> BatchJob:
    values = {
        "status": JobStatus.PROCESSING.value,
        "total_tasks": 10,
        "completed_tasks": 0,
        "failed_tasks": 0,
    }
    values.update(kwargs)
    return BatchJob(**values)


class TestStuckPredicate:
    def test_stale_heartbeat_is_stuck(self):
        now = utcnow()
        job = make_job(last_heartbeat=now - timedelta(minutes=5), started_at=now, completed_tasks=3)
        assert is_really_stuck(job, now, heartbeat_timeout_seconds=120, grace_seconds=180)

    def test_fresh_heartbeat_with_progress_is_alive(self):
        now = utcnow()
        job = make_job(
            last_heartbeat=now - timedelta(seconds=30),
            started_at=now - timedelta(hours=1),
            completed_tasks=4,
        )
        assert not is_really_stuck(job, now, heartbeat_timeout_seconds=120, grace_seconds=180)

    def test_no_progress_past_grace_is_stuck(self):
        now = utcnow()
        job = make_job(last_heartbeat=now, started_at=now - timedelta(minutes=4))
        assert is_really_stuck(job, now, heartbeat_timeout_seconds=120, grace_seconds=180)

    def test_never_started_ages_from_creation(self):
        now = utcnow()
        fresh = make_job(status=JobStatus.PENDING.value, created_at=now - timedelta(minutes=1))
        old = make_job(status=JobStatus.PENDING.value, created_at=now - timedelta(minutes=10))
        assert not is_really_stuck(fresh, now, grace_seconds=180)
        assert is_really_stuck(old, now, grace_seconds=180)

    def test_terminal_job_is_never_stuck(self):
        now = utcnow()
        job = make_job(status=JobStatus.COMPLETED.value, last_heartbeat=now - timedelta(days=1))
        assert not is_really_stuck(job, now)


def test_resume_backoff_doubles_and_caps():
    assert resume_backoff(1) == timedelta(seconds=60)
    assert resume_backoff(2) == timedelta(seconds=120)
    assert resume_backoff(3) == timedelta(seconds=240)
    assert resume_backoff(20) == timedelta(seconds=3600)


@pytest.mark.asyncio
async def test_fully_counted_job_with_dead_heartbeat_is_finalized(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await complete_tasks(db, job, succeeded=10)
        await set_job_fields(db, job.id, last_heartbeat=now - timedelta(minutes=5))

    summary = await sweep_stuck_jobs(session_factory, now=now)

    assert summary.stuck_found == 1
    assert summary.finalized == 1
    async with session_factory() as db:
        job = await get_job(db, job.id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.completed_at is not None
    assert job.active_key is None


@pytest.mark.asyncio
async def test_partial_job_is_parked_for_resume(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await complete_tasks(db, job, succeeded=3, failed=1)
        tasks = await get_tasks(db, job.id)
        await set_task_fields(
            db, [tasks[4].id], status=TaskStatus.RUNNING.value, started_at=now - timedelta(minutes=20)
        )
        await set_task_fields(db, [tasks[5].id], status=TaskStatus.RUNNING.value, started_at=now)
        await set_job_fields(db, job.id, last_heartbeat=now - timedelta(minutes=5))

    async with session_factory() as db:
        result = await resolve_stuck_job(db, job.id, now)

    assert result.action == "resumed"
    assert result.reset_tasks == 1
    async with session_factory() as db:
        job = await get_job(db, job.id)
        tasks = await get_tasks(db, job.id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.runner_id is None
    assert job.resume_attempts == 1
    assert job.next_resume_at == now + timedelta(seconds=60)
    assert (job.completed_tasks, job.failed_tasks) == (3, 1)
    assert [t.status for t in tasks[:6]] == [
        TaskStatus.SUCCESS.value,
        TaskStatus.SUCCESS.value,
        TaskStatus.SUCCESS.value,
        TaskStatus.ERROR.value,
        TaskStatus.PENDING.value,
        TaskStatus.RUNNING.value,
    ]


@pytest.mark.asyncio
async def test_parked_job_is_not_swept_again(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await complete_tasks(db, job, succeeded=2)
        await set_job_fields(db, job.id, last_heartbeat=now - timedelta(minutes=5))

    first = await sweep_stuck_jobs(session_factory, now=now)
    second = await sweep_stuck_jobs(session_factory, now=now + timedelta(minutes=10))

    assert first.resumed == 1
    assert second.stuck_found == 0
    async with session_factory() as db:
        assert (await get_job(db, job.id)).resume_attempts == 1


@pytest.mark.asyncio
async def test_exhausted_resume_budget_fails_job(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await complete_tasks(db, job, succeeded=4)
        await set_job_fields(db, job.id, last_heartbeat=now - timedelta(minutes=5), resume_attempts=5)

    summary = await sweep_stuck_jobs(session_factory, now=now)

    assert summary.failed == 1
    async with session_factory() as db:
        job = await get_job(db, job.id)
        tasks = await get_tasks(db, job.id)
    assert job.status == JobStatus.FAILED.value
    assert "resume attempts" in job.error_text
    assert sum(1 for t in tasks if t.status == TaskStatus.SUCCESS.value) == 4
    assert sum(1 for t in tasks if t.status == TaskStatus.ERROR.value) == 6


@pytest.mark.asyncio
async def test_cancellation_is_honoured(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await complete_tasks(db, job, succeeded=1)
        await set_job_fields(
            db, job.id, cancellation_requested=True, last_heartbeat=now - timedelta(minutes=5)
        )

    summary = await sweep_stuck_jobs(session_factory, now=now)

    assert summary.cancelled == 1
    async with session_factory() as db:
        job = await get_job(db, job.id)
        tasks = await get_tasks(db, job.id)
    assert job.status == JobStatus.CANCELLED.value
    assert sum(1 for t in tasks if t.status == TaskStatus.CANCELLED.value) == 9


@pytest.mark.asyncio
async def test_healthy_job_is_left_alone(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await complete_tasks(db, job, succeeded=2)

    summary = await sweep_stuck_jobs(session_factory, now=now)

    assert summary.stuck_found == 0
    async with session_factory() as db:
        job = await get_job(db, job.id)
    assert job.runner_id == "runner-dead"
    assert job.resume_attempts == 0


@pytest.mark.asyncio
async def test_sweep_records_a_run(session_factory):
    summary = await sweep_stuck_jobs(session_factory, trigger_source="admin")

    assert summary.to_dict()["totalStuckFound"] == 0
    async with session_factory() as db:
        runs = (await db.execute(select(SchedulerRun))).scalars().all()
    assert len(runs) == 1
    assert runs[0].function_name == "reconcile"
    assert runs[0].status == "completed"
    assert runs[0].trigger_source == "admin"


@pytest.mark.asyncio
async def test_resume_due_jobs_finishes_parked_work(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await complete_tasks(db, job, succeeded=6)
        await set_job_fields(db, job.id, last_heartbeat=now - timedelta(minutes=5))
        await resolve_stuck_job(db, job.id, now)

    openai, perplexity = FakeExecutor("openai"), FakeExecutor("perplexity")
    registry = fake_registry(openai, perplexity)

    early = await resume_due_jobs(session_factory, registry, now=now + timedelta(seconds=30))
    assert early["dueJobs"] == 0

    outcome = await resume_due_jobs(session_factory, registry, now=now + timedelta(minutes=2))

    assert outcome["dueJobs"] == 1
    assert outcome["resumedJobs"] == 1
    assert len(openai.calls) + len(perplexity.calls) == 4
    async with session_factory() as db:
        job = await get_job(db, job.id)
    assert job.status == JobStatus.COMPLETED.value
    assert (job.completed_tasks, job.failed_tasks) == (10, 0)
    assert job.next_resume_at is None


@pytest.mark.asyncio
async def test_collect_due_jobs_starts_no_work(session_factory):
    now = utcnow()
    job = await running_job(session_factory)
    async with session_factory() as db:
        await set_job_fields(db, job.id, last_heartbeat=now - timedelta(minutes=5))
        await resolve_stuck_job(db, job.id, now)

    outcome = await collect_due_jobs(session_factory, now=now + timedelta(minutes=2))

    assert outcome == {"dueJobs": 1, "jobIds": [str(job.id)]}
    async with session_factory() as db:
        job = await get_job(db, job.id)
        runs = (await db.execute(select(SchedulerRun))).scalars().all()
    assert job.runner_id is None
    assert job.status == JobStatus.PROCESSING.value
    assert [r.function_name for r in runs] == ["resume-due"]
    assert runs[0].status == "completed"
    assert runs[0].result_json == outcome


@pytest.mark.asyncio
async def test_sweep_query_failure_marks_run_failed(session_factory, monkeypatch):
    async def broken(db, now):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(reconciler, "find_stuck_candidates", broken)

    with pytest.raises(RuntimeError):
        await sweep_stuck_jobs(session_factory)

    async with session_factory() as db:
        runs = (await db.execute(select(SchedulerRun))).scalars().all()
    assert len(runs) == 1
    assert runs[0].function_name == "reconcile"
    assert runs[0].status == "failed"
    assert runs[0].error_text == "store unavailable"


@pytest.mark.asyncio
async def test_due_selection_failure_marks_run_failed(session_factory, monkeypatch):
    async def broken(db, now, limit=None):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(reconciler, "find_due_jobs", broken)

    with pytest.raises(RuntimeError):
        await collect_due_jobs(session_factory)

    async with session_factory() as db:
        run = (await db.execute(select(SchedulerRun))).scalar_one()
    assert run.function_name == "resume-due"
    assert run.status == "failed"
    assert run.completed_at is not None
