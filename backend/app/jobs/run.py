"""CLI entry point for scheduler operations."""

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable
from uuid import UUID

import click
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.logging import setup_logging
from app.db.base import Base, import_models
from app.db.engine import create_db_engine
from app.jobs.coverage import run_coverage_audit
from app.jobs.daily import run_daily_trigger, run_jobs
from app.jobs.reconciler import resume_due_jobs, sweep_stuck_jobs
from app.jobs.worker import process_job
from app.services.providers.service import build_executor_registry

logger = logging.getLogger(__name__)


def _run(operation: Callable[[async_sessionmaker[AsyncSession]], Awaitable[Any]]) -> None:
    """Run an async operation against a fresh engine and print its JSON result."""

    async def run_async() -> Any:
        engine = create_db_engine(settings.DATABASE_URL)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            return await operation(session_factory)
        finally:
            await engine.dispose()

    try:
        result = asyncio.run(run_async())
    except Exception as e:
        logger.error(f"Job failed: {e}", exc_info=True)
        click.echo(f"Job failed: {e}", err=True)
        sys.exit(1)
    if result is not None:
        click.echo(json.dumps(result, indent=2, default=str))


@click.group()
def cli() -> None:
    """
    Scheduler operations.

    Example:
        python -m app.jobs.run daily-trigger
    """
    setup_logging()


@cli.command("init-db")
def init_db() -> None:
    """Create all tables from the ORM metadata."""

    async def create_all() -> None:
        import_models()
        engine = create_db_engine(settings.DATABASE_URL)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(create_all())
    click.echo("Tables created")


@cli.command("daily-trigger")
@click.option("--force", is_flag=True, help="Skip the window check (never the daily claim).")
@click.option("--no-dispatch", is_flag=True, help="Create jobs without running them.")
def daily_trigger(force: bool, no_dispatch: bool) -> None:
    """Window gate, daily claim and fan-out; then run the created jobs."""

    async def operation(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        outcome = await run_daily_trigger(session_factory, force=force, trigger_source="cli")
        if outcome["status"] == "success" and not no_dispatch and outcome["result"]["jobIds"]:
            registry = build_executor_registry()
            try:
                outcome["workers"] = await run_jobs(session_factory, outcome["result"]["jobIds"], registry)
            finally:
                await registry.aclose()
        return outcome

    _run(operation)


@cli.command("reconcile")
def reconcile() -> None:
    """Sweep stuck jobs."""

    async def operation(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        return (await sweep_stuck_jobs(session_factory, trigger_source="cli")).to_dict()

    _run(operation)


@cli.command("coverage-audit")
@click.option("--repair", is_flag=True, help="Create repair jobs for missing tenants.")
def coverage_audit(repair: bool) -> None:
    """Audit today's coverage."""

    async def operation(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        result = await run_coverage_audit(session_factory, repair=repair, trigger_source="cli")
        if result["healing"]["jobIds"]:
            registry = build_executor_registry()
            try:
                result["workers"] = await run_jobs(session_factory, result["healing"]["jobIds"], registry)
            finally:
                await registry.aclose()
        return result

    _run(operation)


@cli.command("resume-due")
def resume_due() -> None:
    """Run parked jobs whose resume backoff has elapsed."""

    async def operation(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        registry = build_executor_registry()
        try:
            return await resume_due_jobs(session_factory, registry, trigger_source="cli")
        finally:
            await registry.aclose()

    _run(operation)


@cli.command("process-job")
@click.argument("job_id", type=click.UUID)
def process_job_command(job_id: UUID) -> None:
    """Run the pending tasks of one job."""

    async def operation(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
        registry = build_executor_registry()
        try:
            return (await process_job(session_factory, job_id, registry)).to_dict()
        finally:
            await registry.aclose()

    _run(operation)


if __name__ == "__main__":
    cli()
