"""Scheduler run registry for auditing orchestration invocations."""

import logging
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.types import utcnow
from app.models.scheduler import SchedulerRun

logger = logging.getLogger(__name__)


async def create_scheduler_run(
    db: AsyncSession,
    function_name: str,
    run_key: str,
    trigger_source: str = "cron",
) -> SchedulerRun:
    """
    Create a running audit row.

    Args:
        db: Database session
        function_name: Orchestration name (daily-trigger, reconcile, ...)
        run_key: Day key or other idempotency key of the invocation
        trigger_source: cron, admin, cli

    Returns:
        Created SchedulerRun
    """
    run = SchedulerRun(
        id=uuid4(),
        function_name=function_name,
        run_key=run_key,
        trigger_source=trigger_source,
        status="running",
        started_at=utcnow(),
    )
    db.add(run)
    await db.commit()

    logger.info(f"Created scheduler run: {run.id} for {function_name}", extra={"run_key": run_key})
    return run


async def finish_scheduler_run(
    db: AsyncSession,
    run_id: UUID,
    status: str,
    result: dict[str, Any] | None = None,
    error: str | None = None,
) -> bool:
    """
    Close an audit row. Rows that already have completed_at are left untouched.

    Args:
        db: Database session
        run_id: SchedulerRun ID
        status: completed or failed
        result: Result summary
        error: Error text if failed

    Returns:
        True if the row was closed by this call
    """
    stmt = (
        update(SchedulerRun)
        .where(SchedulerRun.id == run_id, SchedulerRun.completed_at.is_(None))
        .values(status=status, completed_at=utcnow(), result_json=result, error_text=error)
        .execution_options(synchronize_session=False)
    )
    outcome = await db.execute(stmt)
    await db.commit()
    return outcome.rowcount == 1
