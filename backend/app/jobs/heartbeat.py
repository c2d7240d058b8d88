"""Worker heartbeat: advisory liveness for the job a runner holds."""

import asyncio
import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.types import utcnow
from app.models.batch import BatchJob, JobStatus

logger = logging.getLogger(__name__)


async def touch_heartbeat(
    db: AsyncSession,
    job_id: UUID,
    runner_id: str,
    now: datetime | None = None,
) -> bool:
    """
    Stamp last_heartbeat on a job this runner still holds.

    Returns:
        False if the job is no longer processing under `runner_id`
    """
    result = await db.execute(
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.runner_id == runner_id,
            BatchJob.status == JobStatus.PROCESSING.value,
        )
        .values(last_heartbeat=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


class HeartbeatMonitor:
    """
    Background heartbeat loop for the duration of a job run.

    Usage:
        async with HeartbeatMonitor(session_factory, job_id, runner_id):
            ...
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_id: UUID,
        runner_id: str,
        interval_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.job_id = job_id
        self.runner_id = runner_id
        self.interval = interval_seconds or settings.HEARTBEAT_INTERVAL_SECONDS
        self.beats = 0
        self.lost = False
        self._task: asyncio.Task | None = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                async with self.session_factory() as db:
                    alive = await touch_heartbeat(db, self.job_id, self.runner_id)
            except Exception as e:
                # A missed beat is tolerated; the timeout spans several intervals
                logger.warning(
                    f"Heartbeat write failed for job {self.job_id}: {e}",
                    extra={"job_id": str(self.job_id), "runner_id": self.runner_id},
                )
                continue
            if not alive:
                self.lost = True
                logger.info(
                    f"Heartbeat stopped: job {self.job_id} no longer held by {self.runner_id}",
                    extra={"job_id": str(self.job_id), "runner_id": self.runner_id},
                )
                return
            self.beats += 1

    async def __aenter__(self) -> "HeartbeatMonitor":
        self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
