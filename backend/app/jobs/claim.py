"""Lock-free daily claim on the scheduler state singleton."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.types import utcnow
from app.models.scheduler import GLOBAL_STATE_ID, SchedulerState

logger = logging.getLogger(__name__)

ClaimOutcome = Literal["claimed", "already-ran", "locked"]


@dataclass
class ClaimResult:
    outcome: ClaimOutcome
    day_key: str
    last_run_day_key: str | None = None

    @property
    def claimed(self) -> bool:
        return self.outcome == "claimed"


async def ensure_scheduler_state(db: AsyncSession) -> None:
    """Create the singleton state row if it does not exist yet."""
    existing = await db.get(SchedulerState, GLOBAL_STATE_ID)
    if existing is not None:
        return
    db.add(SchedulerState(id=GLOBAL_STATE_ID, last_run_day_key=None, last_run_at=None))
    try:
        await db.commit()
    except IntegrityError:
        # Another process inserted it first
        await db.rollback()


def classify_lost_claim(
    stored_day_key: str | None,
    last_run_at: datetime | None,
    day_key: str,
    attempt_started: datetime,
) -> ClaimOutcome:
    """Outcome of a claim whose conditional update matched no row."""
    if stored_day_key != day_key:
        # Row missing or moved to another day between update and re-read
        return "locked"
    if last_run_at is not None and last_run_at >= attempt_started:
        return "locked"
    return "already-ran"


async def try_claim(db: AsyncSession, day_key: str) -> ClaimResult:
    """
    Claim the day for this invocation.

    A single conditional UPDATE moves last_run_day_key to `day_key` only if it
    differs, so among concurrent callers exactly one sees a row affected. Losers
    re-read the state: a claim stamped after this attempt started means a
    concurrent caller won the race ("locked"); an older one means the day had
    already run ("already-ran").

    Args:
        db: Database session
        day_key: Day key being claimed

    Returns:
        ClaimResult
    """
    await ensure_scheduler_state(db)

    attempt_started: datetime = utcnow()
    stmt = (
        update(SchedulerState)
        .where(
            SchedulerState.id == GLOBAL_STATE_ID,
            or_(
                SchedulerState.last_run_day_key.is_(None),
                SchedulerState.last_run_day_key != day_key,
            ),
        )
        .values(last_run_day_key=day_key, last_run_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.commit()

    if result.rowcount == 1:
        logger.info(f"Claimed daily run for {day_key}", extra={"day_key": day_key})
        return ClaimResult(outcome="claimed", day_key=day_key)

    state = (
        await db.execute(
            select(SchedulerState)
            .where(SchedulerState.id == GLOBAL_STATE_ID)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()

    outcome = classify_lost_claim(
        state.last_run_day_key if state else None,
        state.last_run_at if state else None,
        day_key,
        attempt_started,
    )
    logger.info(
        f"Daily claim for {day_key} not acquired: {outcome}",
        extra={"day_key": day_key, "outcome": outcome},
    )
    return ClaimResult(
        outcome=outcome,
        day_key=day_key,
        last_run_day_key=state.last_run_day_key if state else None,
    )
