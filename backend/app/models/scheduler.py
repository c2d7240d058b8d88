"""Scheduler gate state and run audit log."""

import uuid

from sqlalchemy import JSON, Column, Index, String, Text, Uuid

from app.db.base import Base
from app.db.types import UTCDateTime, utcnow

GLOBAL_STATE_ID = "global"


class SchedulerState(Base):
    """Singleton row recording the last claimed day key."""

    __tablename__ = "scheduler_state"

    id = Column(String(20), primary_key=True, default=GLOBAL_STATE_ID)
    last_run_day_key = Column(String(10), nullable=True)
    last_run_at = Column(UTCDateTime, nullable=True)


class SchedulerRun(Base):
    """Audit row for one orchestration invocation."""

    __tablename__ = "scheduler_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    function_name = Column(String(50), nullable=False)  # daily-trigger, reconcile, coverage-audit, ...
    run_key = Column(String(100), nullable=False)
    trigger_source = Column(String(50), nullable=False, default="cron")
    status = Column(String(20), nullable=False, default="running")  # running, completed, failed
    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
    result_json = Column(JSON, nullable=True)
    error_text = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_scheduler_runs_function_started", "function_name", "started_at"),
    )
