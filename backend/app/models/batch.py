"""Batch job and task models."""

import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)

from app.db.base import Base
from app.db.types import UTCDateTime, utcnow


class JobStatus(str, Enum):
    """BatchJob lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class TaskStatus(str, Enum):
    """BatchTask lifecycle."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class BatchJob(Base):
    """One tenant's run of (prompt x provider) work for a day."""

    __tablename__ = "batch_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    org_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    day_key = Column(String(10), nullable=False)  # YYYY-MM-DD in the scheduler timezone
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)
    source = Column(String(50), nullable=False, default="daily-trigger")
    correlation_id = Column(String(100), nullable=True)

    total_tasks = Column(Integer, nullable=False, default=0)
    completed_tasks = Column(Integer, nullable=False, default=0)
    failed_tasks = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    last_heartbeat = Column(UTCDateTime, nullable=True)
    runner_id = Column(String(100), nullable=True)

    cancellation_requested = Column(Boolean, nullable=False, default=False)
    resume_attempts = Column(Integer, nullable=False, default=0)
    next_resume_at = Column(UTCDateTime, nullable=True)

    # "<org_id>:<day_key>" while pending/processing, NULL once terminal.
    # Unique so only one incomplete job per tenant-day can exist.
    active_key = Column(String(64), nullable=True, unique=True)

    job_metadata = Column("metadata", JSON, nullable=False, default=dict)
    error_text = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_batch_jobs_org_day", "org_id", "day_key"),
        Index("ix_batch_jobs_status", "status"),
        Index("ix_batch_jobs_status_heartbeat", "status", "last_heartbeat"),
    )

    @property
    def progress(self) -> int:
        return (self.completed_tasks or 0) + (self.failed_tasks or 0)


class BatchTask(Base):
    """One (prompt, provider) unit of work within a job."""

    __tablename__ = "batch_tasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id = Column(Uuid, ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False)
    prompt_id = Column(Uuid, ForeignKey("prompts.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)

    token_in = Column(Integer, nullable=True)
    token_out = Column(Integer, nullable=True)
    model = Column(String(100), nullable=True)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_batch_tasks_job_status", "job_id", "status"),
        Index("ix_batch_tasks_prompt_completed", "prompt_id", "completed_at"),
    )
