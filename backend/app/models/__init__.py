"""Database models."""

from app.models.batch import (
    ACTIVE_JOB_STATUSES,
    BatchJob,
    BatchTask,
    JobStatus,
    TaskStatus,
)
from app.models.scheduler import GLOBAL_STATE_ID, SchedulerRun, SchedulerState
from app.models.tenant import LLMProvider, Organization, PlanTier, Prompt

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "GLOBAL_STATE_ID",
    "BatchJob",
    "BatchTask",
    "JobStatus",
    "LLMProvider",
    "Organization",
    "PlanTier",
    "Prompt",
    "SchedulerRun",
    "SchedulerState",
    "TaskStatus",
]
