"""Application-specific exceptions for consistent error handling."""

from typing import Any
from uuid import UUID

from fastapi import HTTPException, status


class AppError(HTTPException):
    """Application error with standardized error code."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | list[Any] | None = None,
    ):
        """Initialize application error."""
        super().__init__(
            status_code=status_code,
            detail={
                "code": code,
                "message": message,
                "details": details,
            },
        )
        self.code = code
        self.message = message
        self.details = details


class JobNotFoundError(Exception):
    """Raised when a batch job id does not resolve to a row."""

    def __init__(self, job_id: UUID):
        super().__init__(f"Batch job not found: {job_id}")
        self.job_id = job_id


def job_not_found(job_id: UUID) -> AppError:
    """404 for an unknown batch job."""
    return AppError(
        status_code=status.HTTP_404_NOT_FOUND,
        code="JOB_NOT_FOUND",
        message="Batch job not found",
        details={"job_id": str(job_id)},
    )
