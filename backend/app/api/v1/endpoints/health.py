"""Health and readiness endpoints."""

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import get_request_id
from app.db.session import get_db
from app.models.scheduler import GLOBAL_STATE_ID, SchedulerState

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["ok"] = "ok"


class ReadinessCheck(BaseModel):
    """Individual readiness check result."""

    status: Literal["ok", "degraded", "down"]
    message: str | None = None


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: Literal["ok", "degraded", "down"]
    checks: dict[str, ReadinessCheck]
    last_run_day_key: str | None = None
    request_id: str


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Simple health check endpoint. Returns 200 if the API is running.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint - just checks if the process is alive."""
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    status_code=status.HTTP_200_OK,
    summary="Readiness check",
    description="Verifies store connectivity and reports the last claimed day key.",
)
async def readiness_check(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ReadinessResponse:
    """Readiness check endpoint - checks the job store."""
    checks: dict[str, ReadinessCheck] = {}
    overall: Literal["ok", "degraded", "down"] = "ok"
    last_key = None

    try:
        await db.execute(text("SELECT 1"))
        checks["db"] = ReadinessCheck(status="ok")
        state = (
            await db.execute(select(SchedulerState).where(SchedulerState.id == GLOBAL_STATE_ID))
        ).scalar_one_or_none()
        last_key = state.last_run_day_key if state else None
    except Exception as e:
        checks["db"] = ReadinessCheck(status="down", message=str(e))
        overall = "down"

    return ReadinessResponse(
        status=overall,
        checks=checks,
        last_run_day_key=last_key,
        request_id=get_request_id(request),
    )
