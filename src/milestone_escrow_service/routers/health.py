"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from milestone_escrow_service.core.state import get_app_state
from milestone_escrow_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return job statistics."""
    state = get_app_state()
    total_jobs = 0
    jobs_by_status: dict[str, int] = {}
    if state.workflow is not None:
        stats = state.workflow.get_stats()
        total_jobs = stats["total_jobs"]
        jobs_by_status = stats["jobs_by_status"]
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_jobs=total_jobs,
        jobs_by_status=jobs_by_status,
    )
