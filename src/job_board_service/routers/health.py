"""Liveness endpoint with job and payment backlog counters."""

from __future__ import annotations

from fastapi import APIRouter

from job_board_service.config import get_settings
from job_board_service.core.state import get_app_state
from job_board_service.schemas import HealthResponse, PaymentBacklog

router = APIRouter()

_EMPTY_BACKLOG = {"authorizations": 0, "payouts": 0, "refunds": 0, "escalated": 0}


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Report uptime, job counts by status and the payment backlog.

    The backlog counts jobs whose authorization, payout or refund is still
    waiting on the processor. ``escalated`` jobs need the operator.
    """
    state = get_app_state()
    settings = get_settings()
    jobs_by_status: dict[str, int] = {}
    backlog = _EMPTY_BACKLOG
    if state.jobs is not None:
        jobs_by_status = state.jobs.get_stats()
        backlog = state.jobs.payment_backlog()
    return HealthResponse(
        status="ok",
        service=settings.service.name,
        version=settings.service.version,
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_jobs=sum(jobs_by_status.values()),
        jobs_by_status=jobs_by_status,
        payment_backlog=PaymentBacklog(**backlog),
    )
