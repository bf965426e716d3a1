"""Job lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from job_board_service.config import get_settings
from job_board_service.core.state import get_app_state
from job_board_service.routers.validation import (
    VIEW_ACTION,
    parse_pagination,
    verify_bearer_token,
    verify_body_token,
    verify_header_token,
)

if TYPE_CHECKING:
    from job_board_service.services.job_state_machine import JobStateMachine

router = APIRouter()


def _jobs() -> JobStateMachine:
    state = get_app_state()
    if state.jobs is None:
        msg = "JobStateMachine not initialized"
        raise RuntimeError(msg)
    return state.jobs


# ---------------------------------------------------------------------------
# POST /jobs — create job (MUST be before GET /jobs/{job_id})
# ---------------------------------------------------------------------------


@router.post("/jobs", status_code=201)
async def create_job(request: Request) -> JSONResponse:
    """Create a job; it is submitted for payment unless saved as a draft."""
    verified = await verify_body_token(request, "create_job")
    result = await _jobs().create_job(verified.signer_id, verified.payload)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /jobs — public feed or own jobs
# ---------------------------------------------------------------------------


@router.get("/jobs")
async def list_jobs(request: Request) -> dict[str, Any]:
    """List open jobs, or the caller's jobs when ``role`` is given."""
    limit, offset = parse_pagination(request)
    role = request.query_params.get("role")
    payment_type = request.query_params.get("payment_type")
    verified = await verify_header_token(request, VIEW_ACTION, required=role is not None)
    return _jobs().list_jobs(
        viewer_id=None if verified is None else verified.signer_id,
        role=role,
        payment_type=payment_type,
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request) -> dict[str, Any]:
    """Job detail with its tasks and progress."""
    verified = await verify_header_token(request, VIEW_ACTION, required=False)
    return _jobs().get_job(job_id, None if verified is None else verified.signer_id)


# ---------------------------------------------------------------------------
# PATCH /jobs/{job_id} — edit an unauthorized job
# ---------------------------------------------------------------------------


@router.patch("/jobs/{job_id}")
async def update_job(job_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_body_token(request, "update_job")
    verified.require_binding("job_id", job_id)
    return await _jobs().update_draft(job_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/submit
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/submit")
async def submit_job(job_id: str, request: Request) -> dict[str, Any]:
    """Submit a draft for payment authorization."""
    verified = await verify_body_token(request, "submit_job")
    verified.require_binding("job_id", job_id)
    return await _jobs().submit_job(job_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# PATCH /jobs/{job_id}/start
# ---------------------------------------------------------------------------


@router.patch("/jobs/{job_id}/start")
async def start_job(job_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_body_token(request, "start_job")
    verified.require_binding("job_id", job_id)
    return await _jobs().start_job(job_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# PATCH /jobs/{job_id}/complete
# ---------------------------------------------------------------------------


@router.patch("/jobs/{job_id}/complete")
async def complete_job(job_id: str, request: Request) -> dict[str, Any]:
    """Worker completes the job, which captures and pays out the escrow."""
    verified = await verify_body_token(request, "complete_job")
    verified.require_binding("job_id", job_id)
    return await _jobs().complete_job(job_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# DELETE /jobs/{job_id} — cancel
# ---------------------------------------------------------------------------


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, request: Request) -> dict[str, Any]:
    """
    Cancel a job and refund its hold.

    DELETE carries no body, so the signed payload (version, reason) travels
    as the bearer token.
    """
    verified = await verify_bearer_token(request, "cancel_job")
    verified.require_binding("job_id", job_id)
    return await _jobs().cancel_job(job_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/payments/retry
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/payments/retry")
async def retry_payment(job_id: str, request: Request) -> dict[str, Any]:
    """Re-drive a failed authorization, payout or refund."""
    verified = await verify_body_token(request, "retry_payment")
    verified.require_binding("job_id", job_id)
    return await _jobs().retry_payment(job_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}/ledger
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}/ledger")
async def get_ledger(job_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_bearer_token(request, VIEW_ACTION)
    return _jobs().ledger_report(job_id, verified.signer_id)


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}/events — server-sent job updates
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str, request: Request) -> EventSourceResponse:
    """Stream status, task and payment events of one job."""
    verified = await verify_header_token(request, VIEW_ACTION, required=False)
    _jobs().ensure_can_watch(job_id, None if verified is None else verified.signer_id)

    state = get_app_state()
    if state.events is None:
        msg = "JobEventBus not initialized"
        raise RuntimeError(msg)

    keepalive = get_settings().events.keepalive_seconds
    return EventSourceResponse(
        state.events.stream(job_id, keepalive),
        headers={"X-Accel-Buffering": "no"},
    )
