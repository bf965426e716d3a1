"""Dispute endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from job_board_service.core.state import get_app_state
from job_board_service.routers.validation import (
    VIEW_ACTION,
    verify_bearer_token,
    verify_body_token,
)

if TYPE_CHECKING:
    from job_board_service.services.dispute_manager import DisputeManager

router = APIRouter()


def _disputes() -> DisputeManager:
    state = get_app_state()
    if state.disputes is None:
        msg = "DisputeManager not initialized"
        raise RuntimeError(msg)
    return state.disputes


# ---------------------------------------------------------------------------
# POST /disputes — open dispute
# ---------------------------------------------------------------------------


@router.post("/disputes", status_code=201)
async def open_dispute(request: Request) -> JSONResponse:
    """Poster or worker disputes a completed job."""
    verified = await verify_body_token(request, "open_dispute")
    result = _disputes().open_dispute(verified.signer_id, verified.payload)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /disputes/{dispute_id}
# ---------------------------------------------------------------------------


@router.get("/disputes/{dispute_id}")
async def get_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_bearer_token(request, VIEW_ACTION)
    return _disputes().get_dispute(dispute_id, verified.signer_id)


# ---------------------------------------------------------------------------
# POST /disputes/{dispute_id}/review
# ---------------------------------------------------------------------------


@router.post("/disputes/{dispute_id}/review")
async def start_review(dispute_id: str, request: Request) -> dict[str, Any]:
    """Operator takes the dispute under review."""
    verified = await verify_body_token(request, "review_dispute")
    verified.require_binding("dispute_id", dispute_id)
    return _disputes().start_review(dispute_id, verified.signer_id)


# ---------------------------------------------------------------------------
# POST /disputes/{dispute_id}/resolve
# ---------------------------------------------------------------------------


@router.post("/disputes/{dispute_id}/resolve")
async def resolve_dispute(dispute_id: str, request: Request) -> dict[str, Any]:
    """Operator resolves the dispute, moving money when the outcome says so."""
    verified = await verify_body_token(request, "resolve_dispute")
    verified.require_binding("dispute_id", dispute_id)
    return await _disputes().resolve(dispute_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}/disputes
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}/disputes")
async def list_job_disputes(job_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_bearer_token(request, VIEW_ACTION)
    return _disputes().list_disputes(job_id, verified.signer_id)
