"""Review endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from job_board_service.core.state import get_app_state
from job_board_service.routers.validation import verify_body_token

if TYPE_CHECKING:
    from job_board_service.services.review_manager import ReviewManager

router = APIRouter()


def _reviews() -> ReviewManager:
    state = get_app_state()
    if state.reviews is None:
        msg = "ReviewManager not initialized"
        raise RuntimeError(msg)
    return state.reviews


@router.post("/jobs/{job_id}/reviews", status_code=201)
async def submit_review(job_id: str, request: Request) -> JSONResponse:
    """Rate the other party of a completed job."""
    verified = await verify_body_token(request, "submit_review")
    verified.require_binding("job_id", job_id)
    result = _reviews().submit_review(job_id, verified.signer_id, verified.payload)
    return JSONResponse(status_code=201, content=result)


@router.get("/jobs/{job_id}/reviews")
async def list_reviews(job_id: str) -> dict[str, Any]:
    return _reviews().list_reviews(job_id)
