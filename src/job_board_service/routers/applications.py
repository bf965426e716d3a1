"""Application endpoints: workers apply, posters accept or reject."""

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
    from job_board_service.services.application_manager import ApplicationManager

router = APIRouter()


def _applications() -> ApplicationManager:
    state = get_app_state()
    if state.applications is None:
        msg = "ApplicationManager not initialized"
        raise RuntimeError(msg)
    return state.applications


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/apply
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/apply", status_code=201)
async def apply(job_id: str, request: Request) -> JSONResponse:
    """Apply to an open job."""
    verified = await verify_body_token(request, "apply")
    verified.require_binding("job_id", job_id)
    result = _applications().apply(job_id, verified.signer_id, verified.payload)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}/applications
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}/applications")
async def list_applications(job_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_bearer_token(request, VIEW_ACTION)
    return _applications().list_applications(job_id, verified.signer_id)


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/applications/{application_id}/accept
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/applications/{application_id}/accept")
async def accept_application(job_id: str, application_id: str, request: Request) -> dict[str, Any]:
    """Accept an application; the job becomes assigned to its worker."""
    verified = await verify_body_token(request, "accept_application")
    verified.require_binding("job_id", job_id)
    verified.require_binding("application_id", application_id)
    return _applications().accept(job_id, application_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/applications/{application_id}/reject
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/applications/{application_id}/reject")
async def reject_application(job_id: str, application_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_body_token(request, "reject_application")
    verified.require_binding("job_id", job_id)
    verified.require_binding("application_id", application_id)
    return _applications().reject(job_id, application_id, verified.signer_id)
