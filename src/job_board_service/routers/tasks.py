"""Checklist endpoints for the tasks of a job."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from job_board_service.core.state import get_app_state
from job_board_service.routers.validation import (
    VIEW_ACTION,
    verify_bearer_token,
    verify_body_token,
    verify_header_token,
)

if TYPE_CHECKING:
    from job_board_service.services.task_tracker import TaskTracker

router = APIRouter()


def _tracker() -> TaskTracker:
    state = get_app_state()
    if state.task_tracker is None:
        msg = "TaskTracker not initialized"
        raise RuntimeError(msg)
    return state.task_tracker


# ---------------------------------------------------------------------------
# GET /jobs/{job_id}/tasks
# ---------------------------------------------------------------------------


@router.get("/jobs/{job_id}/tasks")
async def list_tasks(job_id: str, request: Request) -> dict[str, Any]:
    """Tasks of a job with its progress."""
    verified = await verify_header_token(request, VIEW_ACTION, required=False)
    state = get_app_state()
    if state.jobs is None:
        msg = "JobStateMachine not initialized"
        raise RuntimeError(msg)
    state.jobs.ensure_can_watch(job_id, None if verified is None else verified.signer_id)
    return _tracker().list_tasks(job_id)


# ---------------------------------------------------------------------------
# POST /jobs/{job_id}/tasks
# ---------------------------------------------------------------------------


@router.post("/jobs/{job_id}/tasks", status_code=201)
async def add_task(job_id: str, request: Request) -> JSONResponse:
    verified = await verify_body_token(request, "add_task")
    verified.require_binding("job_id", job_id)
    result = _tracker().add_task(job_id, verified.signer_id, verified.payload)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# DELETE /jobs/{job_id}/tasks/{task_id}
# ---------------------------------------------------------------------------


@router.delete("/jobs/{job_id}/tasks/{task_id}")
async def remove_task(job_id: str, task_id: str, request: Request) -> dict[str, Any]:
    """Remove a task before the job is assigned. Signed payload rides as bearer token."""
    verified = await verify_bearer_token(request, "remove_task")
    verified.require_binding("job_id", job_id)
    verified.require_binding("task_id", task_id)
    return _tracker().remove_task(job_id, task_id, verified.signer_id, verified.payload)


# ---------------------------------------------------------------------------
# PATCH /tasks/{task_id}/complete
# ---------------------------------------------------------------------------


@router.patch("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> dict[str, Any]:
    """Assigned worker ticks off a task."""
    verified = await verify_body_token(request, "complete_task")
    verified.require_binding("task_id", task_id)
    return _tracker().complete_task(task_id, verified.signer_id)
