"""Shared lookups and ownership/version guards for job operations."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
)
from job_board_service.services.job_status import JobStatus

if TYPE_CHECKING:
    from job_board_service.services.job_store import JobStore


def load_job(store: JobStore, job_id: str) -> dict[str, Any]:
    """Fetch a job or raise JOB_NOT_FOUND."""
    job = store.get_job(job_id)
    if job is None:
        raise NotFoundError("JOB_NOT_FOUND", "Job not found", {"job_id": job_id})
    return job


def job_status(job: dict[str, Any]) -> JobStatus:
    return JobStatus(job["status"])


def check_version(job: dict[str, Any], expected_version: int) -> None:
    """Reject a request built on a stale read of the job."""
    if job["version"] != expected_version:
        raise version_conflict(job["job_id"], expected_version, job["version"])


def version_conflict(
    job_id: str,
    expected_version: int,
    current_version: int | None,
) -> StateConflictError:
    return StateConflictError(
        "VERSION_CONFLICT",
        "Job has changed since it was read; re-read and retry",
        {
            "job_id": job_id,
            "expected_version": expected_version,
            "current_version": current_version,
        },
    )


def require_poster(job: dict[str, Any], actor_id: str) -> None:
    if job["poster_id"] != actor_id:
        raise AuthorizationError(
            "FORBIDDEN", "Only the job poster can perform this action", {"job_id": job["job_id"]}
        )


def require_assigned_worker(job: dict[str, Any], actor_id: str) -> None:
    if job["worker_id"] is None or job["worker_id"] != actor_id:
        raise AuthorizationError(
            "FORBIDDEN",
            "Only the assigned worker can perform this action",
            {"job_id": job["job_id"]},
        )


def require_party(job: dict[str, Any], actor_id: str) -> None:
    """Allow the poster or the assigned worker."""
    if actor_id not in (job["poster_id"], job["worker_id"]):
        raise AuthorizationError(
            "FORBIDDEN",
            "Only the poster or the assigned worker can perform this action",
            {"job_id": job["job_id"]},
        )
