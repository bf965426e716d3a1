"""Worker applications to open jobs: submission, acceptance, rejection."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from job_board_service.logging import get_logger
from job_board_service.services.job_guards import (
    check_version,
    job_status,
    load_job,
    require_poster,
    version_conflict,
)
from job_board_service.services.job_status import JobStatus, ensure_transition
from job_board_service.services.job_store import DuplicateApplicationError
from job_board_service.services.payload_fields import (
    now_iso,
    optional_amount,
    optional_str,
    require_str,
    require_version,
    to_cents,
)
from job_board_service.services.views import application_to_response

if TYPE_CHECKING:
    from job_board_service.services.job_events import JobEventBus
    from job_board_service.services.job_store import JobStore
    from job_board_service.services.task_tracker import TaskTracker

APPLICATION_PENDING = "pending"
APPLICATION_ACCEPTED = "accepted"
APPLICATION_REJECTED = "rejected"

_MAX_DURATION_LENGTH = 100


class ApplicationManager:
    """
    Owns applications to a job.

    A worker holds at most one application row per job. Accepting one
    application assigns the job and rejects every sibling in the same
    transaction, so at most one application per job is ever accepted.
    """

    def __init__(
        self,
        store: JobStore,
        task_tracker: TaskTracker,
        events: JobEventBus,
        max_message_length: int,
        operator_id: str,
    ) -> None:
        self._store = store
        self._task_tracker = task_tracker
        self._events = events
        self._max_message_length = max_message_length
        self._operator_id = operator_id
        self._logger = get_logger(__name__)

    def _load_application(self, job_id: str, application_id: str) -> dict[str, Any]:
        application = self._store.get_application(application_id)
        if application is None or application["job_id"] != job_id:
            raise NotFoundError(
                "APPLICATION_NOT_FOUND",
                "Application not found",
                {"job_id": job_id, "application_id": application_id},
            )
        return application

    def apply(self, job_id: str, worker_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Submit an application for an open job.

        A worker whose earlier application was rejected may apply again; the
        existing row is reopened rather than duplicated.
        """
        message = require_str(payload, "message", max_length=self._max_message_length)
        rate = optional_amount(payload, "proposed_rate")
        duration = optional_str(payload, "expected_duration", max_length=_MAX_DURATION_LENGTH)

        job = load_job(self._store, job_id)
        if job_status(job) != JobStatus.OPEN:
            raise ValidationError(
                "JOB_NOT_OPEN",
                "Applications are only accepted while the job is open",
                {"job_id": job_id, "status": job["status"]},
            )
        if job["poster_id"] == worker_id:
            raise ValidationError("SELF_APPLICATION", "Posters cannot apply to their own job")

        fields = {
            "message": message,
            "proposed_rate": None if rate is None else to_cents(rate),
            "expected_duration": duration,
        }
        timestamp = now_iso()

        existing = self._store.get_application_for_worker(job_id, worker_id)
        if existing is not None:
            if existing["status"] != APPLICATION_REJECTED:
                raise ValidationError(
                    "DUPLICATE_APPLICATION",
                    "This worker already has an application for this job",
                    {"application_id": existing["application_id"]},
                )
            reopened = self._store.update_application(
                existing["application_id"],
                {**fields, "status": APPLICATION_PENDING, "updated_at": timestamp},
                expected_status=APPLICATION_REJECTED,
            )
            if reopened == 0:
                raise ValidationError(
                    "DUPLICATE_APPLICATION",
                    "This worker already has an application for this job",
                    {"application_id": existing["application_id"]},
                )
            application_id = existing["application_id"]
        else:
            application_id = f"app-{uuid.uuid4()}"
            try:
                self._store.insert_application(
                    {
                        "application_id": application_id,
                        "job_id": job_id,
                        "worker_id": worker_id,
                        "status": APPLICATION_PENDING,
                        "created_at": timestamp,
                        "updated_at": timestamp,
                        **fields,
                    }
                )
            except DuplicateApplicationError as exc:
                raise ValidationError(
                    "DUPLICATE_APPLICATION",
                    "This worker already has an application for this job",
                ) from exc

        self._logger.info(
            "Application submitted",
            extra={"job_id": job_id, "application_id": application_id, "worker_id": worker_id},
        )
        self._events.publish(job_id, "application_submitted", {"application_id": application_id})
        return application_to_response(self._load_application(job_id, application_id))

    def accept(
        self,
        job_id: str,
        application_id: str,
        actor_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Accept an application, assigning the job to its worker."""
        version = require_version(payload)
        job = load_job(self._store, job_id)
        require_poster(job, actor_id)
        check_version(job, version)
        ensure_transition(job_status(job), JobStatus.ASSIGNED, job_id)

        application = self._load_application(job_id, application_id)
        if application["status"] != APPLICATION_PENDING:
            raise StateConflictError(
                "APPLICATION_NOT_PENDING",
                "Only pending applications can be accepted",
                {"application_id": application_id, "status": application["status"]},
            )

        assigned = self._store.assign_worker(
            job_id,
            application_id,
            application["worker_id"],
            expected_version=version,
            timestamp=now_iso(),
        )
        if not assigned:
            current = load_job(self._store, job_id)
            if current["version"] != version:
                raise version_conflict(job_id, version, current["version"])
            raise StateConflictError(
                "APPLICATION_NOT_PENDING",
                "Only pending applications can be accepted",
                {"application_id": application_id},
            )

        updated = load_job(self._store, job_id)
        self._logger.info(
            "Job assigned",
            extra={
                "job_id": job_id,
                "application_id": application_id,
                "worker_id": application["worker_id"],
                "version": updated["version"],
            },
        )
        self._events.publish(
            job_id,
            "status_changed",
            {
                "status": updated["status"],
                "version": updated["version"],
                "worker_id": updated["worker_id"],
            },
        )
        return self._task_tracker.render_job(updated)

    def reject(self, job_id: str, application_id: str, actor_id: str) -> dict[str, Any]:
        """Reject a pending application."""
        job = load_job(self._store, job_id)
        require_poster(job, actor_id)
        application = self._load_application(job_id, application_id)

        rejected = self._store.update_application(
            application_id,
            {"status": APPLICATION_REJECTED, "updated_at": now_iso()},
            expected_status=APPLICATION_PENDING,
        )
        if rejected == 0:
            raise StateConflictError(
                "APPLICATION_NOT_PENDING",
                "Only pending applications can be rejected",
                {"application_id": application_id, "status": application["status"]},
            )

        self._logger.info(
            "Application rejected", extra={"job_id": job_id, "application_id": application_id}
        )
        self._events.publish(job_id, "application_rejected", {"application_id": application_id})
        return application_to_response(self._load_application(job_id, application_id))

    def list_applications(self, job_id: str, actor_id: str) -> dict[str, Any]:
        """Applications of a job, visible to its poster and the operator."""
        job = load_job(self._store, job_id)
        if actor_id not in (job["poster_id"], self._operator_id):
            raise AuthorizationError(
                "FORBIDDEN", "Only the job poster can list applications", {"job_id": job_id}
            )
        return {
            "job_id": job_id,
            "applications": [
                application_to_response(application)
                for application in self._store.list_applications(job_id)
            ],
        }
