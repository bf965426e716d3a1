"""Ratings the two parties of a finished job leave for each other."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import StateConflictError
from job_board_service.logging import get_logger
from job_board_service.services.job_guards import job_status, load_job, require_party
from job_board_service.services.job_status import JobStatus
from job_board_service.services.job_store import DuplicateReviewError
from job_board_service.services.payload_fields import (
    now_iso,
    optional_str,
    require_int_in_range,
)
from job_board_service.services.views import review_to_response

if TYPE_CHECKING:
    from job_board_service.services.job_events import JobEventBus
    from job_board_service.services.job_store import JobStore

_REVIEWABLE_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.DISPUTED})


class ReviewManager:
    """One review per reviewer and job, written after completion."""

    def __init__(self, store: JobStore, events: JobEventBus, max_comment_length: int) -> None:
        self._store = store
        self._events = events
        self._max_comment_length = max_comment_length
        self._logger = get_logger(__name__)

    def submit_review(
        self, job_id: str, reviewer_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """The poster reviews the worker, or the worker reviews the poster."""
        rating = require_int_in_range(payload, "rating", 1, 5)
        comment = optional_str(payload, "comment", max_length=self._max_comment_length)

        job = load_job(self._store, job_id)
        require_party(job, reviewer_id)
        if job_status(job) not in _REVIEWABLE_STATUSES:
            raise StateConflictError(
                "JOB_NOT_COMPLETED",
                "Reviews can only be left once the job is completed",
                {"job_id": job_id, "status": job["status"]},
            )
        reviewee_id = job["worker_id"] if reviewer_id == job["poster_id"] else job["poster_id"]

        review = {
            "review_id": f"rev-{uuid.uuid4()}",
            "job_id": job_id,
            "reviewer_id": reviewer_id,
            "reviewee_id": reviewee_id,
            "rating": rating,
            "comment": comment,
            "created_at": now_iso(),
        }
        try:
            self._store.insert_review(review)
        except DuplicateReviewError as exc:
            raise StateConflictError(
                "REVIEW_ALREADY_EXISTS",
                "This reviewer already reviewed the job",
                {"job_id": job_id},
            ) from exc

        self._logger.info(
            "Review submitted",
            extra={"job_id": job_id, "reviewer_id": reviewer_id, "rating": rating},
        )
        self._events.publish(job_id, "review_submitted", {"review_id": review["review_id"]})
        return review_to_response(review)

    def list_reviews(self, job_id: str) -> dict[str, Any]:
        load_job(self._store, job_id)
        return {
            "job_id": job_id,
            "reviews": [review_to_response(review) for review in self._store.list_reviews(job_id)],
        }
