"""Closed set of job states and the central transition table."""

from __future__ import annotations

from enum import StrEnum

from job_board_service.core.exceptions import StateConflictError


class JobStatus(StrEnum):
    """Every state a job can be in."""

    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PAYOUT_PENDING = "payout_pending"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCEL_PENDING = "cancel_pending"
    CANCELED = "canceled"


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.PENDING_PAYMENT, JobStatus.CANCELED}),
    JobStatus.PENDING_PAYMENT: frozenset(
        {JobStatus.OPEN, JobStatus.CANCEL_PENDING, JobStatus.CANCELED}
    ),
    JobStatus.OPEN: frozenset({JobStatus.ASSIGNED, JobStatus.CANCEL_PENDING}),
    JobStatus.ASSIGNED: frozenset({JobStatus.IN_PROGRESS, JobStatus.CANCEL_PENDING}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.PAYOUT_PENDING, JobStatus.CANCEL_PENDING}),
    JobStatus.PAYOUT_PENDING: frozenset({JobStatus.COMPLETED, JobStatus.CANCEL_PENDING}),
    JobStatus.CANCEL_PENDING: frozenset({JobStatus.CANCELED}),
    JobStatus.COMPLETED: frozenset({JobStatus.DISPUTED}),
    JobStatus.DISPUTED: frozenset({JobStatus.COMPLETED}),
    JobStatus.CANCELED: frozenset(),
}

# Statuses in which the job carries a worker.
WORKER_STATUSES: frozenset[JobStatus] = frozenset(
    {
        JobStatus.ASSIGNED,
        JobStatus.IN_PROGRESS,
        JobStatus.PAYOUT_PENDING,
        JobStatus.COMPLETED,
        JobStatus.DISPUTED,
    }
)

# Statuses before a worker is assigned.
PRE_ASSIGNMENT_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.DRAFT, JobStatus.PENDING_PAYMENT, JobStatus.OPEN}
)

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.CANCELED})


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True when the transition table allows current -> target."""
    return target in _TRANSITIONS[current]


def ensure_transition(current: JobStatus, target: JobStatus, job_id: str) -> None:
    """Raise StateConflictError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise StateConflictError(
            "INVALID_TRANSITION",
            f"Cannot move job from {current.value} to {target.value}",
            {"job_id": job_id, "status": current.value, "target": target.value},
        )
