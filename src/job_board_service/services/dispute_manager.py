"""Disputes on completed jobs and their compensating payments."""

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
from job_board_service.services.dispute_store import DuplicateDisputeError
from job_board_service.services.escrow_ledger import EVENT_DISPUTE_REFUND, EVENT_DISPUTE_TRANSFER
from job_board_service.services.job_guards import job_status, load_job, require_party
from job_board_service.services.job_status import JobStatus, ensure_transition
from job_board_service.services.payload_fields import (
    format_cents,
    now_iso,
    optional_amount,
    optional_str,
    parse_amount,
    require_str,
    to_cents,
)
from job_board_service.services.views import dispute_to_response

if TYPE_CHECKING:
    from job_board_service.services.dispute_store import DisputeStore
    from job_board_service.services.escrow_ledger import EscrowLedger
    from job_board_service.services.job_events import JobEventBus
    from job_board_service.services.job_store import JobStore
    from job_board_service.services.payment_orchestrator import PaymentOrchestrator

DISPUTE_TYPES = frozenset(
    {"payment_not_received", "payment_incorrect", "work_not_completed", "work_quality", "other"}
)

OUTCOME_NO_ACTION = "no_action"
OUTCOME_PARTIAL_REFUND = "partial_refund_to_poster"
OUTCOME_ADDITIONAL_TRANSFER = "additional_transfer_to_worker"
OUTCOMES = frozenset({OUTCOME_NO_ACTION, OUTCOME_PARTIAL_REFUND, OUTCOME_ADDITIONAL_TRANSFER})

DISPUTE_OPEN = "open"
DISPUTE_UNDER_REVIEW = "under_review"
DISPUTE_RESOLVED = "resolved"

_MAX_EVIDENCE_ITEMS = 20
_MAX_EVIDENCE_LENGTH = 2000
_MAX_JOB_STATUS_ATTEMPTS = 5


class DisputeManager:
    """
    Opens, reviews and resolves disputes.

    A monetary resolution issues its own payment, keyed by the dispute id,
    and records a dispute adjustment in the ledger. The job's original
    escrow record is never edited.
    """

    def __init__(
        self,
        dispute_store: DisputeStore,
        job_store: JobStore,
        ledger: EscrowLedger,
        payments: PaymentOrchestrator,
        events: JobEventBus,
        max_description_length: int,
        operator_id: str,
    ) -> None:
        self._disputes = dispute_store
        self._jobs = job_store
        self._ledger = ledger
        self._payments = payments
        self._events = events
        self._max_description_length = max_description_length
        self._operator_id = operator_id
        self._logger = get_logger(__name__)

    def _load_dispute(self, dispute_id: str) -> dict[str, Any]:
        dispute = self._disputes.get_dispute(dispute_id)
        if dispute is None:
            raise NotFoundError(
                "DISPUTE_NOT_FOUND", "Dispute not found", {"dispute_id": dispute_id}
            )
        return dispute

    def _require_operator(self, actor_id: str) -> None:
        if actor_id != self._operator_id:
            raise AuthorizationError("FORBIDDEN", "Only the platform operator can do this")

    def _move_job(
        self, job_id: str, source: JobStatus, target: JobStatus
    ) -> dict[str, Any] | None:
        """Move the job between completed and disputed; None once it has left ``source``."""
        for _ in range(_MAX_JOB_STATUS_ATTEMPTS):
            job = load_job(self._jobs, job_id)
            if job_status(job) != source:
                return None
            ensure_transition(source, target, job_id)
            affected = self._jobs.update_job(
                job_id,
                {"status": target.value, "updated_at": now_iso()},
                expected_version=job["version"],
                expected_status=source.value,
            )
            if affected == 1:
                updated = load_job(self._jobs, job_id)
                self._logger.info(
                    "Job status changed",
                    extra={
                        "job_id": job_id,
                        "from_status": source.value,
                        "to_status": target.value,
                        "version": updated["version"],
                    },
                )
                self._events.publish(
                    job_id,
                    "status_changed",
                    {"status": updated["status"], "version": updated["version"]},
                )
                return updated
        return None

    @staticmethod
    def _parse_evidence(value: object) -> list[str]:
        if value is None:
            return []
        if (
            not isinstance(value, list)
            or len(value) > _MAX_EVIDENCE_ITEMS
            or not all(
                isinstance(item, str) and 0 < len(item) <= _MAX_EVIDENCE_LENGTH for item in value
            )
        ):
            raise ValidationError(
                "INVALID_PAYLOAD",
                f"evidence must be a list of at most {_MAX_EVIDENCE_ITEMS} strings",
            )
        return list(value)

    def _insert(self, dispute: dict[str, Any]) -> dict[str, Any]:
        try:
            self._disputes.insert_dispute(dispute)
        except DuplicateDisputeError as exc:
            raise StateConflictError(
                "DISPUTE_ALREADY_OPEN",
                "The job already has an unresolved dispute",
                {"job_id": dispute["job_id"]},
            ) from exc

        if self._move_job(dispute["job_id"], JobStatus.COMPLETED, JobStatus.DISPUTED) is None:
            self._disputes.delete_dispute(dispute["dispute_id"])
            raise StateConflictError(
                "JOB_NOT_COMPLETED",
                "Disputes can only be opened on completed jobs",
                {"job_id": dispute["job_id"]},
            )

        self._logger.info(
            "Dispute opened",
            extra={
                "dispute_id": dispute["dispute_id"],
                "job_id": dispute["job_id"],
                "dispute_type": dispute["dispute_type"],
            },
        )
        self._events.publish(
            dispute["job_id"],
            "dispute_opened",
            {"dispute_id": dispute["dispute_id"], "dispute_type": dispute["dispute_type"]},
        )
        return self._load_dispute(dispute["dispute_id"])

    @staticmethod
    def _new_dispute(
        job_id: str,
        reported_by: str,
        dispute_type: str,
        description: str,
    ) -> dict[str, Any]:
        return {
            "dispute_id": f"disp-{uuid.uuid4()}",
            "job_id": job_id,
            "reported_by": reported_by,
            "dispute_type": dispute_type,
            "description": description,
            "expected_amount": None,
            "evidence": [],
            "status": DISPUTE_OPEN,
            "outcome": None,
            "resolution_amount": None,
            "resolution_notes": None,
            "processor_dispute_id": None,
            "created_at": now_iso(),
            "reviewed_at": None,
            "resolved_at": None,
        }

    def open_dispute(self, reporter_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Open a dispute on a completed job, as its poster or worker."""
        job_id = require_str(payload, "job_id", max_length=100)
        dispute_type = payload.get("dispute_type")
        if dispute_type not in DISPUTE_TYPES:
            raise ValidationError(
                "INVALID_DISPUTE_TYPE",
                "dispute_type must be one of: " + ", ".join(sorted(DISPUTE_TYPES)),
            )
        description = require_str(
            payload, "description", max_length=self._max_description_length
        )
        expected_amount = optional_amount(payload, "expected_amount")
        evidence = self._parse_evidence(payload.get("evidence"))

        job = load_job(self._jobs, job_id)
        require_party(job, reporter_id)
        status = job_status(job)
        if status == JobStatus.DISPUTED:
            raise StateConflictError(
                "DISPUTE_ALREADY_OPEN",
                "The job already has an unresolved dispute",
                {"job_id": job_id},
            )
        if status != JobStatus.COMPLETED:
            raise StateConflictError(
                "JOB_NOT_COMPLETED",
                "Disputes can only be opened on completed jobs",
                {"job_id": job_id, "status": job["status"]},
            )

        dispute = self._new_dispute(job_id, reporter_id, str(dispute_type), description)
        dispute["expected_amount"] = None if expected_amount is None else to_cents(expected_amount)
        dispute["evidence"] = evidence
        return dispute_to_response(self._insert(dispute))

    def start_review(self, dispute_id: str, actor_id: str) -> dict[str, Any]:
        """Operator takes an open dispute under review."""
        self._require_operator(actor_id)
        dispute = self._load_dispute(dispute_id)
        updated = self._disputes.update_dispute(
            dispute_id,
            {"status": DISPUTE_UNDER_REVIEW, "reviewed_at": now_iso()},
            expected_status=DISPUTE_OPEN,
        )
        if updated == 0:
            raise StateConflictError(
                "DISPUTE_NOT_OPEN",
                "Only open disputes can be taken under review",
                {"dispute_id": dispute_id, "status": dispute["status"]},
            )
        self._events.publish(dispute["job_id"], "dispute_under_review", {"dispute_id": dispute_id})
        return dispute_to_response(self._load_dispute(dispute_id))

    async def resolve(
        self, dispute_id: str, actor_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Operator resolves a dispute.

        ``partial_refund_to_poster`` refunds part of the original charge, at
        most what is left after earlier dispute refunds.
        ``additional_transfer_to_worker`` pays the worker out of band.
        The payment runs before the dispute is closed, and its idempotency
        key is tied to the dispute, so a failed resolution can be repeated.
        """
        self._require_operator(actor_id)
        outcome = payload.get("outcome")
        if outcome not in OUTCOMES:
            raise ValidationError(
                "INVALID_OUTCOME", "outcome must be one of: " + ", ".join(sorted(OUTCOMES))
            )
        notes = optional_str(payload, "notes", max_length=self._max_description_length)
        amount = 0
        if outcome != OUTCOME_NO_ACTION:
            if "amount" not in payload:
                raise ValidationError("INVALID_PAYLOAD", "Missing required field: amount")
            amount = to_cents(parse_amount(payload["amount"], "amount"))

        dispute = self._load_dispute(dispute_id)
        if dispute["status"] == DISPUTE_RESOLVED:
            raise StateConflictError(
                "DISPUTE_ALREADY_RESOLVED",
                "The dispute is already resolved",
                {"dispute_id": dispute_id},
            )
        job = load_job(self._jobs, dispute["job_id"])
        job_id = job["job_id"]

        if outcome == OUTCOME_PARTIAL_REFUND:
            await self._refund_poster(dispute_id, job_id, amount)
        elif outcome == OUTCOME_ADDITIONAL_TRANSFER:
            await self._pay_worker(dispute_id, job, amount)

        resolved = self._disputes.update_dispute(
            dispute_id,
            {
                "status": DISPUTE_RESOLVED,
                "outcome": outcome,
                "resolution_amount": amount if amount > 0 else None,
                "resolution_notes": notes,
                "resolved_at": now_iso(),
            },
            expected_status=dispute["status"],
        )
        if resolved == 0:
            raise StateConflictError(
                "DISPUTE_ALREADY_RESOLVED",
                "The dispute changed while it was being resolved",
                {"dispute_id": dispute_id},
            )
        self._move_job(job_id, JobStatus.DISPUTED, JobStatus.COMPLETED)

        self._logger.info(
            "Dispute resolved",
            extra={
                "dispute_id": dispute_id,
                "job_id": job_id,
                "outcome": outcome,
                "amount": format_cents(amount),
            },
        )
        self._events.publish(
            job_id,
            "dispute_resolved",
            {"dispute_id": dispute_id, "outcome": outcome, "amount": format_cents(amount)},
        )
        return dispute_to_response(self._load_dispute(dispute_id))

    async def _refund_poster(self, dispute_id: str, job_id: str, amount: int) -> None:
        escrow = self._ledger.snapshot(job_id)
        already_refunded = self._ledger.dispute_adjustment_total(job_id, EVENT_DISPUTE_REFUND)
        refundable = escrow["authorized_amount"] - escrow["refunded_amount"] - already_refunded
        if amount > refundable:
            raise ValidationError(
                "REFUND_EXCEEDS_CHARGE",
                "Refund exceeds what is left of the original charge",
                {"refundable": format_cents(refundable)},
            )
        refund_id = await self._payments.refund(
            dispute_id, job_id, escrow["hold_id"], amount, operation=EVENT_DISPUTE_REFUND
        )
        self._ledger.record_dispute_adjustment(
            job_id, dispute_id, EVENT_DISPUTE_REFUND, amount, refund_id
        )

    async def _pay_worker(self, dispute_id: str, job: dict[str, Any], amount: int) -> None:
        destination = self._payments.get_payout_destination(job["worker_id"])
        result = await self._payments.transfer(
            dispute_id, job["job_id"], destination, amount, operation=EVENT_DISPUTE_TRANSFER
        )
        self._ledger.record_dispute_adjustment(
            job["job_id"], dispute_id, EVENT_DISPUTE_TRANSFER, amount, result.transfer_id
        )

    def get_dispute(self, dispute_id: str, viewer_id: str) -> dict[str, Any]:
        """A dispute, visible to the job's parties and the operator."""
        dispute = self._load_dispute(dispute_id)
        job = load_job(self._jobs, dispute["job_id"])
        if viewer_id not in (job["poster_id"], job["worker_id"], self._operator_id):
            raise AuthorizationError(
                "FORBIDDEN", "Only the job's parties can view this dispute"
            )
        return dispute_to_response(dispute)

    def list_disputes(self, job_id: str, viewer_id: str) -> dict[str, Any]:
        job = load_job(self._jobs, job_id)
        if viewer_id not in (job["poster_id"], job["worker_id"], self._operator_id):
            raise AuthorizationError(
                "FORBIDDEN", "Only the job's parties can view its disputes", {"job_id": job_id}
            )
        return {
            "job_id": job_id,
            "disputes": [
                dispute_to_response(dispute)
                for dispute in self._disputes.list_disputes_for_job(job_id)
            ],
        }

    async def on_processor_dispute(self, data: dict[str, Any]) -> None:
        """
        A chargeback reported by the processor opens a dispute for the poster.

        Ignored (and logged) when the job is unknown, not completed, or
        already disputed.
        """
        job_id = data.get("job_id")
        processor_dispute_id = data.get("dispute_id")
        if not isinstance(job_id, str) or not isinstance(processor_dispute_id, str):
            raise ValidationError(
                "INVALID_WEBHOOK", "charge.dispute.created requires job_id and dispute_id"
            )
        job = self._jobs.get_job(job_id)
        if job is None or job_status(job) != JobStatus.COMPLETED:
            self._logger.warning(
                "Processor dispute not applicable",
                extra={
                    "job_id": job_id,
                    "processor_dispute_id": processor_dispute_id,
                    "status": None if job is None else job["status"],
                },
            )
            return

        reason = data.get("reason") if isinstance(data.get("reason"), str) else "unspecified"
        dispute = self._new_dispute(
            job_id,
            job["poster_id"],
            "payment_incorrect",
            f"Chargeback reported by the payment processor: {reason}",
        )
        dispute["processor_dispute_id"] = processor_dispute_id
        try:
            self._insert(dispute)
        except StateConflictError as exc:
            self._logger.warning(
                "Processor dispute not applicable",
                extra={
                    "job_id": job_id,
                    "processor_dispute_id": processor_dispute_id,
                    "error_code": exc.error,
                },
            )

    def register_webhook_handlers(self) -> None:
        self._payments.register_handler("charge.dispute.created", self.on_processor_dispute)
