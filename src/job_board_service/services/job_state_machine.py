"""Job lifecycle coordinator: owns job status and drives every transition."""

from __future__ import annotations

import uuid
from datetime import date
from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    PaymentError,
    PaymentPermanentError,
    StateConflictError,
    ValidationError,
)
from job_board_service.logging import get_logger
from job_board_service.services.job_guards import (
    check_version,
    job_status,
    load_job,
    require_assigned_worker,
    require_party,
    require_poster,
    version_conflict,
)
from job_board_service.services.job_status import (
    PRE_ASSIGNMENT_STATUSES,
    JobStatus,
    ensure_transition,
)
from job_board_service.services.payload_fields import (
    format_cents,
    now_iso,
    optional_bool,
    optional_str,
    parse_amount,
    require_str,
    require_version,
    to_cents,
)
from job_board_service.services.payment_orchestrator import OP_AUTHORIZE, OP_TRANSFER
from job_board_service.services.views import job_to_summary

if TYPE_CHECKING:
    from collections.abc import Callable
    from decimal import Decimal

    from job_board_service.services.escrow_ledger import EscrowLedger
    from job_board_service.services.job_events import JobEventBus
    from job_board_service.services.job_store import JobStore
    from job_board_service.services.payment_orchestrator import PaymentOrchestrator
    from job_board_service.services.task_tracker import TaskTracker

    JobUpdates = dict[str, Any] | Callable[[dict[str, Any]], dict[str, Any]]

PAYMENT_TYPES = frozenset({"fixed", "hourly"})

# Internal writes re-read and retry this often when they lose a version race.
_MAX_INTERNAL_WRITE_ATTEMPTS = 5

_MAX_SKILLS = 20
_MAX_SKILL_LENGTH = 50
_MAX_LOCATION_LENGTH = 200


class JobStateMachine:
    """
    Top-level coordinator of the job lifecycle.

    User-driven transitions carry the job version the caller observed and
    are rejected with VERSION_CONFLICT when it is stale. Transitions driven
    by payment outcomes (synchronous results and webhooks) re-read the job
    and apply only while the job is still in the state the outcome belongs
    to; an outcome that arrives too late is reconciled (a hold placed for a
    job that was canceled meanwhile is refunded) rather than applied.

    A job is never moved to ``open`` before its escrow holds a successful
    authorization; the store enforces the same rule with a trigger.
    """

    def __init__(
        self,
        store: JobStore,
        ledger: EscrowLedger,
        payments: PaymentOrchestrator,
        task_tracker: TaskTracker,
        events: JobEventBus,
        fee_rate: Decimal,
        min_payment_amount: Decimal,
        max_payment_amount: Decimal,
        max_refund_rounds: int,
        max_title_length: int,
        max_description_length: int,
        operator_id: str,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._payments = payments
        self._task_tracker = task_tracker
        self._events = events
        self._fee_rate = fee_rate
        self._min_payment_amount = min_payment_amount
        self._max_payment_amount = max_payment_amount
        self._max_refund_rounds = max_refund_rounds
        self._max_title_length = max_title_length
        self._max_description_length = max_description_length
        self._operator_id = operator_id
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Write helpers
    # ------------------------------------------------------------------

    def _announce(self, job: dict[str, Any], previous: str) -> None:
        if job["status"] != previous:
            self._logger.info(
                "Job status changed",
                extra={
                    "job_id": job["job_id"],
                    "from_status": previous,
                    "to_status": job["status"],
                    "version": job["version"],
                },
            )
        self._events.publish(
            job["job_id"],
            "status_changed" if job["status"] != previous else "job_updated",
            {"status": job["status"], "version": job["version"]},
        )

    def _transition(
        self,
        job: dict[str, Any],
        target: JobStatus | None,
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Version-checked write against the job as the caller read it.

        Raises:
            StateConflictError: INVALID_TRANSITION or VERSION_CONFLICT
        """
        job_id = job["job_id"]
        columns = {**updates, "updated_at": now_iso()}
        if target is not None:
            ensure_transition(job_status(job), target, job_id)
            columns["status"] = target.value

        affected = self._store.update_job(
            job_id,
            columns,
            expected_version=job["version"],
            expected_status=job["status"],
        )
        if affected == 0:
            current = self._store.get_job(job_id)
            raise version_conflict(
                job_id, job["version"], None if current is None else current["version"]
            )
        updated = load_job(self._store, job_id)
        self._announce(updated, job["status"])
        return updated

    def _write_latest(
        self,
        job_id: str,
        updates: JobUpdates,
        allowed_from: frozenset[JobStatus],
        target: JobStatus | None = None,
    ) -> dict[str, Any] | None:
        """
        Apply an outcome to the latest version of a job.

        Returns the updated job, or None when the job has meanwhile left
        ``allowed_from`` and the outcome no longer applies.
        """
        for _ in range(_MAX_INTERNAL_WRITE_ATTEMPTS):
            job = load_job(self._store, job_id)
            if job_status(job) not in allowed_from:
                return None
            columns = updates(job) if callable(updates) else updates
            try:
                return self._transition(job, target, columns)
            except StateConflictError as exc:
                if exc.error != "VERSION_CONFLICT":
                    raise
        current = load_job(self._store, job_id)
        raise version_conflict(job_id, current["version"], current["version"])

    def _with_job_context(self, exc: PaymentError, job_id: str) -> None:
        """Attach the persisted job state so the caller can re-read and retry."""
        job = self._store.get_job(job_id)
        if job is not None:
            exc.details = {
                **exc.details,
                "job_id": job_id,
                "status": job["status"],
                "version": job["version"],
            }

    def render(self, job: dict[str, Any]) -> dict[str, Any]:
        return self._task_tracker.render_job(job)

    # ------------------------------------------------------------------
    # Field parsing
    # ------------------------------------------------------------------

    def _parse_amount_cents(self, value: object) -> int:
        amount = parse_amount(value, "payment_amount")
        if not self._min_payment_amount <= amount <= self._max_payment_amount:
            raise ValidationError(
                "AMOUNT_OUT_OF_RANGE",
                f"payment_amount must be between {self._min_payment_amount} "
                f"and {self._max_payment_amount}",
                {
                    "min_payment_amount": str(self._min_payment_amount),
                    "max_payment_amount": str(self._max_payment_amount),
                },
            )
        return to_cents(amount)

    @staticmethod
    def _parse_payment_type(value: object) -> str:
        if value not in PAYMENT_TYPES:
            raise ValidationError(
                "INVALID_PAYLOAD", "payment_type must be one of: fixed, hourly"
            )
        return str(value)

    @staticmethod
    def _parse_skills(value: object) -> list[str]:
        if value is None:
            return []
        if (
            not isinstance(value, list)
            or len(value) > _MAX_SKILLS
            or not all(
                isinstance(skill, str) and 0 < len(skill.strip()) <= _MAX_SKILL_LENGTH
                for skill in value
            )
        ):
            raise ValidationError(
                "INVALID_PAYLOAD",
                f"required_skills must be a list of at most {_MAX_SKILLS} short strings",
            )
        return list(value)

    @staticmethod
    def _parse_date_needed(payload: dict[str, Any]) -> str | None:
        value = optional_str(payload, "date_needed", max_length=32)
        if value is None:
            return None
        try:
            return date.fromisoformat(value).isoformat()
        except ValueError as exc:
            raise ValidationError(
                "INVALID_PAYLOAD", "date_needed must be an ISO date (YYYY-MM-DD)"
            ) from exc

    def _parse_editable_fields(
        self, payload: dict[str, Any], *, partial: bool
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        if not partial or "title" in payload:
            fields["title"] = require_str(payload, "title", max_length=self._max_title_length)
        if not partial or "description" in payload:
            fields["description"] = require_str(
                payload, "description", max_length=self._max_description_length
            )
        if not partial or "location" in payload:
            fields["location"] = optional_str(
                payload, "location", max_length=_MAX_LOCATION_LENGTH
            )
        if not partial or "required_skills" in payload:
            fields["required_skills"] = self._parse_skills(payload.get("required_skills"))
        if not partial or "payment_amount" in payload:
            if "payment_amount" not in payload:
                raise ValidationError("INVALID_PAYLOAD", "Missing required field: payment_amount")
            fields["payment_amount"] = self._parse_amount_cents(payload["payment_amount"])
        if not partial or "payment_type" in payload:
            fields["payment_type"] = self._parse_payment_type(
                payload.get("payment_type", "fixed")
            )
        if not partial or "date_needed" in payload:
            fields["date_needed"] = self._parse_date_needed(payload)
        if not partial or "equipment_provided" in payload:
            fields["equipment_provided"] = int(optional_bool(payload, "equipment_provided"))
        return fields

    # ------------------------------------------------------------------
    # Creation and submission
    # ------------------------------------------------------------------

    async def create_job(self, poster_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Create a job as a draft, then submit it unless ``save_as_draft`` is set.

        Submitting authorizes the payment amount; the job is published as
        open only once the authorization hold is recorded in escrow.
        """
        fields = self._parse_editable_fields(payload, partial=False)
        save_as_draft = optional_bool(payload, "save_as_draft")
        method_id = optional_str(payload, "payment_method_id", max_length=255)
        if not save_as_draft:
            method_id = self._payments.resolve_payment_method(poster_id, method_id)

        job_id = f"job-{uuid.uuid4()}"
        timestamp = now_iso()
        tasks = self._task_tracker.build_tasks(job_id, payload.get("tasks"), timestamp)
        job_data = {
            "job_id": job_id,
            "poster_id": poster_id,
            "worker_id": None,
            "status": JobStatus.DRAFT.value,
            "version": 1,
            "payment_method_id": method_id,
            "payment_error": None,
            "authorization_pending": 0,
            "transfer_id": None,
            "payout_started_at": None,
            "override_incomplete_tasks": 0,
            "cancel_reason": None,
            "canceled_by": None,
            "refund_rounds": 0,
            "escalated": 0,
            "date_posted": None,
            "date_completed": None,
            "canceled_at": None,
            "created_at": timestamp,
            "updated_at": timestamp,
            **fields,
        }
        self._store.insert_job(job_data, tasks)
        self._logger.info(
            "Job created",
            extra={
                "job_id": job_id,
                "poster_id": poster_id,
                "payment_amount": format_cents(fields["payment_amount"]),
                "draft": save_as_draft,
            },
        )

        job = load_job(self._store, job_id)
        if save_as_draft:
            return self.render(job)
        return await self._submit(job, method_id)

    async def submit_job(
        self, job_id: str, actor_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Submit a draft for payment authorization."""
        version = require_version(payload)
        method_id = optional_str(payload, "payment_method_id", max_length=255)
        job = load_job(self._store, job_id)
        require_poster(job, actor_id)
        check_version(job, version)
        ensure_transition(job_status(job), JobStatus.PENDING_PAYMENT, job_id)
        resolved = self._payments.resolve_payment_method(
            actor_id, method_id if method_id is not None else job["payment_method_id"]
        )
        return await self._submit(job, resolved)

    async def _submit(self, job: dict[str, Any], method_id: str | None) -> dict[str, Any]:
        if method_id is None:
            msg = "Submitting a job requires a resolved payment method"
            raise RuntimeError(msg)
        job = self._transition(
            job,
            JobStatus.PENDING_PAYMENT,
            {"payment_method_id": method_id, "payment_error": None},
        )
        return await self._authorize(job, new_epoch=False)

    async def update_draft(
        self, job_id: str, actor_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Edit a job that has not been authorized yet."""
        version = require_version(payload)
        job = load_job(self._store, job_id)
        require_poster(job, actor_id)
        check_version(job, version)

        status = job_status(job)
        editable = status == JobStatus.DRAFT or (
            status == JobStatus.PENDING_PAYMENT
            and not job["authorization_pending"]
            and self._ledger.snapshot(job_id)["authorized_at"] is None
        )
        if not editable:
            raise StateConflictError(
                "JOB_NOT_EDITABLE",
                "Only unauthorized jobs can be edited",
                {"job_id": job_id, "status": job["status"]},
            )

        fields = self._parse_editable_fields(payload, partial=True)
        if len(fields) == 0:
            return self.render(job)
        return self.render(self._transition(job, None, fields))

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def _authorize(self, job: dict[str, Any], *, new_epoch: bool) -> dict[str, Any]:
        job_id = job["job_id"]
        pending = frozenset({JobStatus.PENDING_PAYMENT})
        try:
            result = await self._payments.authorize(
                job_id,
                job["payment_amount"],
                job["payment_method_id"],
                job["poster_id"],
                new_epoch=new_epoch,
            )
        except PaymentError as exc:
            self._write_latest(
                job_id, {"payment_error": exc.error, "authorization_pending": 0}, pending
            )
            self._with_job_context(exc, job_id)
            raise

        if not result.settled:
            updated = self._write_latest(
                job_id, {"authorization_pending": 1, "payment_error": None}, pending
            )
            self._logger.info(
                "Authorization awaiting processor confirmation",
                extra={"job_id": job_id, "hold_id": result.hold_id},
            )
            return self.render(updated if updated is not None else load_job(self._store, job_id))

        return self.render(await self._record_authorization(job_id, result.hold_id))

    async def _record_authorization(self, job_id: str, hold_id: str) -> dict[str, Any]:
        """
        Record a successful hold and publish the job.

        A hold that arrives for a job that no longer waits for one is
        refunded instead of publishing the job a second time.
        """
        job = load_job(self._store, job_id)
        escrow = self._ledger.snapshot(job_id)

        if escrow["hold_id"] is not None and escrow["hold_id"] != hold_id:
            await self._refund_stray_hold(job, hold_id)
            return load_job(self._store, job_id)

        status = job_status(job)
        if status == JobStatus.PENDING_PAYMENT:
            self._ledger.open(job_id, job["payment_amount"], self._fee_rate, hold_id)
            opened = self._write_latest(
                job_id,
                {"date_posted": now_iso(), "authorization_pending": 0, "payment_error": None},
                frozenset({JobStatus.PENDING_PAYMENT}),
                JobStatus.OPEN,
            )
            if opened is not None:
                return opened
            job = load_job(self._store, job_id)
            status = job_status(job)

        if status == JobStatus.CANCELED:
            if escrow["hold_id"] is None:
                self._ledger.open(job_id, job["payment_amount"], self._fee_rate, hold_id)
            await self._refund_late_hold(job_id)
        return load_job(self._store, job_id)

    async def _refund_late_hold(self, job_id: str) -> None:
        """Release a hold recorded for a job that was canceled before it landed."""
        escrow = self._ledger.snapshot(job_id)
        remaining = escrow["authorized_amount"] - escrow["refunded_amount"]
        if remaining == 0 and escrow["fee_waived_amount"] == escrow["fee_amount"]:
            return
        if remaining > 0:
            refund_id = await self._payments.refund(job_id, job_id, escrow["hold_id"], remaining)
            self._ledger.record_refund(job_id, remaining, refund_id)
        self._ledger.waive_fee(job_id)
        self._logger.warning(
            "Late authorization on canceled job refunded",
            extra={"job_id": job_id, "hold_id": escrow["hold_id"]},
        )
        self._events.publish(job_id, "late_hold_refunded", {"hold_id": escrow["hold_id"]})

    async def _refund_stray_hold(self, job: dict[str, Any], hold_id: str) -> None:
        """Release a hold that is not the one escrow recorded for the job."""
        refund_id = await self._payments.refund(
            hold_id, job["job_id"], hold_id, job["payment_amount"]
        )
        self._ledger.record_stray_hold_refund(
            job["job_id"], hold_id, job["payment_amount"], refund_id
        )
        self._logger.warning(
            "Duplicate authorization hold released",
            extra={"job_id": job["job_id"], "hold_id": hold_id},
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def start_job(
        self, job_id: str, actor_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Assigned worker starts work. Repeated calls once in progress are no-ops."""
        version = require_version(payload)
        job = load_job(self._store, job_id)
        require_assigned_worker(job, actor_id)
        if job_status(job) == JobStatus.IN_PROGRESS:
            return self.render(job)
        check_version(job, version)
        return self.render(self._transition(job, JobStatus.IN_PROGRESS, {}))

    async def complete_job(
        self, job_id: str, actor_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Assigned worker marks the job complete, which pays them out.

        With an incomplete checklist the call is rejected with
        TASKS_INCOMPLETE unless ``override_incomplete_tasks`` is set; the
        override is recorded on the job.
        """
        version = require_version(payload)
        override = optional_bool(payload, "override_incomplete_tasks")
        job = load_job(self._store, job_id)
        require_assigned_worker(job, actor_id)
        check_version(job, version)
        ensure_transition(job_status(job), JobStatus.PAYOUT_PENDING, job_id)

        progress = self._task_tracker.progress(job_id)
        incomplete = progress["completed"] < progress["total"]
        if incomplete and not override:
            raise ValidationError(
                "TASKS_INCOMPLETE",
                "Not all tasks are completed; confirm with override_incomplete_tasks",
                {"completed": progress["completed"], "total": progress["total"]},
            )

        job = self._transition(
            job,
            JobStatus.PAYOUT_PENDING,
            {"override_incomplete_tasks": int(incomplete), "payment_error": None},
        )
        if incomplete:
            self._logger.warning(
                "Job completed with incomplete tasks",
                extra={
                    "job_id": job_id,
                    "completed": progress["completed"],
                    "total": progress["total"],
                },
            )
        return self.render(await self._settle_payout(job))

    async def _settle_payout(self, job: dict[str, Any]) -> dict[str, Any]:
        """
        Capture the hold and transfer the net payable to the worker.

        ``payout_started_at`` is written before the first processor call and
        blocks cancellation from then on. Only a permanent failure clears it,
        since after a timeout the transfer may already have gone out.
        """
        job_id = job["job_id"]
        payable = frozenset({JobStatus.PAYOUT_PENDING})
        try:
            destination = self._payments.get_payout_destination(job["worker_id"])
            started = self._write_latest(
                job_id,
                lambda latest: {"payout_started_at": latest["payout_started_at"] or now_iso()},
                payable,
            )
            if started is None:
                return load_job(self._store, job_id)

            escrow = self._ledger.snapshot(job_id)
            if escrow["captured_at"] is None:
                charge_id = await self._payments.capture(
                    job_id, escrow["hold_id"], escrow["authorized_amount"]
                )
                self._ledger.record_capture(job_id, charge_id)
            if escrow["transferred_at"] is not None:
                return await self._record_payout(job_id, started["transfer_id"] or "")

            result = await self._payments.transfer(
                job_id, job_id, destination, escrow["net_payable"]
            )
        except PaymentError as exc:
            failure: dict[str, Any] = {"payment_error": exc.error}
            if isinstance(exc, PaymentPermanentError):
                failure["payout_started_at"] = None
            self._write_latest(job_id, failure, payable)
            self._with_job_context(exc, job_id)
            raise

        if result.settled:
            return await self._record_payout(job_id, result.transfer_id)

        updated = self._write_latest(
            job_id, {"transfer_id": result.transfer_id, "payment_error": None}, payable
        )
        self._logger.info(
            "Transfer awaiting settlement",
            extra={"job_id": job_id, "transfer_id": result.transfer_id},
        )
        return updated if updated is not None else load_job(self._store, job_id)

    async def _record_payout(self, job_id: str, transfer_id: str) -> dict[str, Any]:
        escrow = self._ledger.snapshot(job_id)
        if escrow["transferred_at"] is None:
            self._ledger.record_transfer(job_id, escrow["net_payable"], transfer_id)
        completed = self._write_latest(
            job_id,
            {"transfer_id": transfer_id, "date_completed": now_iso(), "payment_error": None},
            frozenset({JobStatus.PAYOUT_PENDING}),
            JobStatus.COMPLETED,
        )
        return completed if completed is not None else load_job(self._store, job_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_job(
        self, job_id: str, actor_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Cancel a job before completion and refund its hold.

        Before assignment only the poster may cancel. Afterwards either
        party may, stating a reason. The job reaches ``canceled`` once the
        processor accepted the refund; until then it waits in
        ``cancel_pending`` and a repeated cancel re-drives the refund.
        """
        reason = optional_str(payload, "reason", max_length=self._max_description_length)
        job = load_job(self._store, job_id)
        status = job_status(job)
        if status in (JobStatus.COMPLETED, JobStatus.DISPUTED, JobStatus.CANCELED):
            ensure_transition(status, JobStatus.CANCEL_PENDING, job_id)

        if status == JobStatus.CANCEL_PENDING:
            require_party(job, actor_id)
            return self.render(await self._settle_refund(job))

        version = require_version(payload)
        if status in PRE_ASSIGNMENT_STATUSES:
            require_poster(job, actor_id)
        else:
            require_party(job, actor_id)
            if reason is None:
                raise ValidationError(
                    "REASON_REQUIRED", "Cancelling an assigned job requires a reason"
                )

        escrow = self._ledger.snapshot(job_id)
        if status == JobStatus.PAYOUT_PENDING and (
            job["payout_started_at"] is not None
            or job["transfer_id"] is not None
            or escrow["transferred_at"] is not None
        ):
            raise StateConflictError(
                "TRANSFER_IN_FLIGHT",
                "A payout to the worker is in progress or already issued",
                {
                    "job_id": job_id,
                    "transfer_id": job["transfer_id"],
                    "payout_started_at": job["payout_started_at"],
                },
            )
        check_version(job, version)

        cancel_fields = {"cancel_reason": reason, "canceled_by": actor_id}
        if escrow["authorized_at"] is None:
            return self.render(
                self._transition(
                    job, JobStatus.CANCELED, {**cancel_fields, "canceled_at": now_iso()}
                )
            )

        job = self._transition(job, JobStatus.CANCEL_PENDING, cancel_fields)
        return self.render(await self._settle_refund(job))

    async def _settle_refund(self, job: dict[str, Any]) -> dict[str, Any]:
        """Refund what escrow still holds and finish the cancellation."""
        job_id = job["job_id"]
        cancel_pending = frozenset({JobStatus.CANCEL_PENDING})
        escrow = self._ledger.snapshot(job_id)
        remaining = escrow["authorized_amount"] - escrow["refunded_amount"]
        try:
            if remaining > 0:
                refund_id = await self._payments.refund(
                    job_id, job_id, escrow["hold_id"], remaining
                )
                self._ledger.record_refund(job_id, remaining, refund_id)
        except PaymentError as exc:

            def failed_round(latest: dict[str, Any]) -> dict[str, Any]:
                rounds = latest["refund_rounds"] + 1
                return {
                    "refund_rounds": rounds,
                    "escalated": int(rounds >= self._max_refund_rounds),
                    "payment_error": exc.error,
                }

            updated = self._write_latest(job_id, failed_round, cancel_pending)
            if updated is not None and updated["escalated"]:
                self._logger.error(
                    "Refund escalated to operator",
                    extra={
                        "job_id": job_id,
                        "refund_rounds": updated["refund_rounds"],
                        "error_code": exc.error,
                    },
                )
            self._with_job_context(exc, job_id)
            raise

        self._ledger.waive_fee(job_id)
        canceled = self._write_latest(
            job_id,
            {"canceled_at": now_iso(), "payment_error": None},
            cancel_pending,
            JobStatus.CANCELED,
        )
        return canceled if canceled is not None else load_job(self._store, job_id)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_payment(
        self, job_id: str, actor_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Re-drive the payment operation a job is waiting on.

        ``pending_payment`` authorizes again under the previous idempotency
        key, or a new one when a different payment method is given.
        ``payout_pending`` resumes capture and transfer. ``cancel_pending``
        retries the refund.
        """
        version = require_version(payload)
        method_id = optional_str(payload, "payment_method_id", max_length=255)
        job = load_job(self._store, job_id)
        is_operator = actor_id == self._operator_id
        status = job_status(job)

        if status == JobStatus.PENDING_PAYMENT:
            if not is_operator:
                require_poster(job, actor_id)
            check_version(job, version)
            if job["authorization_pending"]:
                raise StateConflictError(
                    "AUTHORIZATION_PENDING",
                    "The processor is still confirming the previous authorization",
                    {"job_id": job_id},
                )
            resolved = self._payments.resolve_payment_method(
                job["poster_id"],
                method_id if method_id is not None else job["payment_method_id"],
            )
            # Same method: reuse the key, an earlier timed-out call may have placed a hold.
            switched = resolved != job["payment_method_id"]
            job = self._transition(job, None, {"payment_method_id": resolved})
            return await self._authorize(job, new_epoch=switched)

        if status == JobStatus.PAYOUT_PENDING:
            if not is_operator:
                require_party(job, actor_id)
            check_version(job, version)
            return self.render(await self._settle_payout(job))

        if status == JobStatus.CANCEL_PENDING:
            if not is_operator:
                require_party(job, actor_id)
            check_version(job, version)
            return self.render(await self._settle_refund(job))

        raise StateConflictError(
            "NOTHING_TO_RETRY",
            "The job is not waiting on a payment operation",
            {"job_id": job_id, "status": job["status"]},
        )

    # ------------------------------------------------------------------
    # Processor webhooks
    # ------------------------------------------------------------------

    def register_webhook_handlers(self) -> None:
        self._payments.register_handler("authorization.succeeded", self.on_authorization_succeeded)
        self._payments.register_handler("authorization.failed", self.on_authorization_failed)
        self._payments.register_handler("transfer.paid", self.on_transfer_paid)
        self._payments.register_handler("transfer.failed", self.on_transfer_failed)

    @staticmethod
    def _data_str(data: dict[str, Any], name: str) -> str:
        value = data.get(name)
        if not isinstance(value, str) or len(value) == 0:
            raise ValidationError("INVALID_WEBHOOK", f"Webhook data is missing '{name}'")
        return value

    def _webhook_job(self, job_id: str, event_type: str) -> dict[str, Any] | None:
        job = self._store.get_job(job_id)
        if job is None:
            self._logger.warning(
                "Webhook for unknown job acknowledged",
                extra={"job_id": job_id, "event_type": event_type},
            )
        return job

    async def on_authorization_succeeded(self, data: dict[str, Any]) -> None:
        job_id = self._data_str(data, "job_id")
        hold_id = self._data_str(data, "hold_id")
        if self._webhook_job(job_id, "authorization.succeeded") is None:
            return
        await self._record_authorization(job_id, hold_id)

    async def on_authorization_failed(self, data: dict[str, Any]) -> None:
        job_id = self._data_str(data, "job_id")
        failure_code = data.get("failure_code") or "AUTHORIZATION_FAILED"
        if self._webhook_job(job_id, "authorization.failed") is None:
            return
        self._payments.mark_failed(job_id, OP_AUTHORIZE)
        self._write_latest(
            job_id,
            {"authorization_pending": 0, "payment_error": str(failure_code)},
            frozenset({JobStatus.PENDING_PAYMENT}),
        )
        self._logger.warning(
            "Authorization failed", extra={"job_id": job_id, "error_code": failure_code}
        )

    async def on_transfer_paid(self, data: dict[str, Any]) -> None:
        job_id = self._data_str(data, "job_id")
        transfer_id = self._data_str(data, "transfer_id")
        job = self._webhook_job(job_id, "transfer.paid")
        if job is None or job_status(job) != JobStatus.PAYOUT_PENDING:
            return
        await self._record_payout(job_id, transfer_id)

    async def on_transfer_failed(self, data: dict[str, Any]) -> None:
        job_id = self._data_str(data, "job_id")
        transfer_id = self._data_str(data, "transfer_id")
        failure_code = data.get("failure_code") or "TRANSFER_FAILED"
        if self._webhook_job(job_id, "transfer.failed") is None:
            return
        self._payments.mark_failed(job_id, OP_TRANSFER)
        self._write_latest(
            job_id,
            {"transfer_id": None, "payout_started_at": None, "payment_error": str(failure_code)},
            frozenset({JobStatus.PAYOUT_PENDING}),
        )
        self._logger.warning(
            "Transfer failed",
            extra={"job_id": job_id, "transfer_id": transfer_id, "error_code": failure_code},
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _visible_job(self, job_id: str, viewer_id: str | None) -> dict[str, Any]:
        """Open jobs are public; others only to their parties and the operator."""
        job = load_job(self._store, job_id)
        if job_status(job) == JobStatus.OPEN:
            return job
        if viewer_id is None or viewer_id not in (
            job["poster_id"],
            job["worker_id"],
            self._operator_id,
        ):
            raise NotFoundError("JOB_NOT_FOUND", "Job not found", {"job_id": job_id})
        return job

    def get_job(self, job_id: str, viewer_id: str | None) -> dict[str, Any]:
        return self.render(self._visible_job(job_id, viewer_id))

    def list_jobs(
        self,
        viewer_id: str | None,
        role: str | None,
        payment_type: str | None,
        limit: int,
        offset: int,
    ) -> dict[str, Any]:
        """The public feed of open jobs, or the caller's own jobs by role."""
        if payment_type is not None:
            self._parse_payment_type(payment_type)
        if role is None:
            jobs = self._store.list_jobs(
                status=JobStatus.OPEN.value,
                poster_id=None,
                worker_id=None,
                payment_type=payment_type,
                limit=limit,
                offset=offset,
            )
        else:
            if viewer_id is None:
                raise AuthorizationError("FORBIDDEN", "Listing own jobs requires a token")
            if role not in ("poster", "worker"):
                raise ValidationError("INVALID_PARAMETER", "role must be poster or worker")
            jobs = self._store.list_jobs(
                status=None,
                poster_id=viewer_id if role == "poster" else None,
                worker_id=viewer_id if role == "worker" else None,
                payment_type=payment_type,
                limit=limit,
                offset=offset,
            )
        return {"jobs": [job_to_summary(job) for job in jobs], "limit": limit, "offset": offset}

    def ledger_report(self, job_id: str, viewer_id: str) -> dict[str, Any]:
        """Escrow snapshot, history and conservation check for the job's parties."""
        job = load_job(self._store, job_id)
        if viewer_id not in (job["poster_id"], job["worker_id"], self._operator_id):
            raise AuthorizationError(
                "FORBIDDEN", "Only the job's parties can inspect its ledger", {"job_id": job_id}
            )
        return self._ledger.report(job_id)

    def ensure_can_watch(self, job_id: str, viewer_id: str | None) -> None:
        self._visible_job(job_id, viewer_id)

    def get_stats(self) -> dict[str, int]:
        return self._store.count_jobs_by_status()

    def payment_backlog(self) -> dict[str, int]:
        """Counts of jobs parked on an unfinished processor call."""
        return self._store.count_payment_backlog()
