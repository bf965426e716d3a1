"""Monetary bookkeeping for a job's escrow hold.

The escrow record of a job is a snapshot folded from an append-only list of
ledger events. No method here talks to the payment processor.

Event kinds and their effect on the snapshot:

- ``authorized``      authorized_amount, fee_amount, net_payable, hold_id
- ``captured``        charge_id, captured_at
- ``transferred``     transferred_amount += amount, transferred_at
- ``refunded``        refunded_amount += amount, refunded_at
- ``fee_waived``      fee_waived_amount += amount
- ``dispute_refund`` / ``dispute_transfer``  none; recorded against the dispute
- ``stray_hold_refunded``  none; a duplicate hold released in full

Conservation, once a job is terminal:
``authorized == refunded + transferred + (fee - fee_waived)``
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import NotFoundError, StateConflictError
from job_board_service.logging import get_logger
from job_board_service.services.payload_fields import compute_fee, format_cents, now_iso

if TYPE_CHECKING:
    from collections.abc import Callable
    from decimal import Decimal

    from job_board_service.services.job_store import JobStore

EVENT_AUTHORIZED = "authorized"
EVENT_CAPTURED = "captured"
EVENT_TRANSFERRED = "transferred"
EVENT_REFUNDED = "refunded"
EVENT_FEE_WAIVED = "fee_waived"
EVENT_DISPUTE_REFUND = "dispute_refund"
EVENT_DISPUTE_TRANSFER = "dispute_transfer"
EVENT_STRAY_HOLD_REFUNDED = "stray_hold_refunded"

DISPUTE_EVENTS: frozenset[str] = frozenset({EVENT_DISPUTE_REFUND, EVENT_DISPUTE_TRANSFER})


def _empty_snapshot(job_id: str) -> dict[str, Any]:
    return {
        "job_id": job_id,
        "authorized_amount": 0,
        "fee_amount": 0,
        "net_payable": 0,
        "refunded_amount": 0,
        "transferred_amount": 0,
        "fee_waived_amount": 0,
        "hold_id": None,
        "charge_id": None,
        "authorized_at": None,
        "captured_at": None,
        "transferred_at": None,
        "refunded_at": None,
    }


class EscrowLedger:
    """Append-only escrow bookkeeping for jobs."""

    def __init__(self, store: JobStore) -> None:
        self._store = store
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _append(
        self,
        job_id: str,
        event_type: str,
        amount: int,
        idempotency_key: str,
        apply: Callable[[dict[str, Any]], dict[str, Any]],
        *,
        reference: str | None = None,
        dispute_id: str | None = None,
        fee_amount: int = 0,
        net_amount: int = 0,
    ) -> bool:
        event = {
            "event_id": f"le-{uuid.uuid4()}",
            "job_id": job_id,
            "event_type": event_type,
            "amount": amount,
            "fee_amount": fee_amount,
            "net_amount": net_amount,
            "reference": reference,
            "dispute_id": dispute_id,
            "idempotency_key": idempotency_key,
            "created_at": now_iso(),
        }
        try:
            recorded = self._store.append_ledger_event(event, apply)
        except LookupError as exc:
            raise NotFoundError("ESCROW_NOT_FOUND", f"No escrow record for job {job_id}") from exc

        if recorded:
            self._logger.info(
                "Ledger event recorded",
                extra={"job_id": job_id, "event_type": event_type, "amount": amount},
            )
        else:
            self._logger.info(
                "Ledger event already recorded",
                extra={"job_id": job_id, "idempotency_key": idempotency_key},
            )
        return recorded

    # ------------------------------------------------------------------
    # Event recording
    # ------------------------------------------------------------------

    def open(self, job_id: str, authorized_amount: int, fee_rate: Decimal, hold_id: str) -> bool:
        """
        Record a successful authorization hold.

        ``fee = authorized * fee_rate`` and ``net = authorized - fee`` are
        fixed here and never recomputed.
        """
        fee_amount = compute_fee(authorized_amount, fee_rate)
        net_payable = authorized_amount - fee_amount
        timestamp = now_iso()

        def apply(record: dict[str, Any]) -> dict[str, Any]:
            if record["authorized_at"] is not None:
                raise StateConflictError(
                    "ALREADY_AUTHORIZED",
                    "Escrow already holds an authorization",
                    {"job_id": job_id, "hold_id": record["hold_id"]},
                )
            return {
                "authorized_amount": authorized_amount,
                "fee_amount": fee_amount,
                "net_payable": net_payable,
                "hold_id": hold_id,
                "authorized_at": timestamp,
            }

        return self._append(
            job_id,
            EVENT_AUTHORIZED,
            authorized_amount,
            f"{job_id}:{EVENT_AUTHORIZED}:{hold_id}",
            apply,
            reference=hold_id,
            fee_amount=fee_amount,
            net_amount=net_payable,
        )

    def record_capture(self, job_id: str, charge_id: str) -> bool:
        """Record that the held funds were captured."""
        timestamp = now_iso()

        def apply(record: dict[str, Any]) -> dict[str, Any]:
            if record["authorized_at"] is None:
                raise StateConflictError(
                    "NOT_AUTHORIZED", "Cannot capture without an authorization", {"job_id": job_id}
                )
            return {"charge_id": charge_id, "captured_at": timestamp}

        escrow = self.snapshot(job_id)
        return self._append(
            job_id,
            EVENT_CAPTURED,
            escrow["authorized_amount"],
            f"{job_id}:{EVENT_CAPTURED}",
            apply,
            reference=charge_id,
        )

    def record_transfer(self, job_id: str, amount: int, transfer_id: str) -> bool:
        """Record the net payout to the worker."""
        timestamp = now_iso()

        def apply(record: dict[str, Any]) -> dict[str, Any]:
            if record["captured_at"] is None:
                raise StateConflictError(
                    "NOT_CAPTURED", "Cannot transfer before capture", {"job_id": job_id}
                )
            if record["refunded_amount"] > 0:
                raise StateConflictError(
                    "ALREADY_REFUNDED", "Cannot transfer refunded funds", {"job_id": job_id}
                )
            if record["transferred_amount"] + amount > record["net_payable"]:
                raise StateConflictError(
                    "TRANSFER_EXCEEDS_NET",
                    "Transfer would exceed the net payable amount",
                    {"job_id": job_id},
                )
            return {
                "transferred_amount": record["transferred_amount"] + amount,
                "transferred_at": timestamp,
            }

        return self._append(
            job_id,
            EVENT_TRANSFERRED,
            amount,
            f"{job_id}:{EVENT_TRANSFERRED}:{transfer_id}",
            apply,
            reference=transfer_id,
        )

    def record_refund(self, job_id: str, amount: int, refund_id: str) -> bool:
        """Record a refund to the poster. Refused once the worker has been paid."""
        timestamp = now_iso()

        def apply(record: dict[str, Any]) -> dict[str, Any]:
            if record["transferred_at"] is not None:
                raise StateConflictError(
                    "REFUND_AFTER_PAYOUT",
                    "Funds already transferred to the worker cannot be refunded",
                    {"job_id": job_id},
                )
            if record["refunded_amount"] + amount > record["authorized_amount"]:
                raise StateConflictError(
                    "REFUND_EXCEEDS_AUTHORIZED",
                    "Refund would exceed the authorized amount",
                    {"job_id": job_id},
                )
            return {
                "refunded_amount": record["refunded_amount"] + amount,
                "refunded_at": timestamp,
            }

        return self._append(
            job_id,
            EVENT_REFUNDED,
            amount,
            f"{job_id}:{EVENT_REFUNDED}:{refund_id}",
            apply,
            reference=refund_id,
        )

    def waive_fee(self, job_id: str) -> bool:
        """Give up the platform fee, as on cancellation."""
        escrow = self.snapshot(job_id)
        outstanding = escrow["fee_amount"] - escrow["fee_waived_amount"]

        def apply(record: dict[str, Any]) -> dict[str, Any]:
            return {"fee_waived_amount": record["fee_amount"]}

        return self._append(
            job_id,
            EVENT_FEE_WAIVED,
            outstanding,
            f"{job_id}:{EVENT_FEE_WAIVED}",
            apply,
        )

    def record_dispute_adjustment(
        self,
        job_id: str,
        dispute_id: str,
        event_type: str,
        amount: int,
        reference: str,
    ) -> bool:
        """Record a compensating payment tied to a dispute. The snapshot is untouched."""
        if event_type not in DISPUTE_EVENTS:
            msg = f"Unknown dispute adjustment: {event_type}"
            raise ValueError(msg)

        def apply(_record: dict[str, Any]) -> dict[str, Any]:
            return {}

        return self._append(
            job_id,
            event_type,
            amount,
            f"{dispute_id}:{event_type}",
            apply,
            reference=reference,
            dispute_id=dispute_id,
        )

    def record_stray_hold_refund(
        self, job_id: str, hold_id: str, amount: int, refund_id: str
    ) -> bool:
        """
        Record the release of a hold escrow never adopted.

        The money never entered this job's escrow, so the snapshot and the
        conservation check are untouched; the event keeps it in the history.
        """

        def apply(_record: dict[str, Any]) -> dict[str, Any]:
            return {}

        return self._append(
            job_id,
            EVENT_STRAY_HOLD_REFUNDED,
            amount,
            f"{hold_id}:{EVENT_STRAY_HOLD_REFUNDED}",
            apply,
            reference=refund_id,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self, job_id: str) -> dict[str, Any]:
        """Return the stored escrow record of a job."""
        record = self._store.get_escrow(job_id)
        if record is None:
            raise NotFoundError("ESCROW_NOT_FOUND", f"No escrow record for job {job_id}")
        return record

    def events(self, job_id: str) -> list[dict[str, Any]]:
        """Return the append-only event history of a job."""
        return self._store.list_ledger_events(job_id)

    def dispute_adjustment_total(self, job_id: str, event_type: str) -> int:
        """Sum of dispute adjustments of one kind already made against a job."""
        return sum(
            event["amount"] for event in self.events(job_id) if event["event_type"] == event_type
        )

    @staticmethod
    def replay(job_id: str, events: list[dict[str, Any]]) -> dict[str, Any]:
        """Rebuild an escrow snapshot from its event history alone."""
        snapshot = _empty_snapshot(job_id)
        for event in events:
            kind = event["event_type"]
            if kind == EVENT_AUTHORIZED:
                snapshot["authorized_amount"] = event["amount"]
                snapshot["fee_amount"] = event["fee_amount"]
                snapshot["net_payable"] = event["net_amount"]
                snapshot["hold_id"] = event["reference"]
                snapshot["authorized_at"] = event["created_at"]
            elif kind == EVENT_CAPTURED:
                snapshot["charge_id"] = event["reference"]
                snapshot["captured_at"] = event["created_at"]
            elif kind == EVENT_TRANSFERRED:
                snapshot["transferred_amount"] += event["amount"]
                snapshot["transferred_at"] = event["created_at"]
            elif kind == EVENT_REFUNDED:
                snapshot["refunded_amount"] += event["amount"]
                snapshot["refunded_at"] = event["created_at"]
            elif kind == EVENT_FEE_WAIVED:
                snapshot["fee_waived_amount"] += event["amount"]
        return snapshot

    @staticmethod
    def is_conserved(record: dict[str, Any]) -> bool:
        """Check that every authorized cent is refunded, transferred or kept as fee."""
        retained_fee = record["fee_amount"] - record["fee_waived_amount"]
        return record["authorized_amount"] == (
            record["refunded_amount"] + record["transferred_amount"] + retained_fee
        )

    def report(self, job_id: str) -> dict[str, Any]:
        """Snapshot, history, dispute adjustments and conservation check, rendered for callers."""
        record = self.snapshot(job_id)
        history = self.events(job_id)
        replayed = self.replay(job_id, history)
        consistent = all(
            replayed[column] == record[column]
            for column in (
                "authorized_amount",
                "fee_amount",
                "net_payable",
                "refunded_amount",
                "transferred_amount",
                "fee_waived_amount",
            )
        )
        return {
            "job_id": job_id,
            "escrow": escrow_to_response(record),
            "events": [
                _event_to_response(event)
                for event in history
                if event["event_type"] not in DISPUTE_EVENTS
            ],
            "dispute_adjustments": [
                _event_to_response(event)
                for event in history
                if event["event_type"] in DISPUTE_EVENTS
            ],
            "conserved": self.is_conserved(record),
            "replay_consistent": consistent,
        }


def escrow_to_response(record: dict[str, Any]) -> dict[str, Any]:
    """Render an escrow record with decimal-string amounts."""
    return {
        "authorized_amount": format_cents(record["authorized_amount"]),
        "fee_amount": format_cents(record["fee_amount"]),
        "fee_waived_amount": format_cents(record["fee_waived_amount"]),
        "net_payable": format_cents(record["net_payable"]),
        "refunded_amount": format_cents(record["refunded_amount"]),
        "transferred_amount": format_cents(record["transferred_amount"]),
        "hold_id": record["hold_id"],
        "charge_id": record["charge_id"],
        "authorized_at": record["authorized_at"],
        "captured_at": record["captured_at"],
        "transferred_at": record["transferred_at"],
        "refunded_at": record["refunded_at"],
    }


def _event_to_response(event: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": event["event_id"],
        "event_type": event["event_type"],
        "amount": format_cents(event["amount"]),
        "reference": event["reference"],
        "dispute_id": event["dispute_id"],
        "created_at": event["created_at"],
    }
