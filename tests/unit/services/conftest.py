"""Service-layer fixtures: real SQLite stores, a mocked payment processor."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest

from job_board_service.services.application_manager import ApplicationManager
from job_board_service.services.dispute_manager import DisputeManager
from job_board_service.services.dispute_store import DisputeStore
from job_board_service.services.escrow_ledger import EscrowLedger
from job_board_service.services.job_events import JobEventBus
from job_board_service.services.job_state_machine import JobStateMachine
from job_board_service.services.job_store import JobStore
from job_board_service.services.payment_orchestrator import PaymentOrchestrator
from job_board_service.services.payment_store import PaymentStore
from job_board_service.services.review_manager import ReviewManager
from job_board_service.services.task_tracker import TaskTracker
from job_board_service.services.webhook_verifier import WebhookVerifier
from tests.helpers import WEBHOOK_SECRET, processor_mock

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path
    from unittest.mock import AsyncMock

OPERATOR_ID = "a-operator"
POSTER_ID = "a-poster"
WORKER_ID = "a-worker"
OTHER_WORKER_ID = "a-other-worker"
STRANGER_ID = "a-stranger"


@dataclass
class Components:
    """Every service of the job board wired together, as the lifespan does."""

    job_store: JobStore
    payment_store: PaymentStore
    dispute_store: DisputeStore
    processor: AsyncMock
    events: JobEventBus
    ledger: EscrowLedger
    payments: PaymentOrchestrator
    tasks: TaskTracker
    applications: ApplicationManager
    jobs: JobStateMachine
    disputes: DisputeManager
    reviews: ReviewManager


@pytest.fixture
def components(tmp_path: Path) -> Iterator[Components]:
    db_path = str(tmp_path / "job-board.db")
    job_store = JobStore(db_path=db_path)
    payment_store = PaymentStore(db_path=db_path)
    dispute_store = DisputeStore(db_path=db_path)
    processor = processor_mock()
    events = JobEventBus(queue_size=100)
    ledger = EscrowLedger(store=job_store)
    payments = PaymentOrchestrator(
        client=processor,
        store=payment_store,
        webhook_verifier=WebhookVerifier(WEBHOOK_SECRET),
        max_attempts=4,
        base_delay_seconds=0,
        max_delay_seconds=0,
    )
    tasks = TaskTracker(
        store=job_store,
        events=events,
        max_tasks_per_job=5,
        max_description_length=500,
        max_location_length=200,
    )
    applications = ApplicationManager(
        store=job_store,
        task_tracker=tasks,
        events=events,
        max_message_length=500,
        operator_id=OPERATOR_ID,
    )
    jobs = JobStateMachine(
        store=job_store,
        ledger=ledger,
        payments=payments,
        task_tracker=tasks,
        events=events,
        fee_rate=Decimal("0.10"),
        min_payment_amount=Decimal("10.00"),
        max_payment_amount=Decimal("10000.00"),
        max_refund_rounds=3,
        max_title_length=200,
        max_description_length=2000,
        operator_id=OPERATOR_ID,
    )
    jobs.register_webhook_handlers()
    disputes = DisputeManager(
        dispute_store=dispute_store,
        job_store=job_store,
        ledger=ledger,
        payments=payments,
        events=events,
        max_description_length=2000,
        operator_id=OPERATOR_ID,
    )
    disputes.register_webhook_handlers()
    reviews = ReviewManager(store=job_store, events=events, max_comment_length=500)

    yield Components(
        job_store=job_store,
        payment_store=payment_store,
        dispute_store=dispute_store,
        processor=processor,
        events=events,
        ledger=ledger,
        payments=payments,
        tasks=tasks,
        applications=applications,
        jobs=jobs,
        disputes=disputes,
        reviews=reviews,
    )

    job_store.close()
    payment_store.close()
    dispute_store.close()


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------


def job_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": "Fix the garden fence",
        "description": "Replace two broken panels and repaint",
        "location": "12 Elm Street",
        "payment_amount": "100.00",
        "payment_type": "fixed",
    }
    payload.update(overrides)
    return payload


async def save_card(c: Components, user_id: str = POSTER_ID) -> str:
    method = await c.payments.save_payment_method(user_id, "tok_visa")
    return str(method["method_id"])


async def create_open_job(c: Components, **overrides: Any) -> dict[str, Any]:
    await save_card(c)
    return await c.jobs.create_job(POSTER_ID, job_payload(**overrides))


async def create_assigned_job(c: Components, **overrides: Any) -> dict[str, Any]:
    job = await create_open_job(c, **overrides)
    application = c.applications.apply(job["job_id"], WORKER_ID, {"message": "I can do it"})
    return c.applications.accept(
        job["job_id"], application["application_id"], POSTER_ID, {"version": job["version"]}
    )


async def create_started_job(c: Components, **overrides: Any) -> dict[str, Any]:
    job = await create_assigned_job(c, **overrides)
    c.payments.set_payout_account(WORKER_ID, "acct_worker")
    return await c.jobs.start_job(job["job_id"], WORKER_ID, {"version": job["version"]})


async def create_completed_job(c: Components, **overrides: Any) -> dict[str, Any]:
    job = await create_started_job(c, **overrides)
    return await c.jobs.complete_job(job["job_id"], WORKER_ID, {"version": job["version"]})


def job_row(job_id: str, status: str = "draft", **overrides: Any) -> dict[str, Any]:
    """A complete jobs row for direct store tests."""
    timestamp = "2026-01-01T00:00:00.000000Z"
    row: dict[str, Any] = {
        "job_id": job_id,
        "poster_id": POSTER_ID,
        "worker_id": None,
        "title": "Fix the garden fence",
        "description": "Replace two broken panels",
        "location": None,
        "required_skills": [],
        "payment_amount": 10000,
        "payment_type": "fixed",
        "equipment_provided": 0,
        "status": status,
        "version": 1,
        "payment_method_id": None,
        "payment_error": None,
        "authorization_pending": 0,
        "transfer_id": None,
        "payout_started_at": None,
        "override_incomplete_tasks": 0,
        "cancel_reason": None,
        "canceled_by": None,
        "refund_rounds": 0,
        "escalated": 0,
        "date_needed": None,
        "date_posted": None,
        "date_completed": None,
        "canceled_at": None,
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    row.update(overrides)
    return row
