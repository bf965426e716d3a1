"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from job_board_service.clients.identity_client import IdentityClient
from job_board_service.clients.payment_processor_client import PaymentProcessorClient
from job_board_service.config import get_settings
from job_board_service.core.state import init_app_state
from job_board_service.logging import get_logger, setup_logging
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
from job_board_service.services.token_validator import TokenValidator
from job_board_service.services.webhook_verifier import WebhookVerifier

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    db_path = settings.database.path
    limits = settings.limits
    operator_id = settings.platform.agent_id

    # HTTP clients
    identity_client = IdentityClient(
        base_url=settings.identity.base_url,
        verify_jws_path=settings.identity.verify_jws_path,
        timeout_seconds=settings.identity.timeout_seconds,
    )
    state.identity_client = identity_client

    processor = settings.payment_processor
    payment_processor_client = PaymentProcessorClient(
        base_url=processor.base_url,
        api_key=processor.api_key,
        currency=processor.currency,
        timeout_seconds=processor.timeout_seconds,
        authorize_path=processor.authorize_path,
        capture_path=processor.capture_path,
        transfer_path=processor.transfer_path,
        refund_path=processor.refund_path,
        setup_intent_path=processor.setup_intent_path,
        confirm_setup_intent_path=processor.confirm_setup_intent_path,
        detach_payment_method_path=processor.detach_payment_method_path,
    )
    state.payment_processor_client = payment_processor_client

    # Stores share one SQLite file; each holds its own connection
    job_store = JobStore(db_path=db_path)
    payment_store = PaymentStore(db_path=db_path)
    dispute_store = DisputeStore(db_path=db_path)
    state.job_store = job_store
    state.payment_store = payment_store
    state.dispute_store = dispute_store

    token_validator = TokenValidator(identity_client=identity_client)
    state.token_validator = token_validator

    events = JobEventBus(queue_size=settings.events.queue_size)
    state.events = events

    ledger = EscrowLedger(store=job_store)
    state.ledger = ledger

    payments = PaymentOrchestrator(
        client=payment_processor_client,
        store=payment_store,
        webhook_verifier=WebhookVerifier(processor.webhook_secret),
        max_attempts=settings.retry.max_attempts,
        base_delay_seconds=settings.retry.base_delay_seconds,
        max_delay_seconds=settings.retry.max_delay_seconds,
    )
    state.payments = payments

    task_tracker = TaskTracker(
        store=job_store,
        events=events,
        max_tasks_per_job=limits.max_tasks_per_job,
        max_description_length=limits.max_description_length,
        max_location_length=limits.max_title_length,
    )
    state.task_tracker = task_tracker

    state.applications = ApplicationManager(
        store=job_store,
        task_tracker=task_tracker,
        events=events,
        max_message_length=limits.max_message_length,
        operator_id=operator_id,
    )

    jobs = JobStateMachine(
        store=job_store,
        ledger=ledger,
        payments=payments,
        task_tracker=task_tracker,
        events=events,
        fee_rate=settings.escrow.fee_rate,
        min_payment_amount=settings.escrow.min_payment_amount,
        max_payment_amount=settings.escrow.max_payment_amount,
        max_refund_rounds=settings.cancellation.max_refund_rounds,
        max_title_length=limits.max_title_length,
        max_description_length=limits.max_description_length,
        operator_id=operator_id,
    )
    jobs.register_webhook_handlers()
    state.jobs = jobs

    disputes = DisputeManager(
        dispute_store=dispute_store,
        job_store=job_store,
        ledger=ledger,
        payments=payments,
        events=events,
        max_description_length=limits.max_dispute_description_length,
        operator_id=operator_id,
    )
    disputes.register_webhook_handlers()
    state.disputes = disputes

    state.reviews = ReviewManager(
        store=job_store,
        events=events,
        max_comment_length=limits.max_message_length,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "identity_base_url": settings.identity.base_url,
            "payment_processor_base_url": processor.base_url,
            "platform_agent_id": operator_id,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    job_store.close()
    payment_store.close()
    dispute_store.close()

    # Close HTTP clients (closes httpx async clients)
    await identity_client.close()
    await payment_processor_client.close()
