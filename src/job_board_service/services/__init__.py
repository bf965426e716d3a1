"""Service layer components."""

from job_board_service.services.application_manager import ApplicationManager
from job_board_service.services.dispute_manager import DisputeManager
from job_board_service.services.escrow_ledger import EscrowLedger
from job_board_service.services.job_events import JobEventBus
from job_board_service.services.job_state_machine import JobStateMachine
from job_board_service.services.payment_orchestrator import PaymentOrchestrator
from job_board_service.services.review_manager import ReviewManager
from job_board_service.services.task_tracker import TaskTracker
from job_board_service.services.token_validator import TokenValidator

__all__ = [
    "ApplicationManager",
    "DisputeManager",
    "EscrowLedger",
    "JobEventBus",
    "JobStateMachine",
    "PaymentOrchestrator",
    "ReviewManager",
    "TaskTracker",
    "TokenValidator",
]
