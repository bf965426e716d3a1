"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from job_board_service.clients.identity_client import IdentityClient
    from job_board_service.clients.payment_processor_client import PaymentProcessorClient
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


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    job_store: JobStore | None = None
    payment_store: PaymentStore | None = None
    dispute_store: DisputeStore | None = None
    identity_client: IdentityClient | None = None
    payment_processor_client: PaymentProcessorClient | None = None
    token_validator: TokenValidator | None = None
    events: JobEventBus | None = None
    ledger: EscrowLedger | None = None
    payments: PaymentOrchestrator | None = None
    task_tracker: TaskTracker | None = None
    applications: ApplicationManager | None = None
    jobs: JobStateMachine | None = None
    disputes: DisputeManager | None = None
    reviews: ReviewManager | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep component references to the HTTP clients in sync with AppState fields."""
        super().__setattr__(name, value)
        if value is None:
            return

        token_validator = self.__dict__.get("token_validator")
        if name == "identity_client" and token_validator is not None:
            token_validator._identity_client = value

        payments = self.__dict__.get("payments")
        if name == "payment_processor_client" and payments is not None:
            payments._client = value

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
