"""All calls to the payment processor, and webhook reconciliation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    PaymentPermanentError,
    PaymentTransientError,
    StateConflictError,
    ValidationError,
)
from job_board_service.logging import get_logger
from job_board_service.services.payload_fields import now_iso
from job_board_service.services.payment_store import (
    ATTEMPT_FAILED_PERMANENT,
    ATTEMPT_FAILED_TRANSIENT,
    ATTEMPT_SUCCEEDED,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from job_board_service.clients.payment_processor_client import PaymentProcessorClient
    from job_board_service.services.payment_store import PaymentStore
    from job_board_service.services.webhook_verifier import WebhookVerifier

    WebhookHandler = Callable[[dict[str, Any]], Awaitable[None]]

OP_AUTHORIZE = "authorize"
OP_CAPTURE = "capture"
OP_TRANSFER = "transfer"
OP_REFUND = "refund"

EVENT_SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"

METHOD_PENDING_VERIFICATION = "pending_verification"
METHOD_ACTIVE = "active"


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of an authorization request that the processor accepted."""

    hold_id: str
    settled: bool


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a transfer request that the processor accepted."""

    transfer_id: str
    settled: bool


class PaymentOrchestrator:
    """
    Owns every interaction with the payment processor.

    Money-moving calls carry an idempotency key ``{subject}:{operation}:{epoch}``.
    The epoch is persisted: a retry after a transient failure reuses the key,
    while a permanent failure (or an explicit fresh attempt) advances it.
    Transient failures are retried with bounded exponential backoff; a
    permanent failure is surfaced immediately.
    """

    def __init__(
        self,
        client: PaymentProcessorClient,
        store: PaymentStore,
        webhook_verifier: WebhookVerifier,
        max_attempts: int,
        base_delay_seconds: float,
        max_delay_seconds: float,
    ) -> None:
        self._client = client
        self._store = store
        self._webhook_verifier = webhook_verifier
        self._max_attempts = max_attempts
        self._base_delay_seconds = base_delay_seconds
        self._max_delay_seconds = max_delay_seconds
        self._handlers: dict[str, WebhookHandler] = {
            EVENT_SETUP_INTENT_SUCCEEDED: self._on_setup_intent_succeeded,
        }
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Retry and idempotency
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return float(min(self._base_delay_seconds * 2 ** (attempt - 1), self._max_delay_seconds))

    async def _call_with_retry(
        self,
        subject_id: str,
        operation: str,
        call: Callable[[str], Awaitable[dict[str, Any]]],
        *,
        new_epoch: bool = False,
    ) -> dict[str, Any]:
        epoch = self._store.begin_attempt(
            subject_id, operation, new_epoch=new_epoch, timestamp=now_iso()
        )
        idempotency_key = f"{subject_id}:{operation}:{epoch}"

        attempt = 1
        while True:
            try:
                result = await call(idempotency_key)
            except PaymentTransientError as exc:
                if attempt >= self._max_attempts:
                    self._store.finish_attempt(
                        subject_id, operation, ATTEMPT_FAILED_TRANSIENT, now_iso()
                    )
                    self._logger.error(
                        "Payment call failed after retries",
                        extra={
                            "subject_id": subject_id,
                            "operation": operation,
                            "idempotency_key": idempotency_key,
                            "attempts": attempt,
                            "error_code": exc.error,
                        },
                    )
                    exc.details = {**exc.details, "attempts": attempt}
                    raise
                delay = self.backoff_delay(attempt)
                self._logger.warning(
                    "Transient payment failure, retrying",
                    extra={
                        "subject_id": subject_id,
                        "operation": operation,
                        "idempotency_key": idempotency_key,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error_code": exc.error,
                    },
                )
                await asyncio.sleep(delay)
                attempt += 1
                continue
            except PaymentPermanentError as exc:
                self._store.finish_attempt(
                    subject_id, operation, ATTEMPT_FAILED_PERMANENT, now_iso()
                )
                self._logger.warning(
                    "Permanent payment failure",
                    extra={
                        "subject_id": subject_id,
                        "operation": operation,
                        "idempotency_key": idempotency_key,
                        "error_code": exc.error,
                    },
                )
                raise

            self._store.finish_attempt(subject_id, operation, ATTEMPT_SUCCEEDED, now_iso())
            self._logger.info(
                "Payment call succeeded",
                extra={
                    "subject_id": subject_id,
                    "operation": operation,
                    "idempotency_key": idempotency_key,
                    "attempts": attempt,
                },
            )
            return result

    def mark_failed(self, subject_id: str, operation: str) -> None:
        """Record a permanent failure learned out of band (e.g. from a webhook)."""
        self._store.finish_attempt(subject_id, operation, ATTEMPT_FAILED_PERMANENT, now_iso())

    @staticmethod
    def _require_id(result: dict[str, Any], operation: str) -> str:
        processor_id = result.get("id")
        if not isinstance(processor_id, str) or not processor_id:
            raise PaymentTransientError(
                "PROCESSOR_INVALID_RESPONSE",
                f"Payment processor returned no id for {operation}",
            )
        return processor_id

    # ------------------------------------------------------------------
    # Money movement
    # ------------------------------------------------------------------

    async def authorize(
        self,
        job_id: str,
        amount: int,
        payment_method_id: str,
        customer_id: str,
        *,
        new_epoch: bool = False,
    ) -> AuthorizationResult:
        """
        Place a hold for a job's payment amount.

        ``settled`` is False when the processor is still confirming the
        payment; the outcome then arrives as an authorization webhook.
        """
        result = await self._call_with_retry(
            job_id,
            OP_AUTHORIZE,
            lambda key: self._client.authorize(amount, payment_method_id, customer_id, job_id, key),
            new_epoch=new_epoch,
        )
        hold_id = self._require_id(result, OP_AUTHORIZE)
        status = result.get("status")
        if status == "requires_capture":
            return AuthorizationResult(hold_id=hold_id, settled=True)
        if status == "processing":
            return AuthorizationResult(hold_id=hold_id, settled=False)
        self.mark_failed(job_id, OP_AUTHORIZE)
        raise PaymentPermanentError(
            "AUTHORIZATION_FAILED",
            "The payment method could not be authorized",
            {"processor_status": status},
        )

    async def capture(self, job_id: str, hold_id: str, amount: int) -> str:
        """Capture a hold and return the charge id."""
        result = await self._call_with_retry(
            job_id,
            OP_CAPTURE,
            lambda key: self._client.capture(hold_id, amount, key),
        )
        return self._require_id(result, OP_CAPTURE)

    async def transfer(
        self,
        subject_id: str,
        job_id: str,
        destination: str,
        amount: int,
        *,
        operation: str = OP_TRANSFER,
    ) -> TransferResult:
        """Pay funds out to a worker's payout account."""
        result = await self._call_with_retry(
            subject_id,
            operation,
            lambda key: self._client.transfer(amount, destination, job_id, key),
        )
        transfer_id = self._require_id(result, operation)
        status = result.get("status")
        if status == "failed":
            self.mark_failed(subject_id, operation)
            raise PaymentPermanentError(
                "TRANSFER_FAILED", "The payout was rejected", {"transfer_id": transfer_id}
            )
        return TransferResult(transfer_id=transfer_id, settled=status == "paid")

    async def refund(
        self,
        subject_id: str,
        job_id: str,
        hold_id: str,
        amount: int,
        *,
        operation: str = OP_REFUND,
    ) -> str:
        """Refund funds of a hold back to the poster; returns the refund id."""
        result = await self._call_with_retry(
            subject_id,
            operation,
            lambda key: self._client.refund(hold_id, amount, job_id, key),
        )
        return self._require_id(result, operation)

    # ------------------------------------------------------------------
    # Payment methods and payout accounts
    # ------------------------------------------------------------------

    async def save_payment_method(self, user_id: str, processor_token: str) -> dict[str, Any]:
        """
        Register a setup intent for a card and store it pending verification.

        Confirmation happens later, either through an explicit confirm call or
        the ``setup_intent.succeeded`` webhook, so saving a card never blocks
        job creation.
        """
        result = await self._call_with_retry(
            user_id,
            f"setup_intent.{processor_token}",
            lambda key: self._client.create_setup_intent(user_id, processor_token, key),
        )
        setup_intent_id = self._require_id(result, "setup_intent")
        method_id = result.get("payment_method")
        if not isinstance(method_id, str) or not method_id:
            raise PaymentTransientError(
                "PROCESSOR_INVALID_RESPONSE", "Setup intent carries no payment method"
            )

        existing = self._store.get_payment_method(method_id)
        if existing is not None:
            if existing["user_id"] != user_id:
                raise AuthorizationError(
                    "FORBIDDEN", "Payment method belongs to another user"
                )
            return existing

        card = result.get("card") if isinstance(result.get("card"), dict) else {}
        timestamp = now_iso()
        stored = self._store.insert_payment_method(
            {
                "method_id": method_id,
                "user_id": user_id,
                "setup_intent_id": setup_intent_id,
                "status": METHOD_ACTIVE if result.get("status") == "succeeded" else (
                    METHOD_PENDING_VERIFICATION
                ),
                "brand": card.get("brand"),
                "last4": card.get("last4"),
                "exp_month": card.get("exp_month"),
                "exp_year": card.get("exp_year"),
                "created_at": timestamp,
                "updated_at": timestamp,
            }
        )
        self._logger.info(
            "Payment method saved",
            extra={"user_id": user_id, "method_id": method_id, "status": stored["status"]},
        )
        return stored

    def _owned_method(self, user_id: str, method_id: str) -> dict[str, Any]:
        method = self._store.get_payment_method(method_id)
        if method is None or method["user_id"] != user_id:
            raise NotFoundError("PAYMENT_METHOD_NOT_FOUND", "Payment method not found")
        return method

    def _activate(self, method: dict[str, Any], card: dict[str, Any]) -> None:
        self._store.update_payment_method(
            method["method_id"],
            {
                "status": METHOD_ACTIVE,
                "brand": card.get("brand", method["brand"]),
                "last4": card.get("last4", method["last4"]),
                "exp_month": card.get("exp_month", method["exp_month"]),
                "exp_year": card.get("exp_year", method["exp_year"]),
                "updated_at": now_iso(),
            },
        )

    async def confirm_payment_method(self, user_id: str, method_id: str) -> dict[str, Any]:
        """Confirm a pending setup intent and activate its payment method."""
        method = self._owned_method(user_id, method_id)
        if method["status"] == METHOD_ACTIVE:
            return method

        result = await self._call_with_retry(
            method["setup_intent_id"],
            "confirm_setup_intent",
            lambda key: self._client.confirm_setup_intent(method["setup_intent_id"], key),
        )
        if result.get("status") != "succeeded":
            raise PaymentPermanentError(
                "CARD_VERIFICATION_FAILED",
                "The card could not be verified",
                {"processor_status": result.get("status")},
            )
        card = result.get("card") if isinstance(result.get("card"), dict) else {}
        self._activate(method, card)
        return self._owned_method(user_id, method_id)

    def set_default(self, user_id: str, method_id: str) -> dict[str, Any]:
        """Make a payment method the user's default."""
        self._owned_method(user_id, method_id)
        self._store.set_default_payment_method(user_id, method_id)
        return self._owned_method(user_id, method_id)

    async def delete_payment_method(self, user_id: str, method_id: str) -> None:
        """Detach a payment method at the processor and forget it."""
        self._owned_method(user_id, method_id)
        await self._client.detach_payment_method(method_id)
        self._store.delete_payment_method(user_id, method_id)
        self._logger.info(
            "Payment method deleted", extra={"user_id": user_id, "method_id": method_id}
        )

    def list_payment_methods(self, user_id: str) -> list[dict[str, Any]]:
        """All payment methods saved by a user."""
        return self._store.list_payment_methods(user_id)

    def resolve_payment_method(self, user_id: str, method_id: str | None) -> str:
        """
        Pick the payment method for an authorization.

        Uses the given method, or the user's default when none is given. The
        method must be verified.
        """
        if method_id is None:
            method = self._store.get_default_payment_method(user_id)
            if method is None:
                raise ValidationError(
                    "PAYMENT_METHOD_REQUIRED", "No payment method given and no default saved"
                )
        else:
            method = self._owned_method(user_id, method_id)
        if method["status"] != METHOD_ACTIVE:
            raise ValidationError(
                "PAYMENT_METHOD_NOT_VERIFIED",
                "Payment method is still pending verification",
                {"method_id": method["method_id"]},
            )
        return str(method["method_id"])

    def set_payout_account(self, user_id: str, account_id: str) -> dict[str, Any]:
        """Register the processor payout account transfers go to."""
        self._store.upsert_payout_account(user_id, account_id, now_iso())
        account = self._store.get_payout_account(user_id)
        if account is None:
            msg = "Payout account vanished after upsert"
            raise RuntimeError(msg)
        return account

    def get_payout_destination(self, user_id: str) -> str:
        """
        Return the payout account id of a worker.

        Raises:
            PaymentPermanentError: PAYOUT_ACCOUNT_MISSING
        """
        account = self._store.get_payout_account(user_id)
        if account is None:
            raise PaymentPermanentError(
                "PAYOUT_ACCOUNT_MISSING",
                "The worker has not registered a payout account",
                {"worker_id": user_id},
            )
        return str(account["account_id"])

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def register_handler(self, event_type: str, handler: WebhookHandler) -> None:
        """Route a processor event type to a handler."""
        if event_type in self._handlers:
            msg = f"Handler already registered for {event_type}"
            raise ValueError(msg)
        self._handlers[event_type] = handler

    async def handle_webhook(self, token: str) -> dict[str, Any]:
        """
        Verify, deduplicate and apply a processor event.

        The event id is claimed before the handler runs; a replay of a
        claimed event is a no-op. If the handler fails the claim is released
        so the processor's redelivery is applied.
        """
        event = self._webhook_verifier.verify(token)
        event_id: str = event["id"]
        event_type: str = event["type"]

        if not self._store.claim_event(event_id, event_type, now_iso()):
            self._logger.info(
                "Duplicate webhook ignored",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return {"event_id": event_id, "status": "duplicate"}

        handler = self._handlers.get(event_type)
        if handler is None:
            self._logger.info(
                "Unhandled webhook type acknowledged",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return {"event_id": event_id, "status": "ignored"}

        try:
            await handler(event["data"])
        except Exception:
            self._store.release_event(event_id)
            self._logger.warning(
                "Webhook handler failed; claim released",
                extra={"event_id": event_id, "event_type": event_type},
            )
            raise

        self._logger.info(
            "Webhook processed", extra={"event_id": event_id, "event_type": event_type}
        )
        return {"event_id": event_id, "status": "processed"}

    async def _on_setup_intent_succeeded(self, data: dict[str, Any]) -> None:
        setup_intent_id = data.get("setup_intent_id")
        if not isinstance(setup_intent_id, str):
            raise ValidationError("INVALID_WEBHOOK", "setup_intent.succeeded without intent id")
        method = self._store.get_payment_method_by_setup_intent(setup_intent_id)
        if method is None:
            raise StateConflictError(
                "UNKNOWN_SETUP_INTENT",
                "Setup intent is not known yet",
                {"setup_intent_id": setup_intent_id},
            )
        card = data.get("card") if isinstance(data.get("card"), dict) else {}
        self._activate(method, card)
