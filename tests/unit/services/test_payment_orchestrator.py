"""Unit tests for PaymentOrchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from job_board_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    PaymentPermanentError,
    PaymentTransientError,
    StateConflictError,
    ValidationError,
)
from job_board_service.services.payment_orchestrator import PaymentOrchestrator
from job_board_service.services.payment_store import PaymentStore
from job_board_service.services.webhook_verifier import WebhookVerifier
from tests.helpers import CARD, WEBHOOK_SECRET, make_webhook_token, processor_mock, tamper_jws

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path
    from unittest.mock import AsyncMock


@pytest.fixture
def store(tmp_path: Path) -> Iterator[PaymentStore]:
    payment_store = PaymentStore(db_path=str(tmp_path / "payments.db"))
    yield payment_store
    payment_store.close()


@pytest.fixture
def processor() -> AsyncMock:
    return processor_mock()


@pytest.fixture
def orchestrator(store: PaymentStore, processor: AsyncMock) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        client=processor,
        store=store,
        webhook_verifier=WebhookVerifier(WEBHOOK_SECRET),
        max_attempts=4,
        base_delay_seconds=0,
        max_delay_seconds=0,
    )


def _pending_setup_intent(customer: str, token: str, key: str) -> dict[str, Any]:
    return {
        "id": f"seti_{token}",
        "payment_method": f"pm_{token}",
        "status": "requires_action",
        "card": {"brand": "visa"},
    }


@pytest.mark.unit
def test_backoff_doubles_up_to_cap(store: PaymentStore, processor: AsyncMock) -> None:
    orchestrator = PaymentOrchestrator(
        client=processor,
        store=store,
        webhook_verifier=WebhookVerifier(WEBHOOK_SECRET),
        max_attempts=4,
        base_delay_seconds=0.5,
        max_delay_seconds=8.0,
    )

    delays = [orchestrator.backoff_delay(attempt) for attempt in range(1, 7)]

    assert delays == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]


class TestRetryAndIdempotency:
    """Retry budget and idempotency key epochs."""

    @pytest.mark.unit
    async def test_transient_failures_exhaust_with_same_key(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock, store: PaymentStore
    ) -> None:
        processor.capture.side_effect = PaymentTransientError("PROCESSOR_UNAVAILABLE", "Down")

        with pytest.raises(PaymentTransientError) as exc_info:
            await orchestrator.capture("job-1", "pi_1", 10000)

        assert exc_info.value.details["attempts"] == 4
        assert processor.capture.await_count == 4
        keys = {call.args[2] for call in processor.capture.await_args_list}
        assert keys == {"job-1:capture:1"}
        attempt = store.get_attempt("job-1", "capture")
        assert attempt is not None
        assert attempt["status"] == "failed_transient"

    @pytest.mark.unit
    async def test_retry_after_transient_failure_reuses_key(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.capture.side_effect = [
            PaymentTransientError("PROCESSOR_UNAVAILABLE", "Down"),
            {"id": "ch_1", "status": "succeeded"},
        ]

        charge_id = await orchestrator.capture("job-1", "pi_1", 10000)

        assert charge_id == "ch_1"
        assert [call.args[2] for call in processor.capture.await_args_list] == [
            "job-1:capture:1",
            "job-1:capture:1",
        ]

    @pytest.mark.unit
    async def test_permanent_failure_advances_epoch(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.authorize.side_effect = PaymentPermanentError("CARD_DECLINED", "Declined")

        with pytest.raises(PaymentPermanentError):
            await orchestrator.authorize("job-1", 10000, "pm_1", "a-poster")
        assert processor.authorize.await_count == 1

        processor.authorize.side_effect = None
        processor.authorize.return_value = {"id": "pi_1", "status": "requires_capture"}
        result = await orchestrator.authorize("job-1", 10000, "pm_1", "a-poster")

        assert result.hold_id == "pi_1"
        assert result.settled is True
        processor.authorize.assert_awaited_with(
            10000, "pm_1", "a-poster", "job-1", "job-1:authorize:2"
        )

    @pytest.mark.unit
    async def test_new_epoch_on_request(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        await orchestrator.refund("job-1", "job-1", "pi_1", 500)
        await orchestrator.refund("job-1", "job-1", "pi_1", 500)
        await orchestrator.authorize("job-1", 10000, "pm_1", "a-poster", new_epoch=True)

        refund_keys = [call.args[3] for call in processor.refund.await_args_list]
        assert refund_keys == ["job-1:refund:1", "job-1:refund:1"]
        processor.authorize.assert_awaited_with(
            10000, "pm_1", "a-poster", "job-1", "job-1:authorize:1"
        )


class TestMoneyMovement:
    """Interpretation of processor responses."""

    @pytest.mark.unit
    async def test_processing_authorization_is_unsettled(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.authorize.side_effect = None
        processor.authorize.return_value = {"id": "pi_1", "status": "processing"}

        result = await orchestrator.authorize("job-1", 10000, "pm_1", "a-poster")

        assert result.settled is False

    @pytest.mark.unit
    async def test_unexpected_authorization_status(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock, store: PaymentStore
    ) -> None:
        processor.authorize.side_effect = None
        processor.authorize.return_value = {"id": "pi_1", "status": "canceled"}

        with pytest.raises(PaymentPermanentError) as exc_info:
            await orchestrator.authorize("job-1", 10000, "pm_1", "a-poster")

        assert exc_info.value.error == "AUTHORIZATION_FAILED"
        assert exc_info.value.details == {"processor_status": "canceled"}
        attempt = store.get_attempt("job-1", "authorize")
        assert attempt is not None
        assert attempt["status"] == "failed_permanent"

    @pytest.mark.unit
    async def test_failed_transfer_status(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.transfer.side_effect = None
        processor.transfer.return_value = {"id": "tr_1", "status": "failed"}

        with pytest.raises(PaymentPermanentError) as exc_info:
            await orchestrator.transfer("job-1", "job-1", "acct_1", 9000)

        assert exc_info.value.error == "TRANSFER_FAILED"

    @pytest.mark.unit
    async def test_pending_transfer_is_unsettled(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.transfer.side_effect = None
        processor.transfer.return_value = {"id": "tr_1", "status": "pending"}

        result = await orchestrator.transfer("job-1", "job-1", "acct_1", 9000)

        assert result.transfer_id == "tr_1"
        assert result.settled is False

    @pytest.mark.unit
    async def test_response_without_id_is_transient(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.refund.side_effect = None
        processor.refund.return_value = {"status": "succeeded"}

        with pytest.raises(PaymentTransientError) as exc_info:
            await orchestrator.refund("job-1", "job-1", "pi_1", 500)

        assert exc_info.value.error == "PROCESSOR_INVALID_RESPONSE"


class TestPaymentMethods:
    """Saving, verifying and managing payment methods."""

    @pytest.mark.unit
    async def test_first_saved_method_is_default(self, orchestrator: PaymentOrchestrator) -> None:
        first = await orchestrator.save_payment_method("a-poster", "tok_visa")
        second = await orchestrator.save_payment_method("a-poster", "tok_amex")

        assert first["status"] == "active"
        assert first["is_default"] is True
        assert first["last4"] == CARD["last4"]
        assert second["is_default"] is False
        assert orchestrator.resolve_payment_method("a-poster", None) == first["method_id"]

    @pytest.mark.unit
    async def test_saving_same_card_twice_returns_stored_method(
        self, orchestrator: PaymentOrchestrator
    ) -> None:
        first = await orchestrator.save_payment_method("a-poster", "tok_visa")
        again = await orchestrator.save_payment_method("a-poster", "tok_visa")

        assert again == first
        assert len(orchestrator.list_payment_methods("a-poster")) == 1

    @pytest.mark.unit
    async def test_method_of_another_user_rejected(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.create_setup_intent.side_effect = lambda customer, token, key: {
            "id": f"seti_{customer}",
            "payment_method": "pm_shared",
            "status": "succeeded",
        }
        await orchestrator.save_payment_method("a-poster", "tok_visa")

        with pytest.raises(AuthorizationError) as exc_info:
            await orchestrator.save_payment_method("a-stranger", "tok_visa")

        assert exc_info.value.error == "FORBIDDEN"

    @pytest.mark.unit
    async def test_pending_method_needs_confirmation(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.create_setup_intent.side_effect = _pending_setup_intent
        method = await orchestrator.save_payment_method("a-poster", "tok_3ds")

        assert method["status"] == "pending_verification"
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.resolve_payment_method("a-poster", None)
        assert exc_info.value.error == "PAYMENT_METHOD_NOT_VERIFIED"

        confirmed = await orchestrator.confirm_payment_method("a-poster", method["method_id"])

        assert confirmed["status"] == "active"
        assert confirmed["last4"] == CARD["last4"]
        processor.confirm_setup_intent.assert_awaited_once_with(
            "seti_tok_3ds", "seti_tok_3ds:confirm_setup_intent:1"
        )

    @pytest.mark.unit
    async def test_failed_confirmation(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.create_setup_intent.side_effect = _pending_setup_intent
        processor.confirm_setup_intent.side_effect = lambda setup_intent_id, key: {
            "id": setup_intent_id,
            "status": "requires_payment_method",
        }
        method = await orchestrator.save_payment_method("a-poster", "tok_3ds")

        with pytest.raises(PaymentPermanentError) as exc_info:
            await orchestrator.confirm_payment_method("a-poster", method["method_id"])

        assert exc_info.value.error == "CARD_VERIFICATION_FAILED"

    @pytest.mark.unit
    async def test_set_default_and_delete_promotes_oldest(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        first = await orchestrator.save_payment_method("a-poster", "tok_visa")
        second = await orchestrator.save_payment_method("a-poster", "tok_amex")

        updated = orchestrator.set_default("a-poster", second["method_id"])
        assert updated["is_default"] is True

        await orchestrator.delete_payment_method("a-poster", second["method_id"])

        processor.detach_payment_method.assert_awaited_once_with(second["method_id"])
        remaining = orchestrator.list_payment_methods("a-poster")
        assert [method["method_id"] for method in remaining] == [first["method_id"]]
        assert remaining[0]["is_default"] is True

    @pytest.mark.unit
    async def test_other_users_method_not_found(self, orchestrator: PaymentOrchestrator) -> None:
        method = await orchestrator.save_payment_method("a-poster", "tok_visa")

        with pytest.raises(NotFoundError) as exc_info:
            orchestrator.set_default("a-stranger", method["method_id"])

        assert exc_info.value.error == "PAYMENT_METHOD_NOT_FOUND"

    @pytest.mark.unit
    def test_no_default_method(self, orchestrator: PaymentOrchestrator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.resolve_payment_method("a-poster", None)

        assert exc_info.value.error == "PAYMENT_METHOD_REQUIRED"

    @pytest.mark.unit
    def test_payout_account(self, orchestrator: PaymentOrchestrator) -> None:
        with pytest.raises(PaymentPermanentError) as exc_info:
            orchestrator.get_payout_destination("a-worker")
        assert exc_info.value.error == "PAYOUT_ACCOUNT_MISSING"

        orchestrator.set_payout_account("a-worker", "acct_1")
        account = orchestrator.set_payout_account("a-worker", "acct_2")

        assert account["account_id"] == "acct_2"
        assert orchestrator.get_payout_destination("a-worker") == "acct_2"


class TestWebhooks:
    """Webhook verification, deduplication and dispatch."""

    @pytest.mark.unit
    async def test_setup_intent_webhook_activates_method(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.create_setup_intent.side_effect = _pending_setup_intent
        method = await orchestrator.save_payment_method("a-poster", "tok_3ds")
        token = make_webhook_token(
            "evt_1",
            "setup_intent.succeeded",
            {"setup_intent_id": "seti_tok_3ds", "card": {"last4": "1881"}},
        )

        result = await orchestrator.handle_webhook(token)

        assert result == {"event_id": "evt_1", "status": "processed"}
        stored = orchestrator.list_payment_methods("a-poster")[0]
        assert stored["method_id"] == method["method_id"]
        assert stored["status"] == "active"
        assert stored["last4"] == "1881"
        assert stored["brand"] == "visa"

    @pytest.mark.unit
    async def test_replayed_webhook_is_duplicate(self, orchestrator: PaymentOrchestrator) -> None:
        handled: list[dict[str, Any]] = []

        async def handler(data: dict[str, Any]) -> None:
            handled.append(data)

        orchestrator.register_handler("charge.refunded", handler)
        token = make_webhook_token("evt_1", "charge.refunded", {"job_id": "job-1"})

        first = await orchestrator.handle_webhook(token)
        second = await orchestrator.handle_webhook(token)

        assert first["status"] == "processed"
        assert second["status"] == "duplicate"
        assert handled == [{"job_id": "job-1"}]

    @pytest.mark.unit
    async def test_unhandled_type_ignored(self, orchestrator: PaymentOrchestrator) -> None:
        token = make_webhook_token("evt_1", "customer.updated", {})

        result = await orchestrator.handle_webhook(token)

        assert result == {"event_id": "evt_1", "status": "ignored"}

    @pytest.mark.unit
    async def test_failed_handler_releases_claim(
        self, orchestrator: PaymentOrchestrator, processor: AsyncMock
    ) -> None:
        processor.create_setup_intent.side_effect = _pending_setup_intent
        token = make_webhook_token(
            "evt_early", "setup_intent.succeeded", {"setup_intent_id": "seti_tok_3ds"}
        )

        with pytest.raises(StateConflictError) as exc_info:
            await orchestrator.handle_webhook(token)
        assert exc_info.value.error == "UNKNOWN_SETUP_INTENT"

        await orchestrator.save_payment_method("a-poster", "tok_3ds")
        result = await orchestrator.handle_webhook(token)

        assert result["status"] == "processed"
        assert orchestrator.list_payment_methods("a-poster")[0]["status"] == "active"

    @pytest.mark.unit
    async def test_tampered_webhook_rejected(self, orchestrator: PaymentOrchestrator) -> None:
        token = tamper_jws(make_webhook_token("evt_1", "customer.updated", {}))

        with pytest.raises(AuthorizationError) as exc_info:
            await orchestrator.handle_webhook(token)

        assert exc_info.value.error == "INVALID_WEBHOOK_SIGNATURE"

    @pytest.mark.unit
    def test_duplicate_handler_registration(self, orchestrator: PaymentOrchestrator) -> None:
        async def handler(_data: dict[str, Any]) -> None:
            return None

        with pytest.raises(ValueError):
            orchestrator.register_handler("setup_intent.succeeded", handler)
