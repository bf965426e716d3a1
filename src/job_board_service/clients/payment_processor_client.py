"""Async HTTP client for the external payment processor."""

from __future__ import annotations

from typing import Any

import httpx

from job_board_service.core.exceptions import PaymentPermanentError, PaymentTransientError
from job_board_service.logging import get_logger

# Processor decline codes mapped onto our permanent error codes.
_DECLINE_CODES: dict[str, str] = {
    "card_declined": "CARD_DECLINED",
    "insufficient_funds": "CARD_DECLINED",
    "expired_card": "CARD_DECLINED",
    "account_restricted": "ACCOUNT_RESTRICTED",
    "account_closed": "ACCOUNT_RESTRICTED",
}


class PaymentProcessorClient:
    """
    Client for the processor's JSON REST API.

    Every money-moving request carries an ``Idempotency-Key`` header so a
    retried request has effect at most once on the processor side. Amounts
    are sent as integer minor units.

    Failures are split in two kinds:
    - PaymentTransientError: timeouts, connection failures, 429 and 5xx
    - PaymentPermanentError: declines, restricted accounts and other 4xx
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        currency: str,
        timeout_seconds: float,
        authorize_path: str,
        capture_path: str,
        transfer_path: str,
        refund_path: str,
        setup_intent_path: str,
        confirm_setup_intent_path: str,
        detach_payment_method_path: str,
    ) -> None:
        self._base_url = base_url
        self._currency = currency
        self._authorize_path = authorize_path
        self._capture_path = capture_path
        self._transfer_path = transfer_path
        self._refund_path = refund_path
        self._setup_intent_path = setup_intent_path
        self._confirm_setup_intent_path = confirm_setup_intent_path
        self._detach_payment_method_path = detach_payment_method_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def _post(
        self,
        path: str,
        body: dict[str, Any],
        idempotency_key: str | None,
    ) -> dict[str, Any]:
        logger = get_logger(__name__)
        headers = {} if idempotency_key is None else {"Idempotency-Key": idempotency_key}

        try:
            response = await self._client.post(path, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning(
                "Payment processor timeout",
                extra={"path": path, "idempotency_key": idempotency_key},
            )
            raise PaymentTransientError(
                "PROCESSOR_TIMEOUT", "Payment processor did not respond in time"
            ) from exc
        except httpx.ConnectError as exc:
            logger.warning(
                "Payment processor connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise PaymentTransientError(
                "PROCESSOR_UNAVAILABLE", "Cannot connect to payment processor"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Payment processor HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise PaymentTransientError(
                "PROCESSOR_UNAVAILABLE", "Payment processor request failed"
            ) from exc

        if 200 <= response.status_code < 300:
            result: dict[str, Any] = response.json() if response.content else {}
            return result

        error_code = self._processor_error_code(response)

        if response.status_code == 429:
            logger.warning("Payment processor rate limited", extra={"path": path})
            raise PaymentTransientError("RATE_LIMITED", "Payment processor rate limit reached")

        if response.status_code >= 500:
            logger.warning(
                "Payment processor server error",
                extra={"status_code": response.status_code, "path": path},
            )
            raise PaymentTransientError(
                "PROCESSOR_UNAVAILABLE", "Payment processor returned a server error"
            )

        if response.status_code == 402:
            raise PaymentPermanentError(
                _DECLINE_CODES.get(error_code or "", "CARD_DECLINED"),
                "The payment was declined",
                {"processor_code": error_code},
            )

        if response.status_code == 403:
            raise PaymentPermanentError(
                _DECLINE_CODES.get(error_code or "", "ACCOUNT_RESTRICTED"),
                "The account cannot be used for this payment",
                {"processor_code": error_code},
            )

        logger.warning(
            "Payment processor rejected request",
            extra={"status_code": response.status_code, "path": path, "code": error_code},
        )
        raise PaymentPermanentError(
            _DECLINE_CODES.get(error_code or "", "PAYMENT_REJECTED"),
            "Payment processor rejected the request",
            {"processor_code": error_code, "status_code": response.status_code},
        )

    @staticmethod
    def _processor_error_code(response: httpx.Response) -> str | None:
        try:
            body = response.json()
        except ValueError:
            return None
        if not isinstance(body, dict):
            return None
        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            return code if isinstance(code, str) else None
        return error if isinstance(error, str) else None

    async def authorize(
        self,
        amount: int,
        payment_method_id: str,
        customer_id: str,
        job_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """
        Place an authorization hold (manual-capture payment intent).

        Returns:
            dict with keys: id (hold id), status ("requires_capture" or "processing")
        """
        return await self._post(
            self._authorize_path,
            {
                "amount": amount,
                "currency": self._currency,
                "payment_method": payment_method_id,
                "customer": customer_id,
                "capture_method": "manual",
                "confirm": True,
                "metadata": {"job_id": job_id},
            },
            idempotency_key,
        )

    async def capture(self, hold_id: str, amount: int, idempotency_key: str) -> dict[str, Any]:
        """Capture an authorization hold. Returns dict with keys: id, status."""
        return await self._post(
            self._capture_path.format(hold_id=hold_id),
            {"amount_to_capture": amount},
            idempotency_key,
        )

    async def transfer(
        self,
        amount: int,
        destination: str,
        job_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Move funds to a connected payout account. Returns dict with keys: id, status."""
        return await self._post(
            self._transfer_path,
            {
                "amount": amount,
                "currency": self._currency,
                "destination": destination,
                "metadata": {"job_id": job_id},
            },
            idempotency_key,
        )

    async def refund(
        self,
        hold_id: str,
        amount: int,
        job_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Refund (or release) funds of a hold. Returns dict with keys: id, status."""
        return await self._post(
            self._refund_path,
            {"payment_intent": hold_id, "amount": amount, "metadata": {"job_id": job_id}},
            idempotency_key,
        )

    async def create_setup_intent(
        self,
        customer_id: str,
        processor_token: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Register a setup intent for saving a card without charging it."""
        return await self._post(
            self._setup_intent_path,
            {"customer": customer_id, "payment_method_data": {"token": processor_token}},
            idempotency_key,
        )

    async def confirm_setup_intent(
        self,
        setup_intent_id: str,
        idempotency_key: str,
    ) -> dict[str, Any]:
        """Confirm a setup intent. Returns the intent with its card details."""
        return await self._post(
            self._confirm_setup_intent_path.format(setup_intent_id=setup_intent_id),
            {},
            idempotency_key,
        )

    async def detach_payment_method(self, method_id: str) -> dict[str, Any]:
        """Detach a saved payment method from its customer."""
        return await self._post(
            self._detach_payment_method_path.format(method_id=method_id),
            {},
            None,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
