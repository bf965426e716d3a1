"""Verification of payment processor webhook deliveries."""

from __future__ import annotations

import json
from typing import Any

from joserfc import jws
from joserfc.errors import BadSignatureError, JoseError
from joserfc.jwk import OctKey

from job_board_service.core.exceptions import AuthorizationError, ValidationError


class WebhookVerifier:
    """
    Checks that a webhook was signed by the processor.

    Deliveries are HS256 JWS compact tokens keyed with the shared webhook
    secret. The payload is the processor event:
    ``{"id": "evt_...", "type": "...", "data": {...}}``.
    """

    def __init__(self, webhook_secret: str) -> None:
        self._key = OctKey.import_key(webhook_secret)

    def verify(self, token: str) -> dict[str, Any]:
        """
        Return the verified event.

        Raises:
            AuthorizationError: INVALID_WEBHOOK_SIGNATURE when the signature does not match
            ValidationError: INVALID_WEBHOOK when the token or event is malformed
        """
        try:
            obj = jws.deserialize_compact(token, self._key, algorithms=["HS256"])
        except BadSignatureError as exc:
            raise AuthorizationError(
                "INVALID_WEBHOOK_SIGNATURE", "Webhook signature verification failed"
            ) from exc
        except (JoseError, ValueError) as exc:
            raise ValidationError("INVALID_WEBHOOK", "Webhook is not a valid JWS") from exc

        try:
            event = json.loads(obj.payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("INVALID_WEBHOOK", "Webhook payload is not valid JSON") from exc

        if not isinstance(event, dict):
            raise ValidationError("INVALID_WEBHOOK", "Webhook payload must be a JSON object")
        for field_name in ("id", "type"):
            if not isinstance(event.get(field_name), str) or not event[field_name]:
                raise ValidationError(
                    "INVALID_WEBHOOK", f"Webhook event is missing '{field_name}'"
                )
        if not isinstance(event.get("data"), dict):
            raise ValidationError("INVALID_WEBHOOK", "Webhook event is missing 'data'")
        return event
