"""Verification of actor-signed request tokens."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from service_commons.exceptions import ServiceError

from job_board_service.core.exceptions import ValidationError

if TYPE_CHECKING:
    from job_board_service.clients.identity_client import IdentityClient


@dataclass(frozen=True)
class VerifiedToken:
    """A token whose signature the Identity service accepted."""

    signer_id: str
    payload: dict[str, Any]

    def require_binding(self, field_name: str, expected: str) -> None:
        """
        Ensure the signed payload names the resource addressed by the URL.

        Raises:
            ValidationError: INVALID_PAYLOAD when missing, TOKEN_MISMATCH when different
        """
        if field_name not in self.payload:
            raise ValidationError("INVALID_PAYLOAD", f"Missing required field: {field_name}")
        if self.payload[field_name] != expected:
            raise ValidationError(
                "TOKEN_MISMATCH",
                f"{field_name} in token does not match the request path",
                {"field": field_name},
            )


class TokenValidator:
    """Validates request JWS tokens via the Identity service."""

    def __init__(self, identity_client: IdentityClient) -> None:
        self._identity_client = identity_client

    async def validate(
        self,
        token: str,
        expected_action: str | tuple[str, ...],
    ) -> VerifiedToken:
        """
        Verify a JWS token and check that it was signed for this operation.

        Error precedence:
        1. INVALID_JWS: token is not a three-part compact JWS
        2. IDENTITY_SERVICE_UNAVAILABLE: Identity service unreachable
        3. INVALID_SIGNATURE / UNKNOWN_SIGNER: signature rejected
        4. INVALID_PAYLOAD: action missing or not the expected one
        """
        if not token or len(token.split(".")) != 3:
            raise ValidationError(
                "INVALID_JWS",
                "Token must be in JWS compact serialization format (header.payload.signature)",
            )

        try:
            result = await self._identity_client.verify_jws(token)
        except ServiceError:
            raise
        except Exception as exc:
            raise ServiceError(
                "IDENTITY_SERVICE_UNAVAILABLE",
                "Cannot connect to Identity service",
                502,
                {},
            ) from exc

        signer_id = result.get("agent_id")
        payload = result.get("payload")
        if not isinstance(signer_id, str) or len(signer_id) == 0:
            raise ValidationError("INVALID_JWS", "Token signer is missing")
        if not isinstance(payload, dict):
            raise ValidationError("INVALID_JWS", "Token payload must be a JSON object")

        allowed_actions = (
            {expected_action} if isinstance(expected_action, str) else set(expected_action)
        )
        action = payload.get("action")
        if action is None:
            raise ValidationError(
                "INVALID_PAYLOAD", "JWS payload must include an 'action' field"
            )
        if action not in allowed_actions:
            expected_actions_text = ", ".join(sorted(allowed_actions))
            raise ValidationError(
                "INVALID_PAYLOAD",
                f"Expected action in [{expected_actions_text}], got '{action}'",
            )

        return VerifiedToken(signer_id=signer_id, payload=payload)
