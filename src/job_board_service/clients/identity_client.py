"""Async HTTP client for the Identity service."""

from __future__ import annotations

from typing import Any

import httpx
from service_commons.exceptions import ServiceError

from job_board_service.core.exceptions import AuthorizationError
from job_board_service.logging import get_logger


def _identity_unavailable(message: str) -> ServiceError:
    return ServiceError("IDENTITY_SERVICE_UNAVAILABLE", message, 502, {})


class IdentityClient:
    """
    Verifies actor-signed JWS tokens through the Identity service.

    Posters, workers and the platform operator sign their requests with
    Ed25519 keys registered in the Identity service; the job board only
    holds public verification results, never keys.
    """

    def __init__(
        self,
        base_url: str,
        verify_jws_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._verify_jws_path = verify_jws_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def verify_jws(self, token: str) -> dict[str, Any]:
        """
        Verify a JWS compact token.

        Returns:
            dict with keys: valid (True), agent_id (signer), payload (dict)

        Raises:
            AuthorizationError: INVALID_SIGNATURE when the signature does not verify
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) when Identity cannot answer
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(self._verify_jws_path, json={"token": token})
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity service unreachable",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise _identity_unavailable("Cannot connect to Identity service") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service request failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise _identity_unavailable("Identity service request failed") from exc

        if response.status_code == 404:
            raise AuthorizationError("UNKNOWN_SIGNER", "Token signer is not a registered user")

        if response.status_code != 200:
            logger.warning(
                "Identity service unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise _identity_unavailable("Identity service returned unexpected status")

        result: dict[str, Any] = response.json()
        if result.get("valid") is not True:
            raise AuthorizationError("INVALID_SIGNATURE", "JWS signature verification failed")
        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
