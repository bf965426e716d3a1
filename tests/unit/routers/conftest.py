"""Router test fixtures with mocked Identity service and payment processor."""

from __future__ import annotations

import base64
import json
import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from job_board_service.app import create_app
from job_board_service.config import clear_settings_cache
from job_board_service.core.lifespan import lifespan
from job_board_service.core.state import get_app_state, reset_app_state
from tests.helpers import generate_keypair, make_config_yaml, make_jws_token, processor_mock

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed agent IDs
# ---------------------------------------------------------------------------
OPERATOR_ID = "a-operator-test-id"
POSTER_ID = "a-poster-uuid"
WORKER_ID = "a-worker-uuid"
STRANGER_ID = "a-stranger-uuid"

_PRIVATE_KEY, _PUBLIC_KEY = generate_keypair()


def _b64_json(segment: str) -> dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    decoded: dict[str, Any] = json.loads(base64.urlsafe_b64decode(padded))
    return decoded


def _extract_kid(token: str) -> str:
    """Signer id from the JWS protected header."""
    return str(_b64_json(token.split(".")[0])["kid"])


def _extract_payload(token: str) -> dict[str, Any]:
    return _b64_json(token.split(".")[1])


def sign(agent_id: str, payload: dict[str, Any]) -> str:
    """JWS token signed on behalf of ``agent_id``."""
    return make_jws_token(_PRIVATE_KEY, agent_id, payload)


def bearer(agent_id: str, payload: dict[str, Any] | None = None) -> dict[str, str]:
    """Authorization header carrying a signed payload (``view`` by default)."""
    return {"Authorization": f"Bearer {sign(agent_id, payload or {'action': 'view'})}"}


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and mocked external services."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        make_config_yaml(
            str(tmp_path / "test.db"),
            operator_id=OPERATOR_ID,
            log_directory=str(tmp_path / "logs"),
        )
    )

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Identity mock: every well-formed token verifies as its kid
        mock_identity = AsyncMock()
        mock_identity.close = AsyncMock()
        mock_identity.verify_jws = AsyncMock(
            side_effect=lambda token: {
                "valid": True,
                "agent_id": _extract_kid(token),
                "payload": _extract_payload(token),
            }
        )
        state.identity_client = mock_identity

        # Processor mock: every call succeeds and settles at once
        state.payment_processor_client = processor_mock()

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def processor(app: Any) -> AsyncMock:
    """The processor mock wired into the running app."""
    mock: AsyncMock = get_app_state().payment_processor_client  # type: ignore[assignment]
    return mock


@pytest.fixture
def mock_identity_unavailable(app: Any) -> None:
    """Configure the Identity mock to simulate service unavailability."""
    state = get_app_state()
    state.identity_client.verify_jws = AsyncMock(  # type: ignore[union-attr]
        side_effect=ConnectionError("Identity service unreachable")
    )


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------
async def save_card(client: AsyncClient, user_id: str = POSTER_ID) -> Any:
    token = sign(user_id, {"action": "save_payment_method", "processor_token": "tok_visa"})
    return await client.post("/payment-methods", json={"token": token})


async def create_job(client: AsyncClient, **overrides: Any) -> Any:
    """Save a card and create an open job via POST /jobs."""
    await save_card(client)
    payload: dict[str, Any] = {
        "action": "create_job",
        "title": "Fix the garden fence",
        "description": "Replace two broken panels and repaint",
        "payment_amount": "100.00",
        "payment_type": "fixed",
        "tasks": [{"description": "Remove old panels"}, {"description": "Paint"}],
    }
    payload.update(overrides)
    return await client.post("/jobs", json={"token": sign(POSTER_ID, payload)})


async def assign_job(client: AsyncClient) -> dict[str, Any]:
    """Create an open job and accept the worker's application. Returns the job."""
    job = (await create_job(client)).json()
    job_id = job["job_id"]
    applied = await client.post(
        f"/jobs/{job_id}/apply",
        json={
            "token": sign(
                WORKER_ID, {"action": "apply", "job_id": job_id, "message": "I can do it"}
            )
        },
    )
    application_id = applied.json()["application_id"]
    accepted = await client.post(
        f"/jobs/{job_id}/applications/{application_id}/accept",
        json={
            "token": sign(
                POSTER_ID,
                {
                    "action": "accept_application",
                    "job_id": job_id,
                    "application_id": application_id,
                    "version": job["version"],
                },
            )
        },
    )
    result: dict[str, Any] = accepted.json()
    return result


async def start_job(client: AsyncClient) -> dict[str, Any]:
    """Assign a job, register the worker's payout account and start work."""
    job = await assign_job(client)
    await client.put(
        "/payout-account",
        json={
            "token": sign(
                WORKER_ID, {"action": "set_payout_account", "account_id": "acct_worker"}
            )
        },
    )
    started = await client.patch(
        f"/jobs/{job['job_id']}/start",
        json={
            "token": sign(
                WORKER_ID,
                {"action": "start_job", "job_id": job["job_id"], "version": job["version"]},
            )
        },
    )
    result: dict[str, Any] = started.json()
    return result
