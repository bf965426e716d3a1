"""Payment method, payout account and webhook endpoint tests."""

from __future__ import annotations

import pytest

from tests.helpers import make_webhook_token, tamper_jws
from tests.unit.routers.conftest import (
    POSTER_ID,
    STRANGER_ID,
    WORKER_ID,
    bearer,
    create_job,
    save_card,
    sign,
)


@pytest.mark.unit
async def test_save_and_list_cards(client):
    saved = await save_card(client)

    assert saved.status_code == 201
    method = saved.json()
    assert method["status"] == "active"
    assert method["is_default"] is True
    assert method["last4"] == "4242"
    assert "setup_intent_id" not in method

    listed = await client.get("/payment-methods", headers=bearer(POSTER_ID))
    assert [item["method_id"] for item in listed.json()["payment_methods"]] == [
        method["method_id"]
    ]
    others = await client.get("/payment-methods", headers=bearer(STRANGER_ID))
    assert others.json()["payment_methods"] == []


@pytest.mark.unit
async def test_save_card_requires_processor_token(client):
    response = await client.post(
        "/payment-methods", json={"token": sign(POSTER_ID, {"action": "save_payment_method"})}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_set_default_and_delete(client, processor):
    first = (await save_card(client)).json()
    second = (
        await client.post(
            "/payment-methods",
            json={
                "token": sign(
                    POSTER_ID, {"action": "save_payment_method", "processor_token": "tok_amex"}
                )
            },
        )
    ).json()
    method_id = second["method_id"]

    made_default = await client.post(
        f"/payment-methods/{method_id}/default",
        json={
            "token": sign(
                POSTER_ID, {"action": "set_default_payment_method", "method_id": method_id}
            )
        },
    )
    assert made_default.json()["is_default"] is True

    deleted = await client.delete(
        f"/payment-methods/{method_id}",
        headers=bearer(POSTER_ID, {"action": "delete_payment_method", "method_id": method_id}),
    )
    assert deleted.status_code == 204
    processor.detach_payment_method.assert_awaited_once_with(method_id)

    remaining = (await client.get("/payment-methods", headers=bearer(POSTER_ID))).json()
    assert [item["method_id"] for item in remaining["payment_methods"]] == [first["method_id"]]
    assert remaining["payment_methods"][0]["is_default"] is True


@pytest.mark.unit
async def test_cannot_touch_another_users_card(client):
    method_id = (await save_card(client)).json()["method_id"]

    response = await client.post(
        f"/payment-methods/{method_id}/default",
        json={
            "token": sign(
                STRANGER_ID, {"action": "set_default_payment_method", "method_id": method_id}
            )
        },
    )

    assert response.status_code == 404
    assert response.json()["error"] == "PAYMENT_METHOD_NOT_FOUND"


@pytest.mark.unit
async def test_payout_account(client):
    response = await client.put(
        "/payout-account",
        json={"token": sign(WORKER_ID, {"action": "set_payout_account", "account_id": "acct_1"})},
    )

    assert response.status_code == 200
    assert response.json()["account_id"] == "acct_1"
    assert response.json()["user_id"] == WORKER_ID


@pytest.mark.unit
async def test_job_creation_without_card(client):
    payload = {
        "action": "create_job",
        "title": "Mow the lawn",
        "description": "Front and back",
        "payment_amount": "30.00",
        "payment_type": "fixed",
    }

    response = await client.post("/jobs", json={"token": sign(POSTER_ID, payload)})

    assert response.status_code == 400
    assert response.json()["error"] == "PAYMENT_METHOD_REQUIRED"


@pytest.mark.unit
async def test_declined_card_leaves_job_pending(client, processor):
    from job_board_service.core.exceptions import PaymentPermanentError

    processor.authorize.side_effect = PaymentPermanentError("CARD_DECLINED", "Declined")

    response = await create_job(client)

    assert response.status_code == 402
    assert response.json()["error"] == "CARD_DECLINED"
    assert response.json()["details"]["job_id"].startswith("job-")


class TestWebhook:
    """POST /payments/webhook"""

    @pytest.mark.unit
    async def test_processing_authorization_settled_by_webhook(self, client, processor):
        processor.authorize.side_effect = lambda amount, method, customer, job_id, key: {
            "id": f"pi_{job_id}",
            "status": "processing",
        }
        job = (await create_job(client)).json()
        assert job["status"] == "pending_payment"
        assert job["authorization_pending"] is True

        token = make_webhook_token(
            "evt_auth_1",
            "authorization.succeeded",
            {"job_id": job["job_id"], "hold_id": f"pi_{job['job_id']}"},
        )
        first = await client.post("/payments/webhook", json={"token": token})
        replay = await client.post("/payments/webhook", json={"token": token})

        assert first.json() == {"event_id": "evt_auth_1", "status": "processed"}
        assert replay.json() == {"event_id": "evt_auth_1", "status": "duplicate"}
        detail = await client.get(f"/jobs/{job['job_id']}")
        assert detail.json()["status"] == "open"

    @pytest.mark.unit
    async def test_unhandled_event_type(self, client):
        token = make_webhook_token("evt_2", "customer.updated", {"customer": "a-poster"})

        response = await client.post("/payments/webhook", json={"token": token})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    @pytest.mark.unit
    async def test_bad_signature(self, client):
        token = tamper_jws(make_webhook_token("evt_3", "customer.updated", {}))

        response = await client.post("/payments/webhook", json={"token": token})

        assert response.status_code == 403
        assert response.json()["error"] == "INVALID_WEBHOOK_SIGNATURE"

    @pytest.mark.unit
    async def test_missing_token(self, client):
        response = await client.post("/payments/webhook", json={"event": "x"})

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_JWS"
