"""Payment method, payout account and processor webhook endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from job_board_service.core.state import get_app_state
from job_board_service.routers.validation import (
    VIEW_ACTION,
    extract_token,
    parse_json_body,
    verify_bearer_token,
    verify_body_token,
)
from job_board_service.services.payload_fields import require_str
from job_board_service.services.views import payment_method_to_response

if TYPE_CHECKING:
    from job_board_service.services.payment_orchestrator import PaymentOrchestrator

router = APIRouter()


def _payments() -> PaymentOrchestrator:
    state = get_app_state()
    if state.payments is None:
        msg = "PaymentOrchestrator not initialized"
        raise RuntimeError(msg)
    return state.payments


# ---------------------------------------------------------------------------
# POST /payment-methods — save a card
# ---------------------------------------------------------------------------


@router.post("/payment-methods", status_code=201)
async def save_payment_method(request: Request) -> JSONResponse:
    """Register a card token with the processor; it stays pending until verified."""
    verified = await verify_body_token(request, "save_payment_method")
    processor_token = require_str(verified.payload, "processor_token", max_length=255)
    method = await _payments().save_payment_method(verified.signer_id, processor_token)
    return JSONResponse(status_code=201, content=payment_method_to_response(method))


# ---------------------------------------------------------------------------
# GET /payment-methods
# ---------------------------------------------------------------------------


@router.get("/payment-methods")
async def list_payment_methods(request: Request) -> dict[str, Any]:
    verified = await verify_bearer_token(request, VIEW_ACTION)
    methods = _payments().list_payment_methods(verified.signer_id)
    return {"payment_methods": [payment_method_to_response(method) for method in methods]}


# ---------------------------------------------------------------------------
# POST /payment-methods/{method_id}/confirm
# ---------------------------------------------------------------------------


@router.post("/payment-methods/{method_id}/confirm")
async def confirm_payment_method(method_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_body_token(request, "confirm_payment_method")
    verified.require_binding("method_id", method_id)
    method = await _payments().confirm_payment_method(verified.signer_id, method_id)
    return payment_method_to_response(method)


# ---------------------------------------------------------------------------
# POST /payment-methods/{method_id}/default
# ---------------------------------------------------------------------------


@router.post("/payment-methods/{method_id}/default")
async def set_default_payment_method(method_id: str, request: Request) -> dict[str, Any]:
    verified = await verify_body_token(request, "set_default_payment_method")
    verified.require_binding("method_id", method_id)
    return payment_method_to_response(_payments().set_default(verified.signer_id, method_id))


# ---------------------------------------------------------------------------
# DELETE /payment-methods/{method_id}
# ---------------------------------------------------------------------------


@router.delete("/payment-methods/{method_id}", status_code=204)
async def delete_payment_method(method_id: str, request: Request) -> None:
    """Detach a card at the processor and forget it."""
    verified = await verify_bearer_token(request, "delete_payment_method")
    verified.require_binding("method_id", method_id)
    await _payments().delete_payment_method(verified.signer_id, method_id)


# ---------------------------------------------------------------------------
# PUT /payout-account
# ---------------------------------------------------------------------------


@router.put("/payout-account")
async def set_payout_account(request: Request) -> dict[str, Any]:
    """Register the processor account a worker is paid out to."""
    verified = await verify_body_token(request, "set_payout_account")
    account_id = require_str(verified.payload, "account_id", max_length=255)
    account = _payments().set_payout_account(verified.signer_id, account_id)
    return {
        "user_id": account["user_id"],
        "account_id": account["account_id"],
        "updated_at": account["updated_at"],
    }


# ---------------------------------------------------------------------------
# POST /payments/webhook — processor events
# ---------------------------------------------------------------------------


@router.post("/payments/webhook")
async def payment_webhook(request: Request) -> dict[str, Any]:
    """
    Apply a signed processor event.

    The body is ``{"token": <HS256 JWS>}`` signed with the shared webhook
    secret. Replays of an already applied event are acknowledged without
    effect.
    """
    data = parse_json_body(await request.body())
    token = extract_token(data, "token")
    return await _payments().handle_webhook(token)
