"""Shared request parsing and token verification for job-board routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import ValidationError
from job_board_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from job_board_service.services.token_validator import VerifiedToken

# Action signed into bearer tokens used for reads.
VIEW_ACTION = "view"

_DEFAULT_PAGE_SIZE = 50
_MAX_PAGE_SIZE = 200


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ValidationError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("INVALID_JSON", "Request body is not valid JSON") from exc

    if not isinstance(data, dict):
        raise ValidationError("INVALID_JSON", "Request body must be a JSON object")

    return data


def extract_token(data: dict[str, Any], field_name: str) -> str:
    """Extract and validate a token field from parsed JSON body."""
    if field_name not in data:
        raise ValidationError("INVALID_JWS", f"Missing required field: {field_name}")

    value = data[field_name]
    if not isinstance(value, str) or not value:
        raise ValidationError("INVALID_JWS", f"Field '{field_name}' must be a non-empty string")

    return value


def extract_bearer_token(authorization: str | None, *, required: bool) -> str | None:
    """Extract JWS token from Authorization header."""
    if authorization is None:
        if required:
            raise ValidationError("INVALID_JWS", "Missing Authorization header")
        return None

    if not authorization.startswith("Bearer "):
        raise ValidationError("INVALID_JWS", "Authorization header must use Bearer scheme")

    token = authorization[len("Bearer ") :]
    if not token:
        raise ValidationError("INVALID_JWS", "Bearer token must not be empty")

    return token


async def verify_token(token: str, action: str) -> VerifiedToken:
    state = get_app_state()
    if state.token_validator is None:
        msg = "TokenValidator not initialized"
        raise RuntimeError(msg)
    return await state.token_validator.validate(token, action)


async def verify_body_token(request: Request, action: str) -> VerifiedToken:
    """Verify the ``{"token": ...}`` body of a mutating request."""
    data = parse_json_body(await request.body())
    return await verify_token(extract_token(data, "token"), action)


async def verify_header_token(
    request: Request, action: str, *, required: bool
) -> VerifiedToken | None:
    """Verify an ``Authorization: Bearer`` token, if present or required."""
    token = extract_bearer_token(request.headers.get("authorization"), required=required)
    if token is None:
        return None
    return await verify_token(token, action)


def parse_pagination(request: Request) -> tuple[int, int]:
    """Read ``limit`` and ``offset`` query parameters."""
    values: dict[str, int] = {"limit": _DEFAULT_PAGE_SIZE, "offset": 0}
    for name in values:
        raw = request.query_params.get(name)
        if raw is None:
            continue
        try:
            values[name] = int(raw)
        except ValueError as exc:
            raise ValidationError("INVALID_PARAMETER", f"{name} must be an integer") from exc

    if values["limit"] < 1:
        raise ValidationError("INVALID_PARAMETER", "limit must be >= 1")
    if values["offset"] < 0:
        raise ValidationError("INVALID_PARAMETER", "offset must be >= 0")
    return min(values["limit"], _MAX_PAGE_SIZE), values["offset"]


async def verify_bearer_token(request: Request, action: str) -> VerifiedToken:
    """Verify a mandatory ``Authorization: Bearer`` token."""
    verified = await verify_header_token(request, action, required=True)
    if verified is None:
        raise ValidationError("INVALID_JWS", "Missing Authorization header")
    return verified
