"""Typed field extraction from verified token payloads, and money conversion."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from job_board_service.core.exceptions import ValidationError

CENT = Decimal("0.01")


def now_iso() -> str:
    """Return current UTC time as ISO 8601 string with Z suffix."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _is_int(value: object) -> bool:
    """Check if value is an integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool)


def require_str(payload: dict[str, Any], name: str, *, max_length: int) -> str:
    """Return a non-blank string field."""
    if name not in payload:
        raise ValidationError("INVALID_PAYLOAD", f"Missing required field: {name}")
    value = payload[name]
    if not isinstance(value, str) or len(value.strip()) == 0:
        raise ValidationError("INVALID_PAYLOAD", f"{name} must be a non-empty string")
    if len(value) > max_length:
        raise ValidationError(
            "FIELD_TOO_LONG", f"{name} must not exceed {max_length} characters", {"field": name}
        )
    return value


def optional_str(payload: dict[str, Any], name: str, *, max_length: int) -> str | None:
    """Return a string field, or None when absent or null."""
    if payload.get(name) is None:
        return None
    return require_str(payload, name, max_length=max_length)


def optional_bool(payload: dict[str, Any], name: str) -> bool:
    """Return a boolean flag, False when absent."""
    value = payload.get(name, False)
    if not isinstance(value, bool):
        raise ValidationError("INVALID_PAYLOAD", f"{name} must be a boolean")
    return value


def require_version(payload: dict[str, Any]) -> int:
    """Return the job version the caller observed."""
    value = payload.get("version")
    if not _is_int(value) or value < 1:
        raise ValidationError(
            "VERSION_REQUIRED", "version must be the positive integer last read from the job"
        )
    return int(value)


def require_int_in_range(payload: dict[str, Any], name: str, low: int, high: int) -> int:
    """Return an integer field bounded by [low, high]."""
    value = payload.get(name)
    if not _is_int(value) or not low <= value <= high:
        raise ValidationError(
            "INVALID_PAYLOAD", f"{name} must be an integer between {low} and {high}"
        )
    return int(value)


def parse_amount(value: object, name: str, *, allow_zero: bool = False) -> Decimal:
    """
    Parse a money amount given as a decimal string or number.

    Amounts must be positive (or zero when allowed) and carry at most two
    fractional digits.
    """
    if isinstance(value, bool) or not isinstance(value, str | int | float):
        raise ValidationError("INVALID_AMOUNT", f"{name} must be a decimal amount")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError("INVALID_AMOUNT", f"{name} must be a decimal amount") from exc
    if not amount.is_finite() or amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError("INVALID_AMOUNT", f"{name} must be greater than zero")
    if amount != amount.quantize(CENT):
        raise ValidationError("INVALID_AMOUNT", f"{name} must have at most two decimal places")
    return amount


def optional_amount(payload: dict[str, Any], name: str) -> Decimal | None:
    """Return an amount field, or None when absent or null."""
    if payload.get(name) is None:
        return None
    return parse_amount(payload[name], name)


def to_cents(amount: Decimal) -> int:
    """Convert a two-digit decimal amount to integer minor units."""
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def format_cents(cents: int | None) -> str | None:
    """Render minor units as a decimal string ("50.00")."""
    if cents is None:
        return None
    return str((Decimal(cents) / 100).quantize(CENT))


def compute_fee(authorized_cents: int, fee_rate: Decimal) -> int:
    """Platform fee in minor units, rounded half-up to the cent."""
    return int((Decimal(authorized_cents) * fee_rate).to_integral_value(rounding=ROUND_HALF_UP))
