"""Unit tests for payload field helpers and money conversion."""

from __future__ import annotations

from decimal import Decimal

import pytest
from freezegun import freeze_time

from job_board_service.core.exceptions import ValidationError
from job_board_service.services.payload_fields import (
    compute_fee,
    format_cents,
    now_iso,
    optional_str,
    parse_amount,
    require_str,
    require_version,
    to_cents,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("50.00", Decimal("50.00")),
        ("12.5", Decimal("12.5")),
        (20, Decimal("20")),
        (0.1, Decimal("0.1")),
    ],
)
def test_parse_amount_accepts(value: object, expected: Decimal) -> None:
    assert parse_amount(value, "payment_amount") == expected


@pytest.mark.unit
@pytest.mark.parametrize("value", ["1.001", "-5", "0", "abc", "NaN", "Infinity", True, None, []])
def test_parse_amount_rejects(value: object) -> None:
    with pytest.raises(ValidationError) as exc_info:
        parse_amount(value, "payment_amount")

    assert exc_info.value.error == "INVALID_AMOUNT"


@pytest.mark.unit
def test_zero_allowed_when_asked() -> None:
    assert parse_amount("0", "bonus_amount", allow_zero=True) == Decimal("0")


@pytest.mark.unit
def test_cents_conversion() -> None:
    assert to_cents(Decimal("100.00")) == 10000
    assert to_cents(Decimal("0.07")) == 7
    assert format_cents(10000) == "100.00"
    assert format_cents(5) == "0.05"
    assert format_cents(None) is None


@pytest.mark.unit
def test_fee_half_up() -> None:
    assert compute_fee(10000, Decimal("0.10")) == 1000
    assert compute_fee(15, Decimal("0.10")) == 2
    assert compute_fee(14, Decimal("0.10")) == 1


@pytest.mark.unit
def test_strings() -> None:
    assert require_str({"title": "Fence"}, "title", max_length=10) == "Fence"
    assert optional_str({}, "location", max_length=10) is None

    with pytest.raises(ValidationError) as blank:
        require_str({"title": "   "}, "title", max_length=10)
    assert blank.value.error == "INVALID_PAYLOAD"

    with pytest.raises(ValidationError) as too_long:
        require_str({"title": "x" * 11}, "title", max_length=10)
    assert too_long.value.error == "FIELD_TOO_LONG"


@pytest.mark.unit
@pytest.mark.parametrize("payload", [{}, {"version": 0}, {"version": "3"}, {"version": True}])
def test_version_required(payload: dict[str, object]) -> None:
    with pytest.raises(ValidationError) as exc_info:
        require_version(payload)

    assert exc_info.value.error == "VERSION_REQUIRED"


@pytest.mark.unit
def test_now_iso_is_utc_with_z_suffix() -> None:
    with freeze_time("2025-01-01 01:00:00"):
        assert now_iso() == "2025-01-01T01:00:00.000000Z"
