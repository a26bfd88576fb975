"""Conversion between decimal credit amounts and integer minor units (hundredths)."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from campfire_service.core.exceptions import ServiceError

MINOR_UNITS_PER_CREDIT = 100
# Upper bound for stored amounts and balances, exact as a float
MAX_MINOR_UNITS = 2**53
_CENT = Decimal("0.01")
_MAX_CREDITS = Decimal(MAX_MINOR_UNITS) / MINOR_UNITS_PER_CREDIT


def to_minor_units(value: object, field_name: str) -> int:
    """
    Parse a non-negative credit amount at the API boundary.

    Accepts ints, floats, decimal strings and Decimals with at most two
    fractional digits. Booleans are rejected.

    Raises:
        ServiceError: VALIDATION_ERROR for anything else.
    """
    if isinstance(value, bool) or not isinstance(value, int | float | str | Decimal):
        raise ServiceError(
            "VALIDATION_ERROR",
            f"{field_name} must be a number",
            400,
            {"field": field_name},
        )
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"{field_name} must be a number",
            400,
            {"field": field_name},
        ) from exc

    if not amount.is_finite() or amount < 0:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"{field_name} must be a non-negative number",
            400,
            {"field": field_name},
        )
    if amount > _MAX_CREDITS:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"{field_name} is too large",
            400,
            {"field": field_name},
        )
    quantized = amount.quantize(_CENT)
    if amount != quantized:
        raise ServiceError(
            "VALIDATION_ERROR",
            f"{field_name} supports at most two decimal places",
            400,
            {"field": field_name},
        )
    return int(amount * MINOR_UNITS_PER_CREDIT)


def config_to_minor_units(value: float) -> int:
    """Convert a configured credit amount, rounding half up to the nearest hundredth."""
    amount = Decimal(str(value))
    if not amount.is_finite() or amount < 0 or amount > _MAX_CREDITS:
        msg = f"Configured credit amount out of range: {value}"
        raise ValueError(msg)
    amount = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(amount * MINOR_UNITS_PER_CREDIT)


def from_minor_units(minor: int) -> float:
    """Format minor units as a two-decimal credit amount for JSON responses."""
    return float(Decimal(minor) / MINOR_UNITS_PER_CREDIT)
