"""
Amounts -- Decimal helpers shared by every layer.

All monetary values in the engine are ``Decimal``; raw values arriving from
JSON blobs or YAML (ints, floats, numeric strings, ``None``) are converted
once at the boundary with ``to_decimal``.  Display rounding is
ROUND_HALF_UP to two decimal places.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

# Absolute tolerance for every balance comparison.
BALANCE_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """Coerce a loosely typed numeric value to Decimal.

    ``None``, empty strings, booleans and unparseable values become zero.
    Floats go through ``str`` so 0.1 stays 0.1.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return ZERO
        try:
            return Decimal(stripped)
        except InvalidOperation:
            return ZERO
    return ZERO


def round2(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def round_to(value: Decimal, places: int) -> Decimal:
    """Round to ``places`` decimal places, half up."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def within_tolerance(
    left: Decimal, right: Decimal, tolerance: Decimal = BALANCE_TOLERANCE
) -> bool:
    return abs(left - right) <= tolerance


def fmt(value: Decimal, places: int = 2) -> str:
    """Fixed-point rendering used in validation messages."""
    return f"{round_to(value, places):.{places}f}"


def fmt_grouped(value: Decimal) -> str:
    """Thousands-grouped rendering used in warnings (e.g. ``12,500``)."""
    normalized = round2(value)
    if normalized == normalized.to_integral_value():
        return f"{int(normalized):,}"
    return f"{normalized:,.2f}"
