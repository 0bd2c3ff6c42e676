"""Money conversion helpers using fixed micro-unit precision."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR

from .errors import ValidationError


MICROS_PER_UNIT = 1_000_000
# Stored amounts are SQLite INTEGERs.
MAX_MICROS = 2**63 - 1
_UNIT_QUANT = Decimal("0.000001")
_AMOUNT_RE = re.compile(r"^\d+\.?\d*$")


def amount_to_micros(value: Decimal | float | int | str) -> int:
    """Convert spend amount to micro-units, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_UNIT_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_UNIT)


def limit_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a configured limit to micro-units, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_UNIT_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_UNIT)


def micros_to_decimal(value: int) -> Decimal:
    """Convert integer micro-units to a Decimal amount."""
    return (Decimal(value) / Decimal(MICROS_PER_UNIT)).quantize(_UNIT_QUANT)


def format_amount(value: int, currency: str = "USDC") -> str:
    """Format integer micro-units as an amount string with currency code."""
    return f"{micros_to_decimal(value):.2f} {currency}"


def parse_amount(value: str | Decimal | int, field: str = "amount") -> Decimal:
    """Parse a positive decimal amount string as accepted on the create path."""
    raw = str(value).strip()
    if not _AMOUNT_RE.match(raw):
        raise ValidationError(f"{field} must be a valid number", field=field)
    try:
        dec = Decimal(raw)
    except InvalidOperation:
        raise ValidationError(f"{field} must be a valid number", field=field) from None
    if dec <= 0:
        raise ValidationError(f"{field} must be greater than 0", field=field)
    if dec.as_tuple().exponent < -6:
        raise ValidationError(f"{field} supports at most 6 decimal places", field=field)
    try:
        micros = amount_to_micros(dec)
    except InvalidOperation:
        raise ValidationError(f"{field} is too large", field=field) from None
    if micros > MAX_MICROS:
        raise ValidationError(f"{field} is too large", field=field)
    return dec
