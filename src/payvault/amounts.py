"""Unsigned 64-bit amount helpers with checked arithmetic."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_FLOOR

from .errors import InvalidInstruction, MathOverflow


U64_MAX = 2**64 - 1
DEFAULT_DECIMALS = 6


def require_u64(value: int, field_name: str = "amount") -> int:
    """Return value if it is an int in [0, 2**64 - 1]."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInstruction(f"{field_name} must be an integer, got {value!r}")
    if value < 0 or value > U64_MAX:
        raise InvalidInstruction(f"{field_name} out of u64 range: {value}")
    return value


def checked_add(a: int, b: int) -> int:
    result = a + b
    if result > U64_MAX:
        raise MathOverflow(f"u64 overflow: {a} + {b}")
    return result


def checked_sub(a: int, b: int) -> int:
    result = a - b
    if result < 0:
        raise MathOverflow(f"u64 underflow: {a} - {b}")
    return result


def to_base_units(value: Decimal | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a display amount to base units, rounding down (conservative)."""
    quant = Decimal(1).scaleb(-decimals)
    try:
        dec = Decimal(str(value)).quantize(quant, rounding=ROUND_FLOOR)
    except InvalidOperation as e:
        raise InvalidInstruction(f"Invalid amount: {value!r}") from e
    if not dec.is_finite():
        raise InvalidInstruction(f"Invalid amount: {value!r}")
    return require_u64(int(dec.scaleb(decimals)))


def format_base_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Format integer base units as a fixed-point string."""
    dec = Decimal(value).scaleb(-decimals)
    return f"{dec:.{decimals}f}"
