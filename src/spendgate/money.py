"""Money helpers using fixed microcredit precision.

The core only ever handles integer microcredits. Decimal conversion exists
for CLI display and for parsing human input there.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR
from typing import Any

from .errors import InvalidAmountError, InvalidBoundsError


MICROS_PER_CREDIT = 1_000_000
_CREDIT_QUANT = Decimal("0.000001")


def require_micros(value: Any, field: str, *, bound: bool = False) -> int:
    """Return value if it is a positive int, otherwise raise.

    Floats, bools and numeric strings are rejected so rounding drift can
    never enter the accounting. ``bound=True`` raises InvalidBoundsError
    (used for caps) instead of InvalidAmountError.
    """
    error = InvalidBoundsError if bound else InvalidAmountError
    if isinstance(value, bool) or not isinstance(value, int):
        raise error(f"{field} must be an integer number of microcredits, got {value!r}")
    if value <= 0:
        raise error(f"{field} must be positive, got {value}")
    return value


def amount_credits_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a spend amount to microcredits, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_CREDIT_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_CREDIT)


def limit_credits_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a cap to microcredits, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_CREDIT_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_CREDIT)


def micros_to_credits(value: int) -> Decimal:
    return (Decimal(value) / Decimal(MICROS_PER_CREDIT)).quantize(_CREDIT_QUANT)


def format_credits(value: int) -> str:
    """Format integer microcredits for display, e.g. ``10.500000 cr``."""
    return f"{micros_to_credits(value)} cr"
