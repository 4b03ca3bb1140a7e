"""Currency helpers.

All monetary values are rounded to exactly 2 decimal places after every
operation so floating point drift never accumulates across months.
"""

from __future__ import annotations

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

from .errors import ValidationError

_CENT = Decimal('0.01')


def round_currency(value: Any) -> float:
    """Round a value to 2 decimal places, half away from zero.

    ``None``, NaN, infinities and non-numeric values become ``0.0`` so a
    missing optional field never poisons a balance.

    Example:
        >>> round_currency(10.555)
        10.56
        >>> round_currency(1.005)
        1.01
    """
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    rounded = float(Decimal(repr(number)).quantize(_CENT, rounding=ROUND_HALF_UP))
    # Normalise -0.0
    return rounded if rounded != 0 else 0.0


def sum_currency(values: Iterable[Any]) -> float:
    """Sum values and round the total."""
    total = 0.0
    for value in values:
        total += round_currency(value)
    return round_currency(total)


def needs_precision_fix(value: Any) -> bool:
    """Return True when a stored number carries more than 2 decimal places."""
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    if not math.isfinite(number):
        return False
    scaled = number * 100
    return abs(scaled - round(scaled)) > 1e-9


def parse_amount(value: Any) -> Optional[float]:
    """Convert typed allocation text into a rounded float.

    Blank input means "nothing typed" and returns ``None``. Currency markers,
    thousands separators and accounting negatives such as ``(12.50)`` are
    accepted.

    Raises:
        ValidationError: If the text is not a finite number
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(float(value)):
            raise ValidationError(f"Invalid amount: {value!r}")
        return round_currency(value)
    if not isinstance(value, str):
        raise ValidationError(f"Invalid amount: {value!r}")

    cleaned = value.strip()
    if not cleaned:
        return None
    # Handle accounting negatives e.g. (123.45)
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    cleaned = cleaned.replace("$", "").replace(",", "").strip()
    try:
        number = float(cleaned)
    except ValueError as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not math.isfinite(number):
        raise ValidationError(f"Invalid amount: {value!r}")
    return round_currency(number)
