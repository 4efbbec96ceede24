"""
Input validation for the Event Planner sync SDK.

This module normalizes user input at the data-model boundary:
- Amount text ("1,250.50") is parsed once into a float
- Amounts must be finite, non-NaN and non-negative
- Required text fields must be non-blank

Invariants:
    - Validation errors are deterministic
    - Validation never touches the network or the store mirrors
    - Grouping separators are only accepted between digits
"""

from __future__ import annotations

import math
import re
from decimal import Decimal
from typing import Any, Optional

from .errors import ValidationError

_GROUPED_NUMBER = re.compile(r"^[+-]?(\d{1,3}(,\d{3})+|\d+)?(\.\d+)?$")


def parse_amount(value: Any, field_name: str = "amount", *, allow_empty: bool = False) -> float:
    """Parse a user-entered amount into a float.

    Args:
        value: Text (optionally with comma grouping) or a number
        field_name: Field name used in error messages
        allow_empty: Treat empty text as 0.0 instead of rejecting it

    Returns:
        The parsed amount

    Raises:
        ValidationError: If the amount is malformed, NaN, infinite or negative

    Example:
        >>> parse_amount("1,250.50")
        1250.5
    """
    if isinstance(value, bool):
        raise ValidationError(f"Field '{field_name}' must be a number", field_name=field_name)

    if isinstance(value, (int, float)):
        amount = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            if allow_empty:
                return 0.0
            raise ValidationError(f"Field '{field_name}' is required", field_name=field_name)
        if not _GROUPED_NUMBER.match(text) or text in {"+", "-", "."}:
            raise ValidationError(
                f"Field '{field_name}' is not a valid amount: {value!r}",
                field_name=field_name,
            )
        amount = float(text.replace(",", ""))
    else:
        raise ValidationError(f"Field '{field_name}' must be a number", field_name=field_name)

    return check_amount(amount, field_name)


def check_amount(amount: float, field_name: str = "amount") -> float:
    """Reject NaN, infinite and negative amounts.

    Raises:
        ValidationError: If the amount is not acceptable
    """
    if math.isnan(amount) or math.isinf(amount):
        raise ValidationError(f"Field '{field_name}' must be finite", field_name=field_name)
    if amount < 0:
        raise ValidationError(f"Field '{field_name}' must not be negative", field_name=field_name)
    return amount


def require_text(value: Optional[str], field_name: str) -> str:
    """Return the stripped text or raise if it is blank."""
    if value is None or not value.strip():
        raise ValidationError(f"Field '{field_name}' is required", field_name=field_name)
    return value.strip()


def check_headcount(count: int, field_name: str = "count") -> int:
    """Guests are counted in whole people, at least one per entry."""
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ValidationError(
            f"Field '{field_name}' must be a positive whole number",
            field_name=field_name,
        )
    return count


def format_amount_text(amount: float) -> str:
    """Render an amount as plain fixed-point text for storage (no grouping, no exponent)."""
    if amount == int(amount):
        return str(int(amount))
    text = format(Decimal(repr(amount)), "f")
    return text.rstrip("0").rstrip(".") if "." in text else text
