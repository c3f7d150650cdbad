"""
Centralized validation rules for engine inputs.

validate_* functions return (is_valid, error_message) so callers can show
messages without exceptions; require() turns a failed check into a
ValidationError for the engines.
"""
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple, Sequence, Any

from ..errors import ValidationError


def require(check: Tuple[bool, str]) -> None:
    """Raise ValidationError if check failed."""
    is_valid, message = check
    if not is_valid:
        raise ValidationError(message)


def validate_quantity(qty: Any, allow_zero: bool = False, min_val: Optional[int] = None, max_val: Optional[int] = None) -> Tuple[bool, str]:
    """
    Validate a unit quantity.

    Args:
        qty: Quantity to validate
        allow_zero: Whether 0 is accepted (physical counts), else strictly positive
        min_val: Minimum allowed value (inclusive)
        max_val: Maximum allowed value (inclusive)

    Returns:
        (is_valid, error_message)
    """
    if isinstance(qty, bool) or not isinstance(qty, int):
        return False, f"Quantity must be an integer, got {qty!r}"

    if allow_zero and qty < 0:
        return False, f"Quantity cannot be negative, got {qty}"

    if not allow_zero and qty <= 0:
        return False, f"Quantity must be positive, got {qty}"

    if min_val is not None and qty < min_val:
        return False, f"Quantity must be at least {min_val}"

    if max_val is not None and qty > max_val:
        return False, f"Quantity cannot exceed {max_val}"

    return True, ""


def validate_sale_lines(lines: Sequence) -> Tuple[bool, str]:
    """
    Validate a sale request: non-empty, (medication_id, quantity) pairs, positive quantities.
    """
    if not lines:
        return False, "A sale needs at least one line"

    for index, line in enumerate(lines):
        try:
            medication_id, quantity = line
        except (TypeError, ValueError):
            return False, f"Line {index}: expected (medication_id, quantity), got {line!r}"

        if isinstance(medication_id, bool) or not isinstance(medication_id, int):
            return False, f"Line {index}: invalid medication id {medication_id!r}"

        is_valid, message = validate_quantity(quantity)
        if not is_valid:
            return False, f"Line {index} (medication {medication_id}): {message}"

    return True, ""


def validate_window_days(window_days: Any) -> Tuple[bool, str]:
    if isinstance(window_days, bool) or not isinstance(window_days, int):
        return False, f"Window must be an integer number of days, got {window_days!r}"
    if window_days <= 0:
        return False, f"Window must be at least 1 day, got {window_days}"
    return True, ""


def validate_date_range(start_date: Optional[date], end_date: Optional[date]) -> Tuple[bool, str]:
    if start_date and end_date and start_date > end_date:
        return False, "Start date cannot be after end date"
    return True, ""


def parse_price(value: Any, label: str = "Price") -> Decimal:
    """
    Convert a price to Decimal through its text form (2.3 stays 2.3).

    Raises:
        ValidationError: Not a number, not finite, or negative
    """
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number, got {value!r}")
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{label} must be a number, got {value!r}")
    if not price.is_finite():
        raise ValidationError(f"{label} must be a finite number, got {value!r}")
    if price < 0:
        raise ValidationError(f"{label} cannot be negative: {price}")
    return price
