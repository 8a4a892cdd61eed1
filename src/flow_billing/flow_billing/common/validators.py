from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from ..core.constants import MAX_BILLING_DAY
from ..core.exceptions import ValidationError


def require_non_empty(value: str, field_name: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()


def require_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a number")
    return amount


def require_non_negative(value: Any, field_name: str) -> Decimal:
    amount = require_decimal(value, field_name)
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    return amount


def require_positive_int(value: Any, field_name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a whole number")
    if number < 1 or str(number) != str(value).strip():
        raise ValidationError(f"{field_name} must be a whole number of at least 1")
    return number


def require_billing_day(value: Any) -> int:
    day = require_positive_int(value, "billing_day")
    if day > MAX_BILLING_DAY:
        raise ValidationError(f"billing_day must be between 1 and {MAX_BILLING_DAY}")
    return day
