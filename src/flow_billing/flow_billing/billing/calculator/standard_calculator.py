from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from ...core.constants import CENT, STANDARD_BILLING_PERIOD_DAYS
from ...core.exceptions import InvalidRangeError
from ..model import ProRataDetails
from .base import ProRataCalculator


def to_amount(value: Any) -> Decimal:
    """Coerce to Decimal without going through binary float digits."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidRangeError(f"Amount must be numeric, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidRangeError(f"Amount must be numeric, got {value!r}")


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class StandardProRataCalculator(ProRataCalculator):
    """Standard rule: round_half_up(amount * days / 30, 2), rounded once."""

    period_length = STANDARD_BILLING_PERIOD_DAYS

    def compute(self, base_amount: Any, days_active: Any) -> ProRataDetails:
        amount = to_amount(base_amount)
        if not amount.is_finite() or amount < 0:
            raise InvalidRangeError(f"base_amount must be >= 0, got {base_amount!r}")
        if isinstance(days_active, bool) or not isinstance(days_active, int):
            raise InvalidRangeError(f"days_active must be an integer, got {days_active!r}")
        if not 0 <= days_active <= self.period_length:
            raise InvalidRangeError(f"days_active must be within 0..{self.period_length}, got {days_active}")

        prorated = round_money(amount * days_active / self.period_length)
        return ProRataDetails(
            base_amount=amount,
            days_active=days_active,
            prorated_amount=prorated,
            period_length=self.period_length,
        )


_default = StandardProRataCalculator()


def compute_prorata(base_amount: Any, days_active: int) -> ProRataDetails:
    return _default.compute(base_amount, days_active)


def split_prorata(old_amount: Any, new_amount: Any, change_day: int):
    return _default.split(old_amount, new_amount, change_day)
