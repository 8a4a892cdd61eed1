"""Day-of-month period arithmetic.

Dates are naive calendar dates; no time-zone conversion happens here. Billing
days are kept in 1..28 so that adding months never rolls over a month end.
"""

from __future__ import annotations

from datetime import date
from typing import Union

from ..core.constants import MAX_BILLING_DAY
from ..core.enums import BillingCycle
from ..core.exceptions import UnsupportedCycleError

_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.ANNUAL: 12,
}


def days_between(start: date, end: date) -> int:
    """Whole days from start to end, exclusive of end. Never negative."""
    return max((end - start).days, 0)


def clamp_billing_day(day: int) -> int:
    return min(max(int(day), 1), MAX_BILLING_DAY)


def add_months(value: date, months: int, *, day: int | None = None) -> date:
    """Shift by whole months, placing the result on ``day`` (default: same day) clamped to 28."""
    index = value.year * 12 + (value.month - 1) + int(months)
    year, month = divmod(index, 12)
    return date(year, month + 1, clamp_billing_day(value.day if day is None else day))


def parse_cycle(cycle: Union[BillingCycle, str]) -> BillingCycle:
    if isinstance(cycle, BillingCycle):
        return cycle
    try:
        return BillingCycle(str(cycle).strip().lower())
    except ValueError:
        raise UnsupportedCycleError(f"Unsupported billing cycle: {cycle!r}")


def cycle_months(cycle: Union[BillingCycle, str]) -> int:
    return _CYCLE_MONTHS[parse_cycle(cycle)]


def add_cycle(value: date, cycle: Union[BillingCycle, str]) -> date:
    """Advance one billing cycle, preserving day of month (clamped to 28)."""
    return add_months(value, cycle_months(cycle))
