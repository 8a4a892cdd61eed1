from __future__ import annotations

from datetime import date
from typing import Union

from ..core.enums import BillingCycle
from .date_math import add_cycle, add_months, clamp_billing_day


def next_billing_date(current: date, cycle: Union[BillingCycle, str]) -> date:
    """Next billing date after ``current`` for the given cycle.

    Raises UnsupportedCycleError for an unknown cycle value.
    """
    return add_cycle(current, cycle)


def previous_billing_date(reference: date, billing_day: int) -> date:
    """Most recent date on or before ``reference`` falling on ``billing_day``."""
    day = clamp_billing_day(billing_day)
    if reference.day >= day:
        return add_months(reference, 0, day=day)
    return add_months(reference, -1, day=day)
