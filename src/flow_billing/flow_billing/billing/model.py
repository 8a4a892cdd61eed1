from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Union

from ..core.constants import MAX_BILLING_PERIOD_DAYS, STANDARD_BILLING_PERIOD_DAYS
from ..core.enums import BillingCycle
from ..core.exceptions import InvalidRangeError
from .cycle import previous_billing_date
from .date_math import add_cycle, days_between, parse_cycle


@dataclass(frozen=True)
class ProRataDetails:
    """Derived, never persisted."""

    base_amount: Decimal
    days_active: int
    prorated_amount: Decimal
    period_length: int = STANDARD_BILLING_PERIOD_DAYS

    @property
    def is_full_period(self) -> bool:
        return self.days_active >= self.period_length


@dataclass(frozen=True)
class BillingPeriod:
    """A ``[start, end)`` billing window for one cycle.

    Partial coverage is measured on a canonical 30-day axis: ``offset_of``
    maps a date inside the window to a day number 0..30, where the window end
    is always 30. Monthly windows count elapsed days (capped at 30); longer
    cycles scale elapsed days onto the axis.
    """

    start: date
    end: date
    cycle: BillingCycle = BillingCycle.MONTHLY

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise InvalidRangeError("Billing period end must be after its start")
        if days_between(self.start, self.end) > MAX_BILLING_PERIOD_DAYS:
            raise InvalidRangeError("Billing period cannot exceed one year")

    @classmethod
    def starting(cls, start: date, cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY) -> "BillingPeriod":
        cycle = parse_cycle(cycle)
        return cls(start=start, end=add_cycle(start, cycle), cycle=cycle)

    @classmethod
    def containing(
        cls,
        reference: date,
        billing_day: int,
        cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY,
    ) -> "BillingPeriod":
        """Monthly-anchored period that contains ``reference``.

        For quarterly/annual cycles the anchor month is the most recent month
        on or before ``reference`` carrying the billing day.
        """
        return cls.starting(previous_billing_date(reference, billing_day), cycle)

    @property
    def length_days(self) -> int:
        return days_between(self.start, self.end)

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end

    def offset_of(self, value: date) -> int:
        if value <= self.start:
            return 0
        if value >= self.end:
            return STANDARD_BILLING_PERIOD_DAYS
        elapsed = days_between(self.start, value)
        if self.cycle == BillingCycle.MONTHLY:
            return min(elapsed, STANDARD_BILLING_PERIOD_DAYS)
        scaled = (Decimal(elapsed) * STANDARD_BILLING_PERIOD_DAYS / Decimal(self.length_days)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return min(int(scaled), STANDARD_BILLING_PERIOD_DAYS)
