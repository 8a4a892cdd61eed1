from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Tuple

from ..model import ProRataDetails


class ProRataCalculator(ABC):
    """Calculator interface (Strategy Pattern for pro-rata billing)."""

    @abstractmethod
    def compute(self, base_amount: Decimal, days_active: int) -> ProRataDetails:
        raise NotImplementedError

    def split(self, old_amount: Decimal, new_amount: Decimal, change_day: int) -> Tuple[ProRataDetails, ProRataDetails]:
        """Old rate over ``[0, change_day)``, new rate over ``[change_day, period)``."""
        first = self.compute(old_amount, change_day)
        return first, self.compute(new_amount, first.period_length - first.days_active)
