from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Optional, Union

from ..core.exceptions import ValidationError

Clock = Callable[[], datetime]


def parse_iso_date(value: str) -> date:
    """Parse YYYY-MM-DD string into date."""
    return datetime.strptime(value, "%Y-%m-%d").date()


def coerce_date(value: Union[date, str, None], field_name: str) -> Optional[date]:
    """Accept a date, a YYYY-MM-DD string or None (boundary helper)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return parse_iso_date(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field_name} must be a date (YYYY-MM-DD)")


def now_local() -> datetime:
    """Current local time.

    Note: Services take a clock argument defaulting to this, so tests pass a
    fixed one instead.
    """
    return datetime.now()
