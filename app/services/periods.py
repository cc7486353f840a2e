from __future__ import annotations

from datetime import date, timedelta
from typing import Optional, Tuple


def previous_month_range(today: Optional[date] = None) -> Tuple[date, date]:
    """First and last day of the month before ``today``."""

    today = today or date.today()
    end = today.replace(day=1) - timedelta(days=1)
    return end.replace(day=1), end


def current_month_range(today: Optional[date] = None) -> Tuple[date, date]:
    """First day of the current month through ``today``."""

    today = today or date.today()
    return today.replace(day=1), today
