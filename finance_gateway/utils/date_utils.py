"""Date manipulation utilities"""

import calendar
from datetime import date
from typing import Optional, Tuple


def month_bounds(year: int, month: int) -> Tuple[date, date]:
    """First and last day of a calendar month"""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def stats_period(year: Optional[int], month: Optional[int], today: Optional[date] = None) -> Tuple[date, date]:
    """
    Resolve the reporting window for monthly stats.

    Year and month select that month, year alone selects the whole year, and
    neither selects the current month.
    """
    today = today or date.today()
    if year and month:
        return month_bounds(year, month)
    if year:
        return date(year, 1, 1), date(year, 12, 31)
    return month_bounds(today.year, today.month)
