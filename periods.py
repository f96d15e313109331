from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total_months = year * 12 + (month - 1) + months
    return total_months // 12, total_months % 12 + 1


def add_months(base: date, months: int) -> date:
    # Day-of-month snaps to the end of shorter months (Jan 31 -> Feb 28).
    year, month = shift_month(base.year, base.month, months)
    return date(year, month, min(base.day, days_in_month(year, month)))


def month_period(
    year: Optional[int] = None,
    month: Optional[int] = None,
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or local_today()
    year = year if year is not None else today.year
    month = month if month is not None else today.month
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = date(year, month, 1)
    end = date(year, month, days_in_month(year, month))
    return Period(f"{year:04d}-{month:02d}", start, end)
