from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

MONTH_LABELS_PT = [
    "Jan",
    "Fev",
    "Mar",
    "Abr",
    "Mai",
    "Jun",
    "Jul",
    "Ago",
    "Set",
    "Out",
    "Nov",
    "Dez",
]


@dataclass(frozen=True)
class MonthPeriod:
    year: int
    month: int
    start: date
    end: date

    @property
    def days(self) -> int:
        return self.end.day

    @property
    def label(self) -> str:
        return f"{MONTH_LABELS_PT[self.month - 1]}/{self.year % 100:02d}"


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(year: int, month: int, count: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + count
    return total // 12, total % 12 + 1


def previous_month(year: int, month: int) -> tuple[int, int]:
    return add_months(year, month, -1)


def month_period(year: int, month: int) -> MonthPeriod:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    return MonthPeriod(
        year=year,
        month=month,
        start=date(year, month, 1),
        end=date(year, month, days_in_month(year, month)),
    )


def resolve_month(
    year: Optional[int],
    month: Optional[int],
    *,
    today: Optional[date] = None,
) -> MonthPeriod:
    today = today or local_today()
    return month_period(year or today.year, month or today.month)


def months_between(start: date, end: date) -> int:
    return (end.year - start.year) * 12 + (end.month - start.month)
