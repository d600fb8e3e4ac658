import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from periods import add_months, month_start


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


def date_in_month(desired_day: int, period: date) -> date:
    """Place ``desired_day`` in ``period``'s month, snapping to its last day."""
    dim = days_in_month(period.year, period.month)
    return date(period.year, period.month, min(desired_day, dim))


def build_month_range(
    anchor: date, end: date, *, max_months: Optional[int] = None
) -> list[date]:
    start = month_start(anchor)
    last = month_start(end)
    if last < start:
        raise ValueError("Recurrence end month is before the start month")
    months: list[date] = []
    current = start
    while current <= last:
        months.append(current)
        if max_months is not None and len(months) > max_months:
            raise ValueError(
                f"Recurrence range exceeds {max_months} months"
            )
        current = add_months(current, 1)
    return months


def new_group_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Occurrence:
    period: date
    date: Optional[date]


@dataclass(frozen=True)
class SeriesPlan:
    group_id: str
    occurrences: list[Occurrence]

    @property
    def periods(self) -> list[date]:
        return [occ.period for occ in self.occurrences]


def plan_monthly_series(
    anchor_period: date,
    end_period: date,
    *,
    anchor_date: Optional[date] = None,
    max_months: Optional[int] = None,
) -> SeriesPlan:
    months = build_month_range(anchor_period, end_period, max_months=max_months)
    occurrences = [
        Occurrence(
            period=month,
            date=date_in_month(anchor_date.day, month) if anchor_date else None,
        )
        for month in months
    ]
    return SeriesPlan(group_id=new_group_id(), occurrences=occurrences)
