from dataclasses import dataclass
from datetime import date
from typing import Optional, Union


def month_start(d: date) -> date:
    return d.replace(day=1)


def add_months(d: date, count: int) -> date:
    month_index = (d.year * 12) + (d.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_label(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def normalize_period(value: Union[str, date, None]) -> Optional[date]:
    """
    Truncate a date (or an ISO ``YYYY-MM`` / ``YYYY-MM-DD`` string) to the
    first day of its month.
    """
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return month_start(value)
    raw = value.strip()
    try:
        if len(raw) == 7:
            return date.fromisoformat(f"{raw}-01")
        return month_start(date.fromisoformat(raw[:10]))
    except ValueError as exc:
        raise ValueError(f"Invalid month: {value}") from exc


@dataclass(frozen=True)
class MonthRange:
    start: Optional[date]
    end: Optional[date]


def resolve_month_range(
    start_month: Optional[str],
    end_month: Optional[str],
) -> MonthRange:
    start = normalize_period(start_month)
    end = normalize_period(end_month)
    if start and end and start > end:
        raise ValueError("Start month must be before end month")
    return MonthRange(start, end)


def last_n_months(anchor: date, count: int) -> MonthRange:
    if count < 1:
        raise ValueError("Month count must be positive")
    end = month_start(anchor)
    return MonthRange(add_months(end, -(count - 1)), end)
