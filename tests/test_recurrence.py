from datetime import date

import pytest

from periods import add_months, last_n_months, normalize_period, resolve_month_range
from recurrence import build_month_range, date_in_month, plan_monthly_series


def test_date_in_month_snaps_to_month_end():
    assert date_in_month(31, date(2025, 2, 1)) == date(2025, 2, 28)
    assert date_in_month(31, date(2024, 2, 1)) == date(2024, 2, 29)
    assert date_in_month(31, date(2025, 4, 1)) == date(2025, 4, 30)
    assert date_in_month(15, date(2025, 4, 1)) == date(2025, 4, 15)


def test_plan_monthly_series_anchored_on_day_31():
    plan = plan_monthly_series(
        date(2025, 1, 1), date(2025, 3, 1), anchor_date=date(2025, 1, 31)
    )
    assert [occ.date for occ in plan.occurrences] == [
        date(2025, 1, 31),
        date(2025, 2, 28),
        date(2025, 3, 31),
    ]
    assert plan.periods == [date(2025, 1, 1), date(2025, 2, 1), date(2025, 3, 1)]
    assert len(plan.group_id) == 36


def test_plan_monthly_series_without_day_keeps_dates_empty():
    plan = plan_monthly_series(date(2025, 11, 1), date(2026, 2, 1))
    assert plan.periods[-1] == date(2026, 2, 1)
    assert all(occ.date is None for occ in plan.occurrences)


def test_plan_monthly_series_single_month():
    plan = plan_monthly_series(date(2025, 5, 1), date(2025, 5, 1))
    assert plan.periods == [date(2025, 5, 1)]


def test_build_month_range_rejects_reversed_range():
    with pytest.raises(ValueError, match="before the start month"):
        build_month_range(date(2025, 3, 1), date(2025, 1, 1))


def test_build_month_range_caps_length():
    assert len(build_month_range(date(2025, 1, 1), date(2025, 12, 1), max_months=12)) == 12
    with pytest.raises(ValueError, match="exceeds 12 months"):
        build_month_range(date(2025, 1, 1), date(2026, 1, 1), max_months=12)


def test_period_helpers():
    assert add_months(date(2025, 11, 1), 3) == date(2026, 2, 1)
    assert add_months(date(2025, 1, 1), -1) == date(2024, 12, 1)
    assert normalize_period("2025-07") == date(2025, 7, 1)
    assert normalize_period("2025-07-19") == date(2025, 7, 1)
    assert last_n_months(date(2025, 3, 1), 3).start == date(2025, 1, 1)
    with pytest.raises(ValueError, match="Invalid month"):
        normalize_period("July")
    with pytest.raises(ValueError):
        resolve_month_range("2025-05", "2025-01")
