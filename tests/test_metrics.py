from datetime import date
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import CategoryKind, MonthlySummary, TransactionType
from periods import MonthRange
from schemas import CategoryIn, TransactionIn
from services import (
    CategoryService,
    InsightsService,
    MetricsService,
    TransactionService,
    rebuild_monthly_summaries,
)

TENANT = 1


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _add(
    session: Session,
    txn_type: TransactionType,
    amount: str,
    day: date,
    category_id: Optional[int] = None,
    category_kind: Optional[CategoryKind] = None,
):
    return TransactionService(session, TENANT).create(
        TransactionIn(
            type=txn_type,
            date=day,
            description="entry",
            amount=Decimal(amount),
            category_id=category_id,
            category_kind=category_kind,
        )
    )


def _three_months(session: Session) -> None:
    for month, expense in ((1, "200"), (2, "1200"), (3, "1500")):
        _add(session, TransactionType.income, "1000", date(2025, month, 1))
        _add(session, TransactionType.expense, expense, date(2025, month, 10))


def _drop_summaries(session: Session) -> None:
    for summary in session.scalars(select(MonthlySummary)).all():
        session.delete(summary)
    session.commit()


def test_summary_reads_maintained_totals():
    with Session(_engine()) as session:
        rent = CategoryService(session, TENANT).create(
            CategoryIn(name="Rent", kind=CategoryKind.fixed)
        )
        _add(session, TransactionType.income, "3000", date(2025, 1, 1))
        _add(session, TransactionType.expense, "1200", date(2025, 1, 2), rent.id)
        _add(session, TransactionType.expense, "300", date(2025, 1, 3))

        summary = MetricsService(session, TENANT).summary()

        assert summary["total_income_cents"] == 300000
        assert summary["total_expense_cents"] == 150000
        assert summary["balance_cents"] == 150000
        assert summary["fixed_expense_cents"] == 120000
        assert summary["variable_expense_cents"] == 30000
        assert summary["latest_period"]["period"] == "2025-01-01"


def test_summary_falls_back_to_live_totals_when_summaries_missing():
    with Session(_engine()) as session:
        _three_months(session)
        _drop_summaries(session)

        summary = MetricsService(session, TENANT).summary(
            MonthRange(date(2025, 2, 1), date(2025, 3, 1))
        )
        assert summary["total_income_cents"] == 200000
        assert summary["total_expense_cents"] == 270000
        assert summary["balance_cents"] == -70000


def test_summary_with_range_excludes_other_months():
    with Session(_engine()) as session:
        _three_months(session)
        summary = MetricsService(session, TENANT).summary(
            MonthRange(date(2025, 3, 1), date(2025, 3, 1))
        )
        assert summary["total_expense_cents"] == 150000


def test_monthly_series_last_n_months_anchors_on_latest_summary():
    with Session(_engine()) as session:
        _three_months(session)
        series = InsightsService(session, TENANT).monthly_series(months=2)

        assert [p["label"] for p in series] == ["2025-02", "2025-03"]
        assert series[1]["net_cents"] == -50000


def test_monthly_series_falls_back_to_ledger():
    with Session(_engine()) as session:
        _three_months(session)
        _drop_summaries(session)

        series = InsightsService(session, TENANT).monthly_series(
            MonthRange(date(2025, 1, 1), date(2025, 2, 1))
        )
        assert [(p["period"], p["expense_cents"]) for p in series] == [
            ("2025-01-01", 20000),
            ("2025-02-01", 120000),
        ]


def test_rebuild_restores_summaries():
    with Session(_engine()) as session:
        _three_months(session)
        _drop_summaries(session)
        session.add(MonthlySummary(tenant_id=TENANT, period=date(2024, 12, 1), income_cents=5))
        session.commit()

        assert rebuild_monthly_summaries(session, TENANT) == 3
        periods = session.scalars(
            select(MonthlySummary.period).order_by(MonthlySummary.period)
        ).all()
        assert periods == [date(2025, 1, 1), date(2025, 2, 1), date(2025, 3, 1)]


def test_category_breakdown_groups_uncategorized_by_kind_label():
    with Session(_engine()) as session:
        categories = CategoryService(session, TENANT)
        rent = categories.create(CategoryIn(name="Rent", kind=CategoryKind.fixed))
        _add(session, TransactionType.expense, "1200", date(2025, 1, 2), rent.id)
        _add(session, TransactionType.expense, "200", date(2025, 1, 3))
        _add(session, TransactionType.expense, "100", date(2025, 1, 4))
        _add(
            session,
            TransactionType.expense,
            "50",
            date(2025, 1, 5),
            category_kind=CategoryKind.fixed,
        )
        _add(session, TransactionType.income, "900", date(2025, 1, 1))

        breakdown = MetricsService(session, TENANT).category_breakdown()

        assert [(i["name"], i["total_cents"]) for i in breakdown["expense"]] == [
            ("Rent", 120000),
            ("Variable expenses", 30000),
            ("Fixed expenses", 5000),
        ]
        assert breakdown["income"] == [
            {"name": "Income", "total_cents": 90000, "percent": 100.0}
        ]
        assert sum(i["percent"] for i in breakdown["expense"]) == pytest.approx(100)


def test_projection_and_insights():
    with Session(_engine()) as session:
        _three_months(session)
        insights_service = InsightsService(session, TENANT)

        projection = insights_service.projection()
        assert [p["label"] for p in projection["last_months"]] == [
            "2025-01",
            "2025-02",
            "2025-03",
        ]
        assert projection["projected_net_cents"] == pytest.approx(10000 / 3)
        assert projection["trend_cents"] == -30000

        kinds = [insight["type"] for insight in insights_service.insights()]
        assert kinds == ["negative-net", "expense-up", "negative-streak"]


def test_empty_ledger_reads():
    with Session(_engine()) as session:
        metrics = MetricsService(session, TENANT)
        assert metrics.summary()["balance_cents"] == 0
        assert metrics.summary()["latest_period"] is None
        assert InsightsService(session, TENANT).monthly_series(months=12) == []
        assert InsightsService(session, TENANT).insights() == []
