from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

import services
from database import Base
from models import (
    CategoryKind,
    MonthlySummary,
    RecurrenceType,
    Transaction,
    TransactionType,
)
from schemas import CategoryIn, TransactionIn, TransactionUpdateIn
from services import (
    CategoryService,
    CategoryTypeMismatch,
    InvalidRecurrenceRange,
    SeriesCreated,
    TransactionFilters,
    TransactionNotFound,
    TransactionService,
    live_period_totals,
    recompute_monthly_summary,
)

TENANT = 1


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _expense(amount: str, day: date, **kwargs) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        date=day,
        description=kwargs.pop("description", "Groceries"),
        amount=Decimal(amount),
        **kwargs,
    )


def _summary(session: Session, period: date, tenant_id: int = TENANT):
    return session.get(MonthlySummary, (tenant_id, period))


def test_create_updates_monthly_summary():
    with Session(_engine()) as session:
        service = TransactionService(session, TENANT)
        service.create(_expense("40.00", date(2025, 1, 5)))
        service.create(
            TransactionIn(
                type=TransactionType.income,
                date=date(2025, 1, 1),
                description="Salary",
                amount=Decimal("1000.00"),
            )
        )

        summary = _summary(session, date(2025, 1, 1))
        assert summary.income_cents == 100000
        assert summary.expense_cents == 4000
        assert summary.balance_cents == summary.income_cents - summary.expense_cents
        assert live_period_totals(session, TENANT, date(2025, 1, 1)) == (100000, 4000)


def test_create_period_only_and_amount_rounding():
    with Session(_engine()) as session:
        txn = TransactionService(session, TENANT).create(
            TransactionIn(
                type=TransactionType.expense,
                period="2025-04",
                description="Internet",
                amount=Decimal("10.005"),
            )
        )
        assert txn.date is None
        assert txn.period == date(2025, 4, 1)
        assert txn.amount_cents == 1001
        assert txn.category_kind == CategoryKind.variable


def test_date_decides_period_on_manual_entry():
    with Session(_engine()) as session:
        txn = TransactionService(session, TENANT).create(
            _expense("5", date(2025, 6, 20), period="2025-01")
        )
        assert txn.period == date(2025, 6, 1)


def test_create_rejects_category_type_mismatch_without_writing():
    with Session(_engine()) as session:
        salary = CategoryService(session, TENANT).create(
            CategoryIn(name="Salary", kind=CategoryKind.income)
        )
        with pytest.raises(CategoryTypeMismatch):
            TransactionService(session, TENANT).create(
                _expense("10", date(2025, 1, 1), category_id=salary.id)
            )
        assert session.scalar(select(func.count(Transaction.id))) == 0
        assert session.scalar(select(func.count()).select_from(MonthlySummary)) == 0


def test_category_kind_follows_category():
    with Session(_engine()) as session:
        rent = CategoryService(session, TENANT).create(
            CategoryIn(name="Rent", kind=CategoryKind.fixed)
        )
        txn = TransactionService(session, TENANT).create(
            _expense(
                "1200", date(2025, 1, 1), category_id=rent.id, category_kind="variable"
            )
        )
        assert txn.category_kind == CategoryKind.fixed


def test_update_moves_between_periods_and_recomputes_both():
    with Session(_engine()) as session:
        service = TransactionService(session, TENANT)
        txn = service.create(_expense("30", date(2025, 1, 10)))

        result = service.update(
            txn.id,
            TransactionUpdateIn(
                type=TransactionType.expense,
                date=date(2025, 2, 3),
                description="Groceries",
                amount=Decimal("45"),
            ),
        )

        assert result.periods == [date(2025, 1, 1), date(2025, 2, 1)]
        assert _summary(session, date(2025, 1, 1)).expense_cents == 0
        assert _summary(session, date(2025, 2, 1)).expense_cents == 4500


def test_delete_single_and_not_found():
    with Session(_engine()) as session:
        service = TransactionService(session, TENANT)
        txn = service.create(_expense("30", date(2025, 1, 10)))
        service.delete(txn.id)

        assert _summary(session, date(2025, 1, 1)).expense_cents == 0
        with pytest.raises(TransactionNotFound):
            service.delete(txn.id)


def test_monthly_series_creation():
    with Session(_engine()) as session:
        created = TransactionService(session, TENANT).create(
            _expense(
                "100",
                date(2025, 1, 31),
                description="Gym",
                recurrence_type=RecurrenceType.monthly,
                recurrence_end_month="2025-03",
            )
        )
        assert isinstance(created, SeriesCreated)
        assert created.count == 3

        rows = session.scalars(select(Transaction).order_by(Transaction.period)).all()
        assert [r.date for r in rows] == [
            date(2025, 1, 31),
            date(2025, 2, 28),
            date(2025, 3, 31),
        ]
        assert {r.recurrence_group_id for r in rows} == {created.group_id}
        assert all(r.recurrence_type == RecurrenceType.monthly for r in rows)
        for period in created.periods:
            assert _summary(session, period).expense_cents == 10000


def test_monthly_series_rejects_reversed_range():
    with Session(_engine()) as session:
        with pytest.raises(InvalidRecurrenceRange):
            TransactionService(session, TENANT).create(
                _expense(
                    "100",
                    date(2025, 3, 1),
                    recurrence_type=RecurrenceType.monthly,
                    recurrence_end_month="2025-01",
                )
            )
        assert session.scalar(select(func.count(Transaction.id))) == 0


@pytest.mark.parametrize("amount", ["0", "0.004", "1e30", "1000000000000"])
def test_amount_must_be_a_positive_storable_magnitude(amount):
    with pytest.raises(ValidationError):
        _expense(amount, date(2025, 1, 5))


def test_largest_amount_is_stored_exactly():
    with Session(_engine()) as session:
        txn = TransactionService(session, TENANT).create(
            _expense("999999999999.99", date(2025, 1, 5))
        )
        assert txn.amount_cents == 99999999999999
        assert _summary(session, date(2025, 1, 1)).expense_cents == 99999999999999


def test_series_update_changes_amount_but_keeps_dates():
    with Session(_engine()) as session:
        service = TransactionService(session, TENANT)
        created = service.create(
            _expense(
                "100",
                date(2025, 1, 31),
                recurrence_type=RecurrenceType.monthly,
                recurrence_end_month="2025-03",
            )
        )
        second = session.scalars(
            select(Transaction).where(Transaction.period == date(2025, 2, 1))
        ).one()

        result = service.update(
            second.id,
            TransactionUpdateIn(
                type=TransactionType.expense,
                date=date(2025, 2, 1),
                description="Gym membership",
                amount=Decimal("120"),
                apply_to_series=True,
            ),
        )

        assert result.series is True
        assert result.count == 3
        rows = session.scalars(
            select(Transaction)
            .where(Transaction.recurrence_group_id == created.group_id)
            .order_by(Transaction.period)
        ).all()
        assert [r.amount_cents for r in rows] == [12000, 12000, 12000]
        assert {r.description for r in rows} == {"Gym membership"}
        assert [r.date for r in rows] == [
            date(2025, 1, 31),
            date(2025, 2, 28),
            date(2025, 3, 31),
        ]
        assert _summary(session, date(2025, 3, 1)).expense_cents == 12000


def test_series_delete_removes_group_and_recomputes_each_period():
    with Session(_engine()) as session:
        service = TransactionService(session, TENANT)
        created = service.create(
            _expense(
                "50",
                date(2025, 1, 15),
                recurrence_type=RecurrenceType.monthly,
                recurrence_end_month="2025-04",
            )
        )
        service.create(_expense("7", date(2025, 2, 2), description="Coffee"))
        first = session.scalars(
            select(Transaction).where(
                Transaction.recurrence_group_id == created.group_id
            )
        ).first()

        result = service.delete(first.id, series=True)

        assert result.count == 4
        assert result.periods == created.periods
        remaining = session.scalars(select(Transaction)).all()
        assert [r.description for r in remaining] == ["Coffee"]
        assert _summary(session, date(2025, 2, 1)).expense_cents == 700
        assert _summary(session, date(2025, 4, 1)).expense_cents == 0


def test_delete_series_flag_on_one_time_row_deletes_only_it():
    with Session(_engine()) as session:
        service = TransactionService(session, TENANT)
        txn = service.create(_expense("5", date(2025, 1, 1)))
        result = service.delete(txn.id, series=True)
        assert result.series is False
        assert result.count == 1


def test_failed_recompute_rolls_back_the_row(monkeypatch):
    with Session(_engine()) as session:

        def broken(*args, **kwargs):
            raise RuntimeError("summary table unavailable")

        monkeypatch.setattr(services, "recompute_monthly_summary", broken)
        with pytest.raises(RuntimeError):
            TransactionService(session, TENANT).create(_expense("10", date(2025, 1, 1)))

        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_recompute_is_idempotent():
    with Session(_engine()) as session:
        TransactionService(session, TENANT).create(_expense("10", date(2025, 1, 1)))
        first = recompute_monthly_summary(session, TENANT, date(2025, 1, 20))
        values = (first.income_cents, first.expense_cents, first.balance_cents)
        second = recompute_monthly_summary(session, TENANT, date(2025, 1, 1))
        assert (second.income_cents, second.expense_cents, second.balance_cents) == values
        assert session.scalar(select(func.count()).select_from(MonthlySummary)) == 1


def test_tenants_are_isolated():
    with Session(_engine()) as session:
        TransactionService(session, 1).create(_expense("10", date(2025, 1, 1)))
        other = TransactionService(session, 2)
        txn = other.create(_expense("99", date(2025, 1, 1)))

        assert [t.id for t in other.list()] == [txn.id]
        assert _summary(session, date(2025, 1, 1), tenant_id=1).expense_cents == 1000
        with pytest.raises(TransactionNotFound):
            TransactionService(session, 1).get(txn.id)


def test_list_filters_and_ordering():
    with Session(_engine()) as session:
        rent = CategoryService(session, TENANT).create(
            CategoryIn(name="Rent", kind=CategoryKind.fixed)
        )
        service = TransactionService(session, TENANT)
        a = service.create(_expense("1200", date(2025, 1, 5), category_id=rent.id))
        b = service.create(_expense("20", date(2025, 2, 10), description="Lunch"))
        c = service.create(
            TransactionIn(
                type=TransactionType.expense,
                period="2025-02",
                description="Bus pass",
                amount=Decimal("50"),
                source="Card",
            )
        )

        assert [t.id for t in service.list()] == [b.id, c.id, a.id]
        assert [
            t.id for t in service.list(TransactionFilters(start_month=date(2025, 2, 1)))
        ] == [b.id, c.id]
        assert [
            t.id for t in service.list(TransactionFilters(category_kind=CategoryKind.fixed))
        ] == [a.id]
        assert [t.id for t in service.list(TransactionFilters(query="rent"))] == [a.id]
        assert [t.id for t in service.list(TransactionFilters(query="card"))] == [c.id]
        assert [
            t.id
            for t in service.list(
                TransactionFilters(
                    start_date=date(2025, 2, 2), end_date=date(2025, 2, 28)
                )
            )
        ] == [b.id]
        assert len(service.list(limit=1, offset=1)) == 1
