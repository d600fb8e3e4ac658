from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from csv_utils import export_transactions, import_template, normalize_text, parse_import
from database import unit_of_work
from models import (
    Category,
    CategoryKind,
    MonthlySummary,
    RecurrenceType,
    Transaction,
    TransactionType,
)
from periods import MonthRange, last_n_months, month_label, month_start
from recurrence import local_today, new_group_id, plan_monthly_series
from schemas import (
    CategoryIn,
    DuplicatePolicy,
    DuplicateSample,
    ImportMode,
    ImportOptions,
    ImportPreview,
    ImportResult,
    ImportRow,
    RowError,
    TransactionIn,
    TransactionUpdateIn,
)

logger = logging.getLogger(__name__)


class TransactionNotFound(ValueError):
    pass


class CategoryNotFound(ValueError):
    pass


class CategoryTypeMismatch(ValueError):
    pass


class InvalidRecurrenceRange(ValueError):
    pass


def _income_sum():
    return func.coalesce(
        func.sum(
            case(
                (Transaction.type == TransactionType.income, Transaction.amount_cents),
                else_=0,
            )
        ),
        0,
    )


def _expense_sum():
    return func.coalesce(
        func.sum(
            case(
                (Transaction.type == TransactionType.expense, Transaction.amount_cents),
                else_=0,
            )
        ),
        0,
    )


def live_period_totals(session: Session, tenant_id: int, period: date) -> tuple[int, int]:
    row = session.execute(
        select(_income_sum().label("income"), _expense_sum().label("expense")).where(
            Transaction.tenant_id == tenant_id,
            Transaction.period == month_start(period),
        )
    ).one()
    return int(row.income or 0), int(row.expense or 0)


def recompute_monthly_summary(
    session: Session, tenant_id: int, period: date
) -> MonthlySummary:
    """
    Rebuild the (tenant, period) summary from the ledger rows.

    Totals are always overwritten, never adjusted, so running this twice or
    concurrently for the same period converges on the live aggregate.
    """
    period = month_start(period)
    session.flush()
    income, expense = live_period_totals(session, tenant_id, period)

    summary = session.get(MonthlySummary, (tenant_id, period))
    if summary is None:
        summary = MonthlySummary(tenant_id=tenant_id, period=period)
        session.add(summary)

    summary.income_cents = income
    summary.expense_cents = expense
    summary.balance_cents = income - expense
    session.flush()
    return summary


def recompute_monthly_summaries(
    session: Session, tenant_id: int, periods: Iterable[date]
) -> list[date]:
    distinct = sorted({month_start(p) for p in periods})
    for period in distinct:
        recompute_monthly_summary(session, tenant_id, period)
    return distinct


def rebuild_monthly_summaries(session: Session, tenant_id: int) -> int:
    with unit_of_work(session):
        live = set(
            session.scalars(
                select(Transaction.period)
                .where(Transaction.tenant_id == tenant_id)
                .distinct()
            ).all()
        )
        stale = session.scalars(
            select(MonthlySummary).where(MonthlySummary.tenant_id == tenant_id)
        ).all()
        for summary in stale:
            if summary.period not in live:
                session.delete(summary)
        recompute_monthly_summaries(session, tenant_id, live)
    logger.info(f"summary_rebuild: tenant={tenant_id} periods={len(live)}")
    return len(live)


def derive_category_kind(
    txn_type: TransactionType,
    category: Optional[Category],
    requested: Optional[CategoryKind] = None,
) -> CategoryKind:
    if txn_type == TransactionType.income:
        return CategoryKind.income
    if category is not None and category.kind != CategoryKind.income:
        return category.kind
    if requested in (CategoryKind.fixed, CategoryKind.variable):
        return requested
    return CategoryKind.variable


@dataclass
class TransactionFilters:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    start_month: Optional[date] = None
    end_month: Optional[date] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    category_kind: Optional[CategoryKind] = None
    query: Optional[str] = None


@dataclass(frozen=True)
class SeriesCreated:
    group_id: str
    count: int
    periods: list[date]


@dataclass(frozen=True)
class MutationResult:
    series: bool
    count: int
    periods: list[date]


class CategoryService:
    DEFAULT_NAMES = {
        CategoryKind.income: "Income",
        CategoryKind.fixed: "Fixed expenses",
        CategoryKind.variable: "Variable expenses",
    }

    def __init__(self, session: Session, tenant_id: int) -> None:
        self.session = session
        self.tenant_id = tenant_id

    def list_all(self) -> list[Category]:
        kind_order = case(
            (Category.kind == CategoryKind.income, 1),
            (Category.kind == CategoryKind.fixed, 2),
            else_=3,
        )
        stmt = (
            select(Category)
            .where(Category.tenant_id == self.tenant_id)
            .order_by(kind_order, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.tenant_id != self.tenant_id:
            raise CategoryNotFound("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.tenant_id == self.tenant_id,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def add(self, name: str, kind: CategoryKind) -> Category:
        """Stage a new category in the current unit of work without committing."""
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(clean_name):
            raise ValueError("Category with this name already exists")
        category = Category(tenant_id=self.tenant_id, name=clean_name, kind=kind)
        self.session.add(category)
        self.session.flush()
        return category

    def create(self, data: CategoryIn) -> Category:
        with unit_of_work(self.session):
            category = self.add(data.name, data.kind)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        if self._name_taken(clean_name, exclude_id=category.id):
            raise ValueError("Category with this name already exists")

        old_kind = category.kind
        new_kind = data.kind
        if old_kind != new_kind:
            incompatible_type = (
                TransactionType.expense
                if new_kind == CategoryKind.income
                else TransactionType.income
            )
            if old_kind == CategoryKind.income or new_kind == CategoryKind.income:
                in_use = self.session.scalar(
                    select(func.count(Transaction.id)).where(
                        Transaction.tenant_id == self.tenant_id,
                        Transaction.category_id == category.id,
                        Transaction.type == incompatible_type,
                    )
                )
                if in_use:
                    raise CategoryTypeMismatch(
                        f"Category is used by {incompatible_type.value} transactions"
                    )

        with unit_of_work(self.session):
            category.name = clean_name
            category.kind = new_kind
            if old_kind != new_kind:
                self.session.execute(
                    update(Transaction)
                    .where(
                        Transaction.tenant_id == self.tenant_id,
                        Transaction.category_id == category.id,
                    )
                    .values(category_kind=new_kind)
                )
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        with unit_of_work(self.session):
            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.tenant_id == self.tenant_id,
                    Transaction.category_id == category.id,
                )
                .values(category_id=None)
            )
            self.session.delete(category)

    def defaults_by_kind(self) -> dict[CategoryKind, Category]:
        stmt = (
            select(Category)
            .where(Category.tenant_id == self.tenant_id)
            .order_by(Category.id)
        )
        defaults: dict[CategoryKind, Category] = {}
        for category in self.session.scalars(stmt):
            defaults.setdefault(category.kind, category)
        return defaults

    def ensure_defaults(self) -> list[Category]:
        existing = self.defaults_by_kind()
        created: list[Category] = []
        with unit_of_work(self.session):
            for kind, name in self.DEFAULT_NAMES.items():
                if kind in existing or self._name_taken(name):
                    continue
                created.append(self.add(name, kind))
        return created


class TransactionService:
    def __init__(self, session: Session, tenant_id: int) -> None:
        self.session = session
        self.tenant_id = tenant_id

    def _resolve_category(
        self, category_id: Optional[int], txn_type: TransactionType
    ) -> Optional[Category]:
        if category_id is None:
            return None
        category = self.session.get(Category, category_id)
        if not category or category.tenant_id != self.tenant_id:
            raise CategoryNotFound("Category not found")
        if txn_type == TransactionType.income and category.kind != CategoryKind.income:
            raise CategoryTypeMismatch("Expense category cannot be used for income")
        if txn_type == TransactionType.expense and category.kind == CategoryKind.income:
            raise CategoryTypeMismatch("Income category cannot be used for expense")
        return category

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.tenant_id == self.tenant_id,
                Transaction.id == transaction_id,
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Union[Transaction, SeriesCreated]:
        category = self._resolve_category(data.category_id, data.type)
        kind = derive_category_kind(data.type, category, data.category_kind)
        if data.recurrence_type == RecurrenceType.monthly:
            return self._create_series(data, category, kind)

        period = data.resolved_period
        with unit_of_work(self.session):
            txn = Transaction(
                tenant_id=self.tenant_id,
                type=data.type,
                date=data.date,
                period=period,
                description=data.description,
                amount_cents=data.amount_cents,
                currency=data.currency,
                source=data.source or None,
                category_id=category.id if category else None,
                category_kind=kind,
                recurrence_type=RecurrenceType.one_time,
            )
            self.session.add(txn)
            self.session.flush()
            recompute_monthly_summary(self.session, self.tenant_id, period)
        logger.info(
            f"transaction_created: tenant={self.tenant_id} id={txn.id} period={period}"
        )
        return txn

    def _create_series(
        self,
        data: TransactionIn,
        category: Optional[Category],
        kind: CategoryKind,
    ) -> SeriesCreated:
        anchor = data.resolved_period
        end = data.recurrence_end_month or anchor
        try:
            plan = plan_monthly_series(
                anchor,
                end,
                anchor_date=data.date,
                max_months=get_settings().max_series_months,
            )
        except ValueError as exc:
            raise InvalidRecurrenceRange(str(exc)) from exc

        with unit_of_work(self.session):
            for occurrence in plan.occurrences:
                self.session.add(
                    Transaction(
                        tenant_id=self.tenant_id,
                        type=data.type,
                        date=occurrence.date,
                        period=occurrence.period,
                        description=data.description,
                        amount_cents=data.amount_cents,
                        currency=data.currency,
                        source=data.source or None,
                        category_id=category.id if category else None,
                        category_kind=kind,
                        recurrence_type=RecurrenceType.monthly,
                        recurrence_group_id=plan.group_id,
                    )
                )
            self.session.flush()
            periods = recompute_monthly_summaries(
                self.session, self.tenant_id, plan.periods
            )
        logger.info(
            f"series_created: tenant={self.tenant_id} group={plan.group_id} "
            f"count={len(plan.occurrences)}"
        )
        return SeriesCreated(
            group_id=plan.group_id, count=len(plan.occurrences), periods=periods
        )

    def _group_rows(self, group_id: str) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.tenant_id == self.tenant_id,
            Transaction.recurrence_group_id == group_id,
        )
        return self.session.scalars(stmt).all()

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> MutationResult:
        txn = self.get(transaction_id)
        category = self._resolve_category(data.category_id, data.type)
        kind = derive_category_kind(data.type, category, data.category_kind)
        category_id = category.id if category else None

        if data.apply_to_series and txn.recurrence_group_id:
            with unit_of_work(self.session):
                rows = self._group_rows(txn.recurrence_group_id)
                for row in rows:
                    row.type = data.type
                    row.description = data.description
                    row.category_id = category_id
                    row.category_kind = kind
                    row.amount_cents = data.amount_cents
                    row.source = data.source or None
                    row.currency = data.currency
                self.session.flush()
                periods = recompute_monthly_summaries(
                    self.session, self.tenant_id, [row.period for row in rows]
                )
            logger.info(
                f"series_updated: tenant={self.tenant_id} "
                f"group={txn.recurrence_group_id} count={len(rows)}"
            )
            return MutationResult(series=True, count=len(rows), periods=periods)

        old_period = txn.period
        with unit_of_work(self.session):
            txn.type = data.type
            txn.date = data.date
            txn.period = data.resolved_period
            txn.description = data.description
            txn.category_id = category_id
            txn.category_kind = kind
            txn.amount_cents = data.amount_cents
            txn.source = data.source or None
            txn.currency = data.currency
            self.session.flush()
            periods = recompute_monthly_summaries(
                self.session, self.tenant_id, [old_period, txn.period]
            )
        return MutationResult(series=False, count=1, periods=periods)

    def delete(self, transaction_id: int, *, series: bool = False) -> MutationResult:
        txn = self.get(transaction_id)

        if series and txn.recurrence_group_id:
            with unit_of_work(self.session):
                rows = self._group_rows(txn.recurrence_group_id)
                touched = [row.period for row in rows]
                for row in rows:
                    self.session.delete(row)
                self.session.flush()
                periods = recompute_monthly_summaries(
                    self.session, self.tenant_id, touched
                )
            logger.info(
                f"series_deleted: tenant={self.tenant_id} "
                f"group={txn.recurrence_group_id} count={len(rows)}"
            )
            return MutationResult(series=True, count=len(rows), periods=periods)

        period = txn.period
        with unit_of_work(self.session):
            self.session.delete(txn)
            self.session.flush()
            periods = recompute_monthly_summaries(
                self.session, self.tenant_id, [period]
            )
        return MutationResult(series=False, count=1, periods=periods)

    def _filtered(self, filters: TransactionFilters):
        effective = func.coalesce(Transaction.date, Transaction.period)
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.tenant_id == self.tenant_id)
            .order_by(effective.desc(), Transaction.id.desc())
        )
        if filters.start_date:
            stmt = stmt.where(effective >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(effective <= filters.end_date)
        if filters.start_month:
            stmt = stmt.where(Transaction.period >= month_start(filters.start_month))
        if filters.end_month:
            stmt = stmt.where(Transaction.period <= month_start(filters.end_month))
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.category_kind == CategoryKind.income:
            stmt = stmt.where(Transaction.type == TransactionType.income)
        elif filters.category_kind:
            stmt = stmt.where(
                Transaction.type == TransactionType.expense,
                Transaction.category_kind == filters.category_kind,
            )
        if filters.query:
            like = f"%{filters.query.strip()}%"
            stmt = stmt.where(
                Transaction.description.ilike(like)
                | func.coalesce(Transaction.source, "").ilike(like)
                | Transaction.category.has(Category.name.ilike(like))
            )
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = self._filtered(filters or TransactionFilters())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return self.session.scalars(stmt).unique().all()


class ImportService:
    """
    Delimited-text import feeding the ledger.

    ``check`` mode only reports what a commit would do. ``commit`` mode runs
    the whole batch as one unit of work: bad rows are recorded and skipped,
    but a storage failure rolls back every row of the batch.
    """

    def __init__(self, session: Session, tenant_id: int) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.sample_limit = get_settings().import_sample_limit

    def run(
        self, content: str, options: ImportOptions
    ) -> Union[ImportPreview, ImportResult]:
        rows, errors = parse_import(content, options.date_format)
        if options.mode == ImportMode.check:
            return self.check(rows, errors)
        return self.commit(rows, errors, options)

    def _find_duplicates(self, row: ImportRow) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.tenant_id == self.tenant_id,
            Transaction.type == row.type,
            Transaction.amount_cents == row.amount_cents,
            Transaction.currency == row.currency,
            func.coalesce(Transaction.date, Transaction.period) == row.match_date,
            func.lower(Transaction.description) == row.description.lower(),
        )
        return self.session.scalars(stmt).all()

    def _category_map(self) -> dict[str, Category]:
        stmt = select(Category).where(Category.tenant_id == self.tenant_id)
        return {normalize_text(c.name): c for c in self.session.scalars(stmt)}

    def _resolve_category(
        self,
        row: ImportRow,
        categories: dict[str, Category],
        defaults: dict[CategoryKind, Category],
        allow_create: bool,
    ) -> Optional[Category]:
        category: Optional[Category] = None
        if row.category:
            key = normalize_text(row.category)
            category = categories.get(key)
            if category is None and allow_create:
                category = CategoryService(self.session, self.tenant_id).add(
                    row.category, row.category_kind
                )
                categories[key] = category
                defaults.setdefault(category.kind, category)

        # Mismatched categories fall back to the kind's default instead of
        # failing the row.
        if category is not None:
            if (
                row.type == TransactionType.income
                and category.kind != CategoryKind.income
            ):
                category = defaults.get(CategoryKind.income)
            elif (
                row.type == TransactionType.expense
                and category.kind == CategoryKind.income
            ):
                category = defaults.get(row.category_kind)

        if category is None:
            category = defaults.get(row.category_kind)
        return category

    def _cap(self, errors: list[RowError]) -> list[RowError]:
        return sorted(errors, key=lambda e: e.row)[: self.sample_limit]

    def check(self, rows: list[ImportRow], errors: list[RowError]) -> ImportPreview:
        preview = ImportPreview(errors=self._cap(errors))
        for row in rows:
            if self._find_duplicates(row):
                preview.duplicate_count += 1
                if len(preview.duplicates) < self.sample_limit:
                    preview.duplicates.append(
                        DuplicateSample(
                            row=row.row,
                            date=row.match_date,
                            description=row.description,
                            amount_cents=row.amount_cents,
                        )
                    )
                continue
            preview.checked += 1
        logger.info(
            f"import_check: tenant={self.tenant_id} checked={preview.checked} "
            f"duplicates={preview.duplicate_count} errors={len(errors)}"
        )
        return preview

    def commit(
        self,
        rows: list[ImportRow],
        errors: list[RowError],
        options: ImportOptions,
    ) -> ImportResult:
        policy = options.duplicate_policy
        all_errors = list(errors)
        result = ImportResult(skipped=len(errors))
        touched: set[date] = set()

        with unit_of_work(self.session):
            categories = self._category_map()
            defaults = CategoryService(self.session, self.tenant_id).defaults_by_kind()

            for row in rows:
                duplicates = self._find_duplicates(row)
                if duplicates:
                    result.duplicate_count += 1
                    if policy == DuplicatePolicy.skip:
                        result.skipped += 1
                        all_errors.append(RowError(row=row.row, error="Duplicate"))
                        continue
                    if policy == DuplicatePolicy.replace:
                        for existing in duplicates:
                            touched.add(existing.period)
                            self.session.delete(existing)

                category = self._resolve_category(
                    row, categories, defaults, options.create_missing_categories
                )
                self.session.add(
                    Transaction(
                        tenant_id=self.tenant_id,
                        type=row.type,
                        date=row.date,
                        period=row.period,
                        description=row.description,
                        amount_cents=row.amount_cents,
                        currency=row.currency,
                        source=row.source,
                        category_id=category.id if category else None,
                        category_kind=derive_category_kind(
                            row.type, category, row.category_kind
                        ),
                        recurrence_type=row.recurrence_type,
                        recurrence_group_id=(
                            new_group_id()
                            if row.recurrence_type == RecurrenceType.monthly
                            else None
                        ),
                    )
                )
                # Later rows of the same file must see this one as a duplicate.
                self.session.flush()
                touched.add(row.period)
                result.imported += 1

            recompute_monthly_summaries(self.session, self.tenant_id, touched)

        result.errors = self._cap(all_errors)
        logger.info(
            f"import_commit: tenant={self.tenant_id} imported={result.imported} "
            f"skipped={result.skipped} duplicates={result.duplicate_count} "
            f"policy={policy.value} periods={len(touched)}"
        )
        return result

    def export(self, filters: Optional[TransactionFilters] = None) -> str:
        transactions = TransactionService(self.session, self.tenant_id).list(filters)
        return export_transactions(transactions)

    @staticmethod
    def template() -> str:
        return import_template()


def _summary_conditions(tenant_id: int, month_range: MonthRange) -> list:
    conditions = [MonthlySummary.tenant_id == tenant_id]
    if month_range.start:
        conditions.append(MonthlySummary.period >= month_range.start)
    if month_range.end:
        conditions.append(MonthlySummary.period <= month_range.end)
    return conditions


def _ledger_conditions(tenant_id: int, month_range: MonthRange) -> list:
    conditions = [Transaction.tenant_id == tenant_id]
    if month_range.start:
        conditions.append(Transaction.period >= month_range.start)
    if month_range.end:
        conditions.append(Transaction.period <= month_range.end)
    return conditions


def _month_point(period: date, income: int, expense: int) -> dict[str, object]:
    return {
        "period": period.isoformat(),
        "label": month_label(period),
        "income_cents": income,
        "expense_cents": expense,
        "net_cents": income - expense,
    }


class MetricsService:
    """
    Read-side aggregates.

    Totals come from the maintained monthly summaries. When those come back
    entirely zero the ledger is aggregated directly instead, which covers an
    unpopulated summary table but not one that is partially stale.
    """

    def __init__(self, session: Session, tenant_id: int) -> None:
        self.session = session
        self.tenant_id = tenant_id

    def _summary_totals(self, month_range: MonthRange) -> tuple[int, int, int]:
        row = self.session.execute(
            select(
                func.coalesce(func.sum(MonthlySummary.income_cents), 0).label("income"),
                func.coalesce(func.sum(MonthlySummary.expense_cents), 0).label(
                    "expense"
                ),
                func.coalesce(func.sum(MonthlySummary.balance_cents), 0).label(
                    "balance"
                ),
            ).where(*_summary_conditions(self.tenant_id, month_range))
        ).one()
        return int(row.income), int(row.expense), int(row.balance)

    def _live_totals(self, month_range: MonthRange) -> tuple[int, int]:
        row = self.session.execute(
            select(_income_sum().label("income"), _expense_sum().label("expense")).where(
                *_ledger_conditions(self.tenant_id, month_range)
            )
        ).one()
        return int(row.income), int(row.expense)

    def summary(self, month_range: Optional[MonthRange] = None) -> dict[str, object]:
        month_range = month_range or MonthRange(None, None)
        income, expense, balance = self._summary_totals(month_range)
        if income == 0 and expense == 0 and balance == 0:
            income, expense = self._live_totals(month_range)
            balance = income - expense
            if income or expense:
                logger.warning(
                    f"summary_fallback: tenant={self.tenant_id} "
                    f"start={month_range.start} end={month_range.end}"
                )

        fixed_row = self.session.execute(
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.category_kind == CategoryKind.fixed,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("fixed"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.category_kind != CategoryKind.fixed,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("variable"),
            ).where(
                Transaction.type == TransactionType.expense,
                *_ledger_conditions(self.tenant_id, month_range),
            )
        ).one()

        recent = self.recent_months(1)
        return {
            "total_income_cents": income,
            "total_expense_cents": expense,
            "balance_cents": balance,
            "fixed_expense_cents": int(fixed_row.fixed),
            "variable_expense_cents": int(fixed_row.variable),
            "latest_period": recent[0] if recent else None,
        }

    def recent_months(self, limit: int) -> list[dict[str, object]]:
        current = month_start(local_today())
        summaries = self.session.scalars(
            select(MonthlySummary)
            .where(
                MonthlySummary.tenant_id == self.tenant_id,
                MonthlySummary.period <= current,
            )
            .order_by(MonthlySummary.period.desc())
            .limit(limit)
        ).all()
        if summaries:
            return [
                _month_point(s.period, s.income_cents, s.expense_cents)
                for s in summaries
            ]

        rows = self.session.execute(
            select(
                Transaction.period,
                _income_sum().label("income"),
                _expense_sum().label("expense"),
            )
            .where(Transaction.tenant_id == self.tenant_id, Transaction.period <= current)
            .group_by(Transaction.period)
            .order_by(Transaction.period.desc())
            .limit(limit)
        ).all()
        return [_month_point(r.period, int(r.income), int(r.expense)) for r in rows]

    def category_breakdown(
        self, month_range: Optional[MonthRange] = None
    ) -> dict[str, list[dict[str, object]]]:
        # Summaries carry no per-category data, so this always reads the ledger.
        month_range = month_range or MonthRange(None, None)
        stmt = (
            select(
                Transaction.type,
                Transaction.category_kind,
                Category.name,
                func.sum(Transaction.amount_cents).label("total"),
            )
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(*_ledger_conditions(self.tenant_id, month_range))
            .group_by(Transaction.type, Transaction.category_kind, Category.name)
        )

        totals: dict[str, dict[str, int]] = {"income": {}, "expense": {}}
        for row in self.session.execute(stmt):
            kind = (
                CategoryKind.income
                if row.type == TransactionType.income
                else row.category_kind
            )
            name = row.name or CategoryService.DEFAULT_NAMES[kind]
            bucket = totals[row.type.value]
            bucket[name] = bucket.get(name, 0) + int(row.total or 0)

        breakdown: dict[str, list[dict[str, object]]] = {}
        for txn_type, bucket in totals.items():
            grand_total = sum(bucket.values())
            breakdown[txn_type] = [
                {
                    "name": name,
                    "total_cents": amount,
                    "percent": (amount / grand_total * 100) if grand_total else 0,
                }
                for name, amount in sorted(
                    bucket.items(), key=lambda item: (-item[1], item[0])
                )
            ]
        return breakdown


class InsightsService:
    def __init__(self, session: Session, tenant_id: int) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.metrics = MetricsService(session, tenant_id)

    def _latest_period(self) -> Optional[date]:
        latest = self.session.scalar(
            select(func.max(MonthlySummary.period)).where(
                MonthlySummary.tenant_id == self.tenant_id
            )
        )
        if latest is None:
            latest = self.session.scalar(
                select(func.max(Transaction.period)).where(
                    Transaction.tenant_id == self.tenant_id
                )
            )
        return latest

    def monthly_series(
        self,
        month_range: Optional[MonthRange] = None,
        *,
        months: Optional[int] = None,
    ) -> list[dict[str, object]]:
        month_range = month_range or MonthRange(None, None)
        if not month_range.start and not month_range.end and months:
            latest = self._latest_period()
            if latest is not None:
                month_range = last_n_months(latest, months)

        summaries = self.session.scalars(
            select(MonthlySummary)
            .where(*_summary_conditions(self.tenant_id, month_range))
            .order_by(MonthlySummary.period)
        ).all()
        series = [
            _month_point(s.period, s.income_cents, s.expense_cents) for s in summaries
        ]
        if any(p["income_cents"] or p["expense_cents"] for p in series):
            return series

        rows = self.session.execute(
            select(
                Transaction.period,
                _income_sum().label("income"),
                _expense_sum().label("expense"),
            )
            .where(*_ledger_conditions(self.tenant_id, month_range))
            .group_by(Transaction.period)
            .order_by(Transaction.period)
        ).all()
        if rows:
            logger.warning(
                f"monthly_series_fallback: tenant={self.tenant_id} months={len(rows)}"
            )
            return [_month_point(r.period, int(r.income), int(r.expense)) for r in rows]
        return series

    def projection(self) -> dict[str, object]:
        recent = self.metrics.recent_months(3)
        nets = [int(point["net_cents"]) for point in recent]
        average = sum(nets) / len(nets) if nets else 0
        trend = nets[0] - nets[1] if len(nets) >= 2 else 0
        return {
            "last_months": list(reversed(recent)),
            "projected_net_cents": average,
            "trend_cents": trend,
        }

    def insights(self) -> list[dict[str, object]]:
        recent = self.metrics.recent_months(3)
        insights: list[dict[str, object]] = []

        if recent and int(recent[0]["net_cents"]) < 0:
            insights.append(
                {
                    "type": "negative-net",
                    "severity": "high",
                    "data": {
                        "net_cents": recent[0]["net_cents"],
                        "period": recent[0]["period"],
                    },
                }
            )

        if len(recent) >= 2 and int(recent[0]["expense_cents"]) > int(
            recent[1]["expense_cents"]
        ):
            insights.append(
                {
                    "type": "expense-up",
                    "severity": "medium",
                    "data": {
                        "current_cents": recent[0]["expense_cents"],
                        "previous_cents": recent[1]["expense_cents"],
                    },
                }
            )

        if len(recent) >= 3:
            negative_months = sum(1 for point in recent if int(point["net_cents"]) < 0)
            if negative_months >= 2:
                insights.append(
                    {
                        "type": "negative-streak",
                        "severity": "high",
                        "data": {"negative_months": negative_months},
                    }
                )
        return insights
