from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class CategoryKind(str, Enum):
    income = "income"
    fixed = "fixed"
    variable = "variable"


class CurrencyCode(str, Enum):
    usd = "USD"
    brl = "BRL"
    eur = "EUR"


class RecurrenceType(str, Enum):
    one_time = "one_time"
    monthly = "monthly"


def _values(enum_cls):
    return [member.value for member in enum_cls]


CURRENCY_CODE_ENUM = SAEnum(
    CurrencyCode, name="currencycode", values_callable=_values
)
CATEGORY_KIND_ENUM = SAEnum(CategoryKind, name="categorykind")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[CategoryKind] = mapped_column(
        CATEGORY_KIND_ENUM,
        nullable=False,
        default=CategoryKind.variable,
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_category_tenant_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType, name="transactiontype"), nullable=False
    )
    date: Mapped[Optional[date]] = mapped_column(Date)
    period: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    source: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    category_kind: Mapped[CategoryKind] = mapped_column(
        CATEGORY_KIND_ENUM,
        nullable=False,
        default=CategoryKind.variable,
    )
    recurrence_type: Mapped[RecurrenceType] = mapped_column(
        SAEnum(RecurrenceType, name="recurrencetype"),
        nullable=False,
        default=RecurrenceType.one_time,
    )
    recurrence_group_id: Mapped[Optional[str]] = mapped_column(String(36))

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    @property
    def effective_date(self) -> date:
        return self.date or self.period

    __table_args__ = (
        Index("ix_transactions_tenant_period", "tenant_id", "period"),
        Index("ix_transactions_tenant_date", "tenant_id", "date"),
        Index("ix_transactions_recurrence_group", "recurrence_group_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class MonthlySummary(Base, TimestampMixin):
    __tablename__ = "monthly_summaries"

    tenant_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    period: Mapped[date] = mapped_column(Date, primary_key=True)
    income_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    expense_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
