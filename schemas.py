import datetime as dt
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import CategoryKind, CurrencyCode, RecurrenceType, TransactionType
from periods import normalize_period


MAX_AMOUNT = Decimal("999999999999.99")


def to_cents(amount: Decimal) -> int:
    try:
        cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if cents < 1 or amount > MAX_AMOUNT:
        raise ValueError("Invalid amount")
    return cents


class DateFormat(str, Enum):
    auto = "auto"
    dmy = "dmy"
    mdy = "mdy"
    ymd = "ymd"


class ImportMode(str, Enum):
    check = "check"
    commit = "commit"


class DuplicatePolicy(str, Enum):
    skip = "skip"
    replace = "replace"
    allow = "allow"


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: CategoryKind = CategoryKind.variable


class TransactionFields(BaseModel):
    type: TransactionType
    date: Optional[dt.date] = None
    period: Optional[dt.date] = None
    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    category_id: Optional[int] = None
    category_kind: Optional[CategoryKind] = None
    currency: CurrencyCode = CurrencyCode.usd
    source: Optional[str] = Field(default=None, max_length=200)

    @field_validator("period", mode="before")
    @classmethod
    def _truncate_period(cls, value):
        return normalize_period(value)

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Description is required")
        return value

    @field_validator("amount")
    @classmethod
    def _require_whole_cent(cls, value: Decimal) -> Decimal:
        # 0.004 passes gt=0 but would be stored as zero cents.
        to_cents(value)
        return value

    @model_validator(mode="after")
    def _require_date_or_period(self):
        if self.date is None and self.period is None:
            raise ValueError("Either date or period is required")
        return self

    @property
    def amount_cents(self) -> int:
        return to_cents(self.amount)

    @property
    def resolved_period(self) -> dt.date:
        # An explicit date always decides the month.
        if self.date is not None:
            return self.date.replace(day=1)
        return self.period


class TransactionIn(TransactionFields):
    recurrence_type: RecurrenceType = RecurrenceType.one_time
    recurrence_end_month: Optional[dt.date] = None

    @field_validator("recurrence_end_month", mode="before")
    @classmethod
    def _truncate_end_month(cls, value):
        return normalize_period(value)


class TransactionUpdateIn(TransactionFields):
    apply_to_series: bool = False


class ImportOptions(BaseModel):
    create_missing_categories: bool = False
    date_format: DateFormat = DateFormat.auto
    mode: ImportMode = ImportMode.commit
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.skip


class ImportRow(BaseModel):
    row: int
    type: TransactionType
    date: Optional[dt.date]
    period: dt.date
    description: str
    amount_cents: int
    currency: CurrencyCode
    source: Optional[str]
    category: Optional[str]
    category_kind: CategoryKind
    recurrence_type: RecurrenceType

    @property
    def match_date(self) -> dt.date:
        return self.date or self.period


class RowError(BaseModel):
    row: int
    error: str


class DuplicateSample(BaseModel):
    model_config = ConfigDict(extra="forbid")

    row: int
    date: dt.date
    description: str
    amount_cents: int


class ImportPreview(BaseModel):
    checked: int = 0
    duplicate_count: int = 0
    duplicates: list[DuplicateSample] = Field(default_factory=list)
    errors: list[RowError] = Field(default_factory=list)


class ImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    duplicate_count: int = 0
    errors: list[RowError] = Field(default_factory=list)
