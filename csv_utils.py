import csv
import re
import unicodedata
from datetime import date
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Iterable, Optional, Sequence

from models import (
    CategoryKind,
    CurrencyCode,
    RecurrenceType,
    Transaction,
    TransactionType,
)
from schemas import MAX_AMOUNT, DateFormat, ImportRow, RowError, to_cents

HEADER_ALIASES: dict[str, str] = {
    "type": "type",
    "transactiontype": "type",
    "kindoftransaction": "type",
    "tipo": "type",
    "tipotransacao": "type",
    "tipodeentrada": "type",
    "tipodesaida": "type",
    "tipolancamento": "type",
    "entradaesaida": "type",
    "entradasaida": "type",
    "date": "date",
    "transactiondate": "date",
    "paymentdate": "date",
    "duedate": "date",
    "data": "date",
    "datatransacao": "date",
    "datapagamento": "date",
    "datavencimento": "date",
    "period": "period",
    "periodmonth": "period",
    "month": "period",
    "competencia": "period",
    "mes": "period",
    "mesreferencia": "period",
    "description": "description",
    "memo": "description",
    "descricao": "description",
    "descricaotransacao": "description",
    "amount": "amount",
    "value": "amount",
    "total": "amount",
    "valor": "amount",
    "valortotal": "amount",
    "category": "category",
    "categoria": "category",
    "classification": "classification",
    "kind": "classification",
    "classificacao": "classification",
    "classificacaocategoria": "classification",
    "currency": "currency",
    "moeda": "currency",
    "source": "source",
    "account": "source",
    "origem": "source",
    "origemconta": "source",
    "conta": "source",
    "recurrence": "recurrence",
    "recorrencia": "recurrence",
    "recorrenciatipo": "recurrence",
}

MONTH_NAMES: dict[str, int] = {
    "janeiro": 1,
    "fevereiro": 2,
    "marco": 3,
    "abril": 4,
    "maio": 5,
    "junho": 6,
    "julho": 7,
    "agosto": 8,
    "setembro": 9,
    "outubro": 10,
    "novembro": 11,
    "dezembro": 12,
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}

EXPORT_HEADER = [
    "type",
    "date",
    "description",
    "amount",
    "classification",
    "category",
    "currency",
    "source",
    "recurrence",
]

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_YMD_SLASH = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$")
_SHORT_DATE = re.compile(r"^(\d{1,2})[/.](\d{1,2})[/.](\d{2,4})$")
_MONTH_ISO = re.compile(r"^(\d{4})-(\d{2})$")
_MONTH_SLASH = re.compile(r"^(\d{1,2})/(\d{4})$")
_MONTH_NAMED = re.compile(r"^([a-z]+)\s+(?:de\s+)?(\d{4})$")

_INCOME_WORDS = ("income", "entrada", "receita", "credito", "credit")
_EXPENSE_WORDS = ("expense", "saida", "despesa", "debito", "debit")


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", str(value).strip())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower()


def normalize_header_key(value: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "", normalize_text(value))


def detect_delimiter(header_line: str) -> str:
    commas = header_line.count(",")
    semicolons = header_line.count(";")
    return ";" if semicolons > commas else ","


def normalize_record(record: dict[Optional[str], object]) -> dict[str, str]:
    normalized: dict[str, str] = {}
    for key, value in record.items():
        if key is None:
            continue
        alias = HEADER_ALIASES.get(normalize_header_key(key))
        if not alias:
            continue
        text = value.strip() if isinstance(value, str) else ""
        if not normalized.get(alias):
            normalized[alias] = text
    return normalized


def read_records(content: str) -> list[tuple[int, dict[str, str]]]:
    """
    Split delimited text into normalized records keyed by canonical field.

    Row numbers are 1-based with the header as row 1; blank lines are
    skipped and do not consume a row number.
    """
    content = content.lstrip("\ufeff")
    if not content.strip():
        raise ValueError("Empty file")
    header_line = content.splitlines()[0]
    delimiter = detect_delimiter(header_line)
    try:
        reader = csv.DictReader(StringIO(content), delimiter=delimiter)
        records: list[tuple[int, dict[str, str]]] = []
        row_number = 1
        for raw in reader:
            values = [v for k, v in raw.items() if k is not None]
            if all(not (v or "").strip() for v in values if isinstance(v, str)):
                continue
            row_number += 1
            records.append((row_number, normalize_record(raw)))
    except csv.Error as exc:
        raise ValueError(f"Invalid CSV format: {exc}") from exc
    return records


def parse_amount(value: Optional[str]) -> Decimal:
    """
    Parse a human-entered amount into its absolute magnitude.

    Accepts both ``1.234,56`` and ``1,234.56``: whichever separator appears
    last is the decimal separator and the other one is dropped as grouping.
    A lone comma followed by at most two digits is treated as decimal.
    Accounting negatives such as ``(200.00)`` yield the magnitude ``200.00``;
    the transaction type carries the sign. Zero and anything above
    ``MAX_AMOUNT`` are rejected.
    """
    if value is None or not str(value).strip():
        raise ValueError("Missing amount")
    raw = str(value).strip()
    clean = re.sub(r"[^\d.,-]", "", raw)
    if not re.search(r"\d", clean):
        raise ValueError("Invalid amount")

    last_dot = clean.rfind(".")
    last_comma = clean.rfind(",")
    if last_dot != -1 and last_comma != -1:
        if last_dot > last_comma:
            clean = clean.replace(",", "")
        else:
            clean = clean.replace(".", "").replace(",", ".")
    elif last_comma != -1:
        parts = clean.split(",")
        if len(parts) == 2 and len(parts[1]) <= 2:
            clean = f"{parts[0]}.{parts[1]}"
        else:
            clean = clean.replace(",", "")

    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    amount = abs(amount)
    if amount == 0 or amount > MAX_AMOUNT:
        raise ValueError("Invalid amount")
    return amount


def _short_year(raw: str) -> int:
    year = int(raw)
    return 2000 + year if len(raw) == 2 else year


def _build_date(year: int, month: int, day: int) -> date:
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise ValueError("Invalid date") from exc


def parse_date(
    value: Optional[str], date_format: DateFormat = DateFormat.auto
) -> Optional[date]:
    """
    Parse ``YYYY-MM-DD``, ``YYYY/M/D`` and the ambiguous ``D/M/Y`` /
    ``M/D/Y`` forms. ``auto`` only disambiguates one value at a time; the
    import pipeline resolves a single format for the whole file first.
    """
    if value is None or not str(value).strip():
        return None
    raw = str(value).strip()

    match = _ISO_DATE.match(raw) or _YMD_SLASH.match(raw)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _build_date(year, month, day)

    match = _SHORT_DATE.match(raw)
    if not match:
        raise ValueError("Invalid date")
    if date_format == DateFormat.ymd:
        raise ValueError("Invalid date for year-month-day format")

    first, second = int(match.group(1)), int(match.group(2))
    year = _short_year(match.group(3))
    day, month = first, second
    if date_format == DateFormat.mdy:
        day, month = second, first
    elif date_format == DateFormat.auto and second > 12 and first <= 12:
        day, month = second, first
    return _build_date(year, month, day)


def guess_date_format(values: Iterable[Optional[str]]) -> DateFormat:
    """
    Pick one of ``dmy``/``mdy`` for a whole file by majority vote.

    A row votes ``dmy`` when its first slot can only be a day (>12) and
    ``mdy`` when the second slot can only be a day. Ties resolve to ``dmy``.
    Files mixing both conventions get every row read with the winning
    format, so the minority rows misparse or fail.
    """
    dmy = 0
    mdy = 0
    for value in values:
        match = _SHORT_DATE.match((value or "").strip())
        if not match:
            continue
        first, second = int(match.group(1)), int(match.group(2))
        if first > 12 and second <= 12:
            dmy += 1
        if second > 12 and first <= 12:
            mdy += 1
    return DateFormat.mdy if mdy > dmy else DateFormat.dmy


def parse_month(value: Optional[str]) -> Optional[date]:
    if value is None or not str(value).strip():
        return None
    raw = str(value).strip()

    match = _MONTH_ISO.match(raw)
    if match:
        return _build_date(int(match.group(1)), int(match.group(2)), 1)
    match = _ISO_DATE.match(raw)
    if match:
        return _build_date(int(match.group(1)), int(match.group(2)), 1)
    match = _MONTH_SLASH.match(raw)
    if match:
        return _build_date(int(match.group(2)), int(match.group(1)), 1)
    match = _MONTH_NAMED.match(normalize_text(raw))
    if match and match.group(1) in MONTH_NAMES:
        return date(int(match.group(2)), MONTH_NAMES[match.group(1)], 1)
    raise ValueError("Invalid month")


def normalize_type(value: Optional[str]) -> Optional[TransactionType]:
    raw = normalize_text(value)
    if not raw:
        return None
    if any(word in raw for word in _INCOME_WORDS):
        return TransactionType.income
    if any(word in raw for word in _EXPENSE_WORDS):
        return TransactionType.expense
    return None


def normalize_kind(
    value: Optional[str], txn_type: Optional[TransactionType]
) -> CategoryKind:
    if txn_type == TransactionType.income:
        return CategoryKind.income
    raw = normalize_text(value)
    if "fixa" in raw or "fixed" in raw:
        return CategoryKind.fixed
    if "variavel" in raw or "variable" in raw:
        return CategoryKind.variable
    if txn_type is None and ("receita" in raw or "income" in raw):
        return CategoryKind.income
    return CategoryKind.variable


def normalize_currency(value: Optional[str]) -> CurrencyCode:
    raw = (value or "").strip().upper()
    if "BRL" in raw or "R$" in raw:
        return CurrencyCode.brl
    if "EUR" in raw or "€" in raw:
        return CurrencyCode.eur
    return CurrencyCode.usd


def normalize_recurrence(value: Optional[str]) -> RecurrenceType:
    raw = normalize_text(value)
    if "mensal" in raw or "monthly" in raw or "recorr" in raw or "recurr" in raw:
        return RecurrenceType.monthly
    return RecurrenceType.one_time


def parse_row(
    row_number: int, record: dict[str, str], date_format: DateFormat
) -> ImportRow:
    description = (
        record.get("description") or record.get("category") or "No description"
    )

    amount = parse_amount(record.get("amount"))

    classification = record.get("classification")
    txn_type = normalize_type(record.get("type"))
    if txn_type is None and classification:
        implied = normalize_kind(classification, None)
        txn_type = (
            TransactionType.income
            if implied == CategoryKind.income
            else TransactionType.expense
        )
    if txn_type is None:
        raise ValueError("Missing type")

    txn_date = parse_date(record.get("date"), date_format)
    period = parse_month(record.get("period"))
    if txn_date and period and txn_date.replace(day=1) != period:
        raise ValueError("Date falls outside the given month")
    if period is None:
        if txn_date is None:
            raise ValueError("Missing date or month")
        period = txn_date.replace(day=1)

    return ImportRow(
        row=row_number,
        type=txn_type,
        date=txn_date,
        period=period,
        description=description,
        amount_cents=to_cents(amount),
        currency=normalize_currency(record.get("currency")),
        source=record.get("source") or None,
        category=record.get("category") or None,
        category_kind=normalize_kind(classification, txn_type),
        recurrence_type=normalize_recurrence(record.get("recurrence")),
    )


def parse_import(
    content: str, date_format: DateFormat = DateFormat.auto
) -> tuple[list[ImportRow], list[RowError]]:
    records = read_records(content)
    if date_format == DateFormat.auto:
        date_format = guess_date_format(record.get("date") for _, record in records)
    rows: list[ImportRow] = []
    errors: list[RowError] = []
    for row_number, record in records:
        try:
            rows.append(parse_row(row_number, record, date_format))
        except ValueError as exc:
            errors.append(RowError(row=row_number, error=str(exc)))
    return rows, errors


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def _type_label(txn_type: TransactionType) -> str:
    return "Income" if txn_type == TransactionType.income else "Expense"


def kind_label(kind: CategoryKind) -> str:
    if kind == CategoryKind.income:
        return "Income"
    if kind == CategoryKind.fixed:
        return "Fixed expense"
    return "Variable expense"


def _recurrence_label(recurrence: RecurrenceType) -> str:
    return "Monthly" if recurrence == RecurrenceType.monthly else "One-time"


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        label = kind_label(txn.category_kind)
        writer.writerow(
            [
                _type_label(txn.type),
                txn.effective_date.isoformat(),
                sanitize_csv_value(txn.description),
                f"{txn.amount_cents / 100:.2f}",
                label,
                sanitize_csv_value(txn.category.name if txn.category else label),
                txn.currency.value,
                sanitize_csv_value(txn.source or ""),
                _recurrence_label(txn.recurrence_type),
            ]
        )
    return output.getvalue()


def import_template() -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    writer.writerow(
        [
            "Income",
            "2025-01-15",
            "Salary",
            "3200.00",
            "Income",
            "Salary",
            "USD",
            "Main account",
            "Monthly",
        ]
    )
    return output.getvalue()
