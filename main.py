import logging
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from csv_utils import kind_label
from database import SessionLocal
from models import Category, CategoryKind, Transaction, TransactionType
from periods import MonthRange, normalize_period, resolve_month_range
from schemas import (
    CategoryIn,
    DateFormat,
    DuplicatePolicy,
    ImportMode,
    ImportOptions,
    TransactionIn,
    TransactionUpdateIn,
)
from services import (
    CategoryNotFound,
    CategoryService,
    ImportService,
    InsightsService,
    MetricsService,
    SeriesCreated,
    TransactionFilters,
    TransactionNotFound,
    TransactionService,
    rebuild_monthly_summaries,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


@app.on_event("startup")
def startup_event():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.info(f"startup: database={settings.database_url} tz={settings.timezone}")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    detail = [
        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": detail})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> int:
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="Missing X-Tenant-ID header")
    try:
        tenant_id = int(x_tenant_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-ID header") from exc
    if tenant_id < 1:
        raise HTTPException(status_code=400, detail="Invalid X-Tenant-ID header")
    return tenant_id


def _raise_http(exc: ValueError):
    if isinstance(exc, (TransactionNotFound, CategoryNotFound)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    raise HTTPException(status_code=400, detail=str(exc)) from exc


def month_range_from_request(request: Request) -> MonthRange:
    try:
        return resolve_month_range(
            request.query_params.get("start_month"),
            request.query_params.get("end_month"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        return TransactionFilters(
            start_date=_parse_iso_date(params.get("start_date")),
            end_date=_parse_iso_date(params.get("end_date")),
            start_month=normalize_period(params.get("start_month")),
            end_month=normalize_period(params.get("end_month")),
            type=TransactionType(params["type"]) if params.get("type") else None,
            category_id=int(params["category_id"]) if params.get("category_id") else None,
            category_kind=(
                CategoryKind(params["category_kind"])
                if params.get("category_kind")
                else None
            ),
            query=params.get("q") or None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value)


def serialize_category(category: Category) -> dict:
    return {"id": category.id, "name": category.name, "kind": category.kind.value}


def serialize_transaction(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "date": txn.date.isoformat() if txn.date else None,
        "period": txn.period.isoformat(),
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "currency": txn.currency.value,
        "source": txn.source,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "category_kind": txn.category_kind.value,
        "category_kind_label": kind_label(txn.category_kind),
        "recurrence_type": txn.recurrence_type.value,
        "recurrence_group_id": txn.recurrence_group_id,
    }


def _csv_response(csv_text: str, filename: str) -> StreamingResponse:
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/categories")
def api_list_categories(
    db: Session = Depends(get_db), tenant_id: int = Depends(get_tenant_id)
):
    return [serialize_category(c) for c in CategoryService(db, tenant_id).list_all()]


@app.post("/api/categories", status_code=201)
def api_create_category(
    data: CategoryIn,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    try:
        category = CategoryService(db, tenant_id).create(data)
    except ValueError as exc:
        _raise_http(exc)
    return serialize_category(category)


@app.post("/api/categories/defaults")
def api_ensure_default_categories(
    db: Session = Depends(get_db), tenant_id: int = Depends(get_tenant_id)
):
    created = CategoryService(db, tenant_id).ensure_defaults()
    return {"created": [serialize_category(c) for c in created]}


@app.put("/api/categories/{category_id}")
def api_update_category(
    category_id: int,
    data: CategoryIn,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    try:
        category = CategoryService(db, tenant_id).update(category_id, data)
    except ValueError as exc:
        _raise_http(exc)
    return serialize_category(category)


@app.delete("/api/categories/{category_id}")
def api_delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    try:
        CategoryService(db, tenant_id).delete(category_id)
    except ValueError as exc:
        _raise_http(exc)
    return {"ok": True}


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    filters = filters_from_request(request)
    try:
        page = max(int(request.query_params.get("page", "1")), 1)
        limit = min(max(int(request.query_params.get("limit", "50")), 1), 500)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    offset = (page - 1) * limit
    items = TransactionService(db, tenant_id).list(
        filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    return {
        "items": [serialize_transaction(txn) for txn in items[:limit]],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    try:
        created = TransactionService(db, tenant_id).create(data)
    except ValueError as exc:
        _raise_http(exc)
    if isinstance(created, SeriesCreated):
        return {"recurrence_group_id": created.group_id, "count": created.count}
    return {"id": created.id}


@app.put("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int,
    data: TransactionUpdateIn,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    try:
        result = TransactionService(db, tenant_id).update(transaction_id, data)
    except ValueError as exc:
        _raise_http(exc)
    if result.series:
        return {"ok": True, "series_updated": True, "count": result.count}
    return {"ok": True}


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(
    transaction_id: int,
    series: bool = False,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    try:
        result = TransactionService(db, tenant_id).delete(transaction_id, series=series)
    except ValueError as exc:
        _raise_http(exc)
    if result.series:
        return {"ok": True, "series_deleted": True, "count": result.count}
    return {"ok": True}


@app.post("/api/import/transactions")
async def api_import_transactions(
    file: UploadFile = File(...),
    create_missing_categories: bool = Form(False),
    date_format: DateFormat = Form(DateFormat.auto),
    mode: ImportMode = Form(ImportMode.commit),
    duplicate_policy: DuplicatePolicy = Form(DuplicatePolicy.skip),
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    max_bytes = get_settings().import_max_bytes
    raw = await file.read(max_bytes + 1)
    if not raw:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(raw) > max_bytes:
        raise HTTPException(
            status_code=413, detail=f"File too large (max {max_bytes} bytes)"
        )
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="File must be UTF-8 text") from exc

    options = ImportOptions(
        create_missing_categories=create_missing_categories,
        date_format=date_format,
        mode=mode,
        duplicate_policy=duplicate_policy,
    )
    try:
        result = ImportService(db, tenant_id).run(content, options)
    except ValueError as exc:
        _raise_http(exc)
    return result.model_dump(mode="json")


@app.get("/api/import/template")
def api_import_template():
    return _csv_response(ImportService.template(), "transactions_template.csv")


@app.get("/api/import/export")
def api_export_transactions(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    filters = filters_from_request(request)
    csv_text = ImportService(db, tenant_id).export(filters)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return _csv_response(csv_text, f"transactions_export_{timestamp}.csv")


@app.get("/api/dashboard/summary")
def api_summary(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    month_range = month_range_from_request(request)
    return MetricsService(db, tenant_id).summary(month_range)


@app.get("/api/dashboard/monthly")
def api_monthly_series(
    request: Request,
    months: Optional[int] = None,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    month_range = month_range_from_request(request)
    try:
        return InsightsService(db, tenant_id).monthly_series(month_range, months=months)
    except ValueError as exc:
        _raise_http(exc)


@app.get("/api/dashboard/categories")
def api_category_breakdown(
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    month_range = month_range_from_request(request)
    return MetricsService(db, tenant_id).category_breakdown(month_range)


@app.get("/api/dashboard/projection")
def api_projection(
    db: Session = Depends(get_db), tenant_id: int = Depends(get_tenant_id)
):
    return InsightsService(db, tenant_id).projection()


@app.get("/api/dashboard/insights")
def api_insights(db: Session = Depends(get_db), tenant_id: int = Depends(get_tenant_id)):
    return {"insights": InsightsService(db, tenant_id).insights()}


@app.post("/api/admin/rebuild-summaries")
def api_rebuild_summaries(
    db: Session = Depends(get_db), tenant_id: int = Depends(get_tenant_id)
):
    periods = rebuild_monthly_summaries(db, tenant_id)
    return {"ok": True, "periods": periods}
