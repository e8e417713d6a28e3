import logging
from datetime import date
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from config import get_settings
from csv_utils import cents_to_amount
from database import init_db
from models import RecurringRule, Transaction, TransactionType
from periods import resolve_period
from recurrence import InvalidRuleError, InvalidWindowError, Occurrence, PersistenceError
from scheduler import SchedulerManager
from schemas import (
    CSVImportIn,
    GenerateIn,
    RecurringRuleIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    CSVService,
    RecurringRuleService,
    StatsService,
    SummaryService,
    TransactionService,
)
from stores import LedgerStore, RecordNotFound, TransactionFilters, store_scope


settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Money Map API", version="1.0.0")


def get_store() -> Iterator[LedgerStore]:
    with store_scope() as store:
        yield store


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if settings.storage_backend == "sqlite":
        init_db()
    if settings.scheduler_enabled:
        scheduler_manager.start()
    logger.info(f"startup: storage={settings.storage_backend}")


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(PersistenceError)
def persistence_error_handler(_request: Request, exc: PersistenceError):
    logger.error(f"persistence_error: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Storage failure"})


def transaction_payload(txn: Transaction) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": txn.id,
        "kind": txn.kind.value,
        "amount": cents_to_amount(txn.amount_cents),
        "amount_cents": txn.amount_cents,
        "category": txn.category,
        "description": txn.description or "",
        "date": txn.date.isoformat(),
        "origin_rule_id": txn.origin_rule_id,
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
        "updated_at": txn.updated_at.isoformat() if txn.updated_at else None,
    }
    if txn.kind == TransactionType.expense:
        payload["payment_method"] = txn.payment_method
        payload["location"] = txn.location
        payload["is_fixed"] = bool(txn.is_fixed)
    return payload


def rule_payload(rule: RecurringRule) -> dict[str, object]:
    return {
        "id": rule.id,
        "kind": rule.kind.value,
        "amount": cents_to_amount(rule.amount_cents),
        "amount_cents": rule.amount_cents,
        "category": rule.category,
        "description": rule.description or "",
        "start_date": rule.start_date.isoformat(),
        "frequency": rule.frequency.value,
        "interval": rule.interval,
        "occurrence_limit": rule.occurrence_limit,
        "end_date": rule.end_date.isoformat() if rule.end_date else None,
        "last_processed_date": (
            rule.last_processed_date.isoformat() if rule.last_processed_date else None
        ),
        "is_active": rule.is_active,
        "created_at": rule.created_at.isoformat() if rule.created_at else None,
    }


def occurrence_payload(rule: RecurringRule, occurrence: Occurrence) -> dict[str, object]:
    return {
        "date": occurrence.date.isoformat(),
        "sequence_index": occurrence.sequence_index,
        "amount": cents_to_amount(rule.amount_cents),
        "category": rule.category,
        "description": rule.description or "",
    }


def transaction_router(kind: TransactionType) -> APIRouter:
    router = APIRouter()
    label = kind.value

    @router.get("")
    def list_transactions(
        start_date: Optional[date] = Query(default=None, alias="startDate"),
        end_date: Optional[date] = Query(default=None, alias="endDate"),
        category: Optional[str] = None,
        store: LedgerStore = Depends(get_store),
    ):
        filters = TransactionFilters(
            start_date=start_date, end_date=end_date, category=category
        )
        items = TransactionService(store, kind).list(filters)
        return [transaction_payload(txn) for txn in items]

    @router.post("", status_code=201)
    def create_transaction(data: TransactionIn, store: LedgerStore = Depends(get_store)):
        txn = TransactionService(store, kind).create(data)
        return transaction_payload(txn)

    # Registered before "/{transaction_id}" so the literal path wins.
    @router.get("/export-csv")
    def export_csv(store: LedgerStore = Depends(get_store)):
        csv_text = CSVService(store, kind).export()
        return Response(
            content=csv_text,
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{label}.csv"'},
        )

    @router.post("/import-csv")
    def import_csv(data: CSVImportIn, store: LedgerStore = Depends(get_store)):
        service = CSVService(store, kind)
        rows, errors = service.preview(data.csv)
        if data.persist and not errors:
            service.commit(data.csv)
        return {
            "imported": len(rows),
            "persisted": bool(data.persist and not errors),
            "errors": errors,
            "items": [
                {
                    "amount": cents_to_amount(row.amount_cents),
                    "category": row.category,
                    "description": row.description or "",
                    "date": row.date.isoformat(),
                }
                for row in rows
            ],
        }

    @router.get("/{transaction_id}")
    def get_transaction(transaction_id: str, store: LedgerStore = Depends(get_store)):
        try:
            txn = TransactionService(store, kind).get(transaction_id)
        except RecordNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return transaction_payload(txn)

    @router.put("/{transaction_id}")
    def update_transaction(
        transaction_id: str,
        data: TransactionUpdate,
        store: LedgerStore = Depends(get_store),
    ):
        try:
            txn = TransactionService(store, kind).update(transaction_id, data)
        except RecordNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return transaction_payload(txn)

    @router.delete("/{transaction_id}")
    def delete_transaction(transaction_id: str, store: LedgerStore = Depends(get_store)):
        try:
            TransactionService(store, kind).delete(transaction_id)
        except RecordNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"message": "Deleted"}

    return router


app.include_router(transaction_router(TransactionType.income), prefix="/api/income")
app.include_router(transaction_router(TransactionType.expense), prefix="/api/expense")


@app.get("/")
def index():
    return {"message": "Welcome to Money Map API"}


@app.get("/api/summary")
def api_summary(store: LedgerStore = Depends(get_store)):
    return SummaryService(store).balance()


@app.get("/api/stats/monthly")
def api_stats_monthly(
    kind: TransactionType = TransactionType.income,
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    store: LedgerStore = Depends(get_store),
):
    return StatsService(store, kind).monthly(start_date, end_date)


@app.get("/api/stats/category")
def api_stats_category(
    kind: TransactionType = TransactionType.income,
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    store: LedgerStore = Depends(get_store),
):
    return StatsService(store, kind).by_category(start_date, end_date)


@app.get("/api/stats/weekday")
def api_stats_weekday(
    kind: TransactionType = TransactionType.income,
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    store: LedgerStore = Depends(get_store),
):
    return StatsService(store, kind).by_weekday(start_date, end_date)


@app.get("/api/stats/summary")
def api_stats_summary(
    kind: TransactionType = TransactionType.income,
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    store: LedgerStore = Depends(get_store),
):
    try:
        period = resolve_period(start_date, end_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return StatsService(store, kind).period_summary(period)


@app.post("/api/recurring", status_code=201)
def create_recurring(data: RecurringRuleIn, store: LedgerStore = Depends(get_store)):
    try:
        rule = RecurringRuleService(store).create(data)
    except InvalidRuleError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return rule_payload(rule)


@app.get("/api/recurring")
def list_recurring(store: LedgerStore = Depends(get_store)):
    return [rule_payload(rule) for rule in RecurringRuleService(store).list()]


@app.post("/api/recurring/catch-up")
def catch_up_recurring(store: LedgerStore = Depends(get_store)):
    count = RecurringRuleService(store).catch_up_all()
    return {"persisted_count": count}


@app.get("/api/recurring/{rule_id}")
def get_recurring(rule_id: str, store: LedgerStore = Depends(get_store)):
    try:
        rule = RecurringRuleService(store).get(rule_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_payload(rule)


@app.post("/api/recurring/{rule_id}/activate")
def activate_recurring(rule_id: str, store: LedgerStore = Depends(get_store)):
    try:
        rule = RecurringRuleService(store).set_active(rule_id, True)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_payload(rule)


@app.post("/api/recurring/{rule_id}/deactivate")
def deactivate_recurring(rule_id: str, store: LedgerStore = Depends(get_store)):
    try:
        rule = RecurringRuleService(store).set_active(rule_id, False)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return rule_payload(rule)


@app.post("/api/recurring/{rule_id}/generate")
def generate_recurring(
    rule_id: str,
    data: Optional[GenerateIn] = None,
    store: LedgerStore = Depends(get_store),
):
    data = data or GenerateIn()
    try:
        result = RecurringRuleService(store).generate(
            rule_id, data.window_start, data.window_end, persist=data.persist
        )
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (InvalidRuleError, InvalidWindowError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    payload: dict[str, object] = {
        "occurrences": [
            occurrence_payload(result.rule, occurrence)
            for occurrence in result.occurrences
        ],
        "persisted": result.persisted,
    }
    if result.materialized is not None:
        watermark = result.materialized.new_watermark
        payload["persisted_count"] = result.materialized.persisted_count
        payload["watermark"] = watermark.isoformat() if watermark else None
    return payload
