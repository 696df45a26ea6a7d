import logging
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import get_db, store_call
from duplicates import DuplicateGroup, DuplicateService
from errors import (
    InvariantViolationError,
    NotFoundError,
    PnlError,
    PolicyViolationError,
    ReferentialIntegrityError,
    UpstreamUnavailableError,
    ValidationError,
)
from models import Category, Direction
from reporting import PnlReportService
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    ManualEntryIn,
    ManualEntryOut,
    ManualEntryUpdate,
    ReorderIn,
)
from services import CategoryService, ManualEntryService, TransactionService
from sources import SourceTransaction

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="P&L Report")

ERROR_STATUS: list[tuple[type[PnlError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (PolicyViolationError, 409),
    (ReferentialIntegrityError, 409),
    (UpstreamUnavailableError, 503),
    (InvariantViolationError, 500),
]


def http_error(exc: PnlError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.error(f"{error_type.__name__}: {exc}")
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def category_payload(category: Category, ordering: bool) -> CategoryOut:
    return CategoryOut(
        id=category.id,
        name=category.name,
        description=category.description,
        direction=category.direction,
        management_policy=category.management_policy,
        display_order=category.display_order if ordering else None,
        created_at=category.created_at,
        updated_at=category.updated_at,
    )


def transaction_payload(txn: SourceTransaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "source": txn.source.value,
        "occurred_at": txn.occurred_at.isoformat(),
        "amount_cents": txn.amount_cents,
        "currency": txn.currency,
        "payer": txn.payer,
        "description": txn.description,
        "category_id": txn.category_id,
    }


def group_payload(group: DuplicateGroup) -> dict[str, object]:
    return {
        "payer": group.payer,
        "amount_cents": group.amount_cents,
        "currency": group.currency,
        "exact": group.exact,
        "count": group.count,
        "keep": group.keeper.id,
        "remove": [txn.id for txn in group.removable],
        "transactions": [transaction_payload(txn) for txn in group.members],
    }


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    try:
        with store_call("health check"):
            db.execute(text("SELECT 1"))
    except UpstreamUnavailableError as exc:
        raise http_error(exc) from exc
    return {"status": "ok"}


@app.get("/api/pnl/{year}")
def pnl_report(
    year: int,
    breakdown: bool = False,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        report = PnlReportService(db, settings).monthly_report(
            year, include_breakdown=breakdown
        )
    except PnlError as exc:
        raise http_error(exc) from exc
    return asdict(report)


@app.get("/api/pnl/{year}/{month}/details")
def pnl_cell_details(
    year: int,
    month: int,
    direction: Direction,
    category_id: Optional[int] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        items = PnlReportService(db, settings).category_month_details(
            direction, category_id, year, month
        )
    except PnlError as exc:
        raise http_error(exc) from exc
    return {"items": [asdict(item) for item in items]}


@app.get("/api/pnl/{year}/{month}/duplicates")
def pnl_duplicates(
    year: int,
    month: int,
    direction: Direction = Direction.outflow,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        groups = DuplicateService(db, settings).find_duplicates(year, month, direction)
    except PnlError as exc:
        raise http_error(exc) from exc
    return {
        "groups": [group_payload(group) for group in groups],
        "total_duplicates": sum(len(group.removable) for group in groups),
    }


@app.post("/api/transactions/{transaction_id}/mark-duplicate", status_code=204)
def mark_duplicate(transaction_id: str, db: Session = Depends(get_db)):
    try:
        TransactionService(db).mark_duplicate(transaction_id)
    except PnlError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/categories")
def list_categories(
    direction: Optional[Direction] = None, db: Session = Depends(get_db)
):
    service = CategoryService(db)
    try:
        categories = service.list_all(direction)
    except PnlError as exc:
        raise http_error(exc) from exc
    ordering = service.ordering_supported()
    return [category_payload(category, ordering) for category in categories]


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    service = CategoryService(db)
    try:
        category = service.create(data)
    except PnlError as exc:
        raise http_error(exc) from exc
    return category_payload(category, service.ordering_supported())


@app.get("/api/categories/{category_id}")
def get_category(category_id: int, db: Session = Depends(get_db)):
    service = CategoryService(db)
    try:
        category = service.get(category_id)
    except PnlError as exc:
        raise http_error(exc) from exc
    return category_payload(category, service.ordering_supported())


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: int, data: CategoryUpdate, db: Session = Depends(get_db)
):
    service = CategoryService(db)
    try:
        category = service.update(category_id, data)
    except PnlError as exc:
        raise http_error(exc) from exc
    return category_payload(category, service.ordering_supported())


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except PnlError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/categories/{category_id}/reorder")
def reorder_category(
    category_id: int, data: ReorderIn, db: Session = Depends(get_db)
):
    service = CategoryService(db)
    try:
        service.reorder(category_id, data.direction)
        category = service.get(category_id)
        siblings = service.list_all(category.direction)
    except PnlError as exc:
        raise http_error(exc) from exc
    return [category_payload(c, True) for c in siblings]


@app.get("/api/manual-entries")
def list_manual_entries(
    category_id: int,
    year: int,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    service = ManualEntryService(db, settings)
    try:
        if month is None:
            entries = service.for_category_year(category_id, year)
        else:
            entries = service.for_period(category_id, year, month)
    except PnlError as exc:
        raise http_error(exc) from exc
    return [ManualEntryOut.model_validate(entry) for entry in entries]


@app.put("/api/manual-entries")
def upsert_manual_entry(
    data: ManualEntryIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        entry = ManualEntryService(db, settings).upsert(data)
    except PnlError as exc:
        raise http_error(exc) from exc
    return ManualEntryOut.model_validate(entry)


@app.post("/api/manual-entries", status_code=201)
def create_manual_entry(
    data: ManualEntryIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        entry = ManualEntryService(db, settings).create(data)
    except PnlError as exc:
        raise http_error(exc) from exc
    return ManualEntryOut.model_validate(entry)


@app.delete("/api/manual-entries")
def delete_manual_entries_for_period(
    category_id: int = Query(...),
    year: int = Query(...),
    month: int = Query(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        removed = ManualEntryService(db, settings).delete_period(
            category_id, year, month
        )
    except PnlError as exc:
        raise http_error(exc) from exc
    return {"deleted": removed}


@app.get("/api/manual-entries/{entry_id}")
def get_manual_entry(
    entry_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        entry = ManualEntryService(db, settings).get(entry_id)
    except PnlError as exc:
        raise http_error(exc) from exc
    return ManualEntryOut.model_validate(entry)


@app.patch("/api/manual-entries/{entry_id}")
def update_manual_entry(
    entry_id: int,
    data: ManualEntryUpdate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        entry = ManualEntryService(db, settings).update(entry_id, data)
    except PnlError as exc:
        raise http_error(exc) from exc
    return ManualEntryOut.model_validate(entry)


@app.delete("/api/manual-entries/{entry_id}", status_code=204)
def delete_manual_entry(
    entry_id: int,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    try:
        ManualEntryService(db, settings).delete(entry_id)
    except PnlError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
