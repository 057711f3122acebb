from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

import borrow_lifecycle
import crud
import overdue
from dependencies import get_db, get_dispatcher, get_settings
from filter_helpers import blank_to_none, normalize_borrow_status, normalize_phone, normalize_threshold_hours
from models import (
    BorrowerIn,
    BorrowRecord,
    DirectBorrowIn,
    DirectBorrowReport,
    DirectBorrowResult,
    ManagerAction,
    OverdueReport,
    OverrideReturnIn,
    ReminderResult,
    ReturnIn,
)
from notifications import NotificationDispatcher
from results import Err, InconsistentWrite
from settings import Settings

from .responses import unwrap

router = APIRouter()


@router.post("/borrows/direct", response_model=DirectBorrowReport)
def direct_borrow_api(
    body: DirectBorrowIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    if not body.items:
        raise HTTPException(status_code=400, detail="at least one item is required")

    if settings.block_borrow_when_overdue and blank_to_none(body.phone):
        report = unwrap(overdue.overdue_report(db, body.phone, None, settings.overdue_threshold_hours))
        if report.has_overdue:
            raise HTTPException(status_code=409, detail=report.model_dump(mode="json"))

    borrower = BorrowerIn(name=body.name, phone=body.phone)
    results: list[DirectBorrowResult] = []
    for item in body.items:
        outcome = borrow_lifecycle.direct_borrow(
            db,
            borrower,
            body.city_id,
            item.equipment_id,
            item.quantity,
            settings=settings,
            dispatcher=dispatcher,
        )
        if isinstance(outcome, Err):
            error = outcome.error
            # the unit left the cabinet even though the ledger did not move
            flagged = isinstance(error, InconsistentWrite)
            results.append(DirectBorrowResult(
                equipment_id=item.equipment_id,
                success=flagged,
                record_id=error.record_id if flagged else None,
                error=error.message,
                needs_reconciliation=flagged,
            ))
            continue
        results.append(DirectBorrowResult(equipment_id=item.equipment_id, success=True, record_id=outcome.value.id))

    success_count = sum(1 for r in results if r.success)
    return DirectBorrowReport(results=results, success_count=success_count, fail_count=len(results) - success_count)


@router.get("/borrows", response_model=list[BorrowRecord])
def list_records_api(
    phone: Optional[str] = None,
    city_id: Optional[str] = None,
    status: Optional[str] = None,
    needs_reconciliation: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    phone = blank_to_none(phone)
    return unwrap(crud.list_records(
        db,
        phone=normalize_phone(phone) if phone else None,
        city_id=blank_to_none(city_id),
        status=normalize_borrow_status(status),
        needs_reconciliation=needs_reconciliation,
    ))


@router.get("/borrows/overdue", response_model=OverdueReport)
def overdue_api(
    phone: Optional[str] = None,
    city_id: Optional[str] = None,
    threshold_hours: Optional[int] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    threshold = normalize_threshold_hours(threshold_hours, settings.overdue_threshold_hours)
    return unwrap(overdue.overdue_report(db, blank_to_none(phone), blank_to_none(city_id), threshold))


@router.post("/borrows/overdue/reminders", response_model=list[ReminderResult])
def overdue_reminders_api(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(overdue.send_overdue_reminders(db, dispatcher, settings=settings))


@router.get("/borrows/{record_id}", response_model=BorrowRecord)
def get_record_api(
    record_id: str,
    db: Session = Depends(get_db),
):
    return unwrap(borrow_lifecycle.get_borrow_record(db, record_id))


@router.post("/borrows/{record_id}/return", response_model=BorrowRecord)
def mark_returned_api(
    record_id: str,
    body: ReturnIn,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(borrow_lifecycle.mark_returned_by_borrower(db, record_id, body.condition, body.notes, dispatcher=dispatcher))


@router.post("/borrows/{record_id}/confirm", response_model=BorrowRecord)
def confirm_return_api(
    record_id: str,
    body: ManagerAction,
    db: Session = Depends(get_db),
):
    return unwrap(borrow_lifecycle.confirm_return(db, record_id, body.manager_name))


@router.post("/borrows/{record_id}/override-return", response_model=BorrowRecord)
def override_return_api(
    record_id: str,
    body: OverrideReturnIn,
    db: Session = Depends(get_db),
):
    return unwrap(borrow_lifecycle.manager_override_return(db, record_id, body.manager_name, body.condition, body.notes))


@router.post("/borrows/{record_id}/reconcile", response_model=BorrowRecord)
def reconcile_api(
    record_id: str,
    body: ManagerAction,
    db: Session = Depends(get_db),
):
    return unwrap(borrow_lifecycle.reconcile_record(db, record_id, body.manager_name))
