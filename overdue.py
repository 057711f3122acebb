from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from crud import persist, store_call, utcnow
from filter_helpers import normalize_phone
from models import OverdueItem, OverdueReport, ReminderResult
from notifications import IntentKind, NotificationDispatcher, NotificationIntent, notify
from orm import BorrowRecordORM
from results import CabinetError, Err, Ok, Result
from settings import DEFAULT_SETTINGS, Settings
from states import BorrowStatus

logger = logging.getLogger(__name__)

OVERDUE_HOURS = 24
HOUR = timedelta(hours=1)


def _overdue_query(cutoff: datetime, phone: Optional[str], city_id: Optional[str]):
    stmt = select(BorrowRecordORM).where(
        BorrowRecordORM.status == BorrowStatus.BORROWED.value,
        BorrowRecordORM.borrow_date < cutoff,
    )
    if phone is not None:
        stmt = stmt.where(BorrowRecordORM.phone == normalize_phone(phone))
    if city_id:
        stmt = stmt.where(BorrowRecordORM.city_id == city_id)
    return stmt.order_by(BorrowRecordORM.borrow_date.asc())


def hours_since(then: datetime, now: datetime) -> int:
    return int((now - then) // HOUR)


@store_call
def list_overdue(
    db: Session,
    phone: Optional[str] = None,
    city_id: Optional[str] = None,
    threshold_hours: int = OVERDUE_HOURS,
    *,
    now: Optional[datetime] = None,
) -> Result[list[OverdueItem], CabinetError]:
    """Pure read; gating a new borrow on the answer is up to the caller."""
    now = now or utcnow()
    cutoff = now - timedelta(hours=threshold_hours)
    rows = db.execute(_overdue_query(cutoff, phone, city_id)).scalars().all()
    return Ok([
        OverdueItem(
            id=b.id,
            name=b.name,
            phone=b.phone,
            equipment_id=b.equipment_id,
            equipment_name=b.equipment_name,
            city_id=b.city_id,
            borrow_date=b.borrow_date,
            hours_overdue=hours_since(b.borrow_date, now),
        )
        for b in rows
    ])


@store_call
def overdue_report(
    db: Session,
    phone: Optional[str] = None,
    city_id: Optional[str] = None,
    threshold_hours: int = OVERDUE_HOURS,
    *,
    now: Optional[datetime] = None,
) -> Result[OverdueReport, CabinetError]:
    listed = list_overdue(db, phone, city_id, threshold_hours, now=now)
    if isinstance(listed, Err):
        return listed
    items = listed.value
    message = None
    if items:
        message = (
            f"You have {len(items)} item(s) that have not been returned. "
            "Please return them before borrowing again."
        )
    return Ok(OverdueReport(
        has_overdue=bool(items),
        overdue_count=len(items),
        overdue_items=items,
        message=message,
    ))


@store_call
def send_overdue_reminders(
    db: Session,
    dispatcher: Optional[NotificationDispatcher],
    *,
    settings: Settings = DEFAULT_SETTINGS,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[list[ReminderResult], CabinetError]:
    now = now or utcnow()
    cutoff = now - timedelta(hours=settings.overdue_threshold_hours)
    interval = timedelta(hours=settings.reminder_interval_hours)
    rows = db.execute(_overdue_query(cutoff, None, None)).scalars().all()

    results: list[ReminderResult] = []
    due: list[BorrowRecordORM] = []
    for b in rows:
        last = b.last_reminder_sent_at
        if last is not None and now - last < interval:
            results.append(ReminderResult(
                record_id=b.id,
                phone=b.phone,
                equipment_name=b.equipment_name,
                status="skipped",
                reason=f"reminder sent {hours_since(last, now)} hours ago",
            ))
            continue
        b.last_reminder_sent_at = now
        due.append(b)

    try:
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    for b in due:
        notify(dispatcher, NotificationIntent(
            kind=IntentKind.OVERDUE_REMINDER,
            city_id=b.city_id,
            recipient_phone=b.phone,
            payload={
                "record_id": b.id,
                "borrower": b.name,
                "equipment_name": b.equipment_name,
                "borrow_date": b.borrow_date.isoformat(),
                "hours_overdue": hours_since(b.borrow_date, now),
            },
        ))
        results.append(ReminderResult(record_id=b.id, phone=b.phone, equipment_name=b.equipment_name, status="sent"))

    logger.info("overdue reminders sent=%s skipped=%s", len(due), len(results) - len(due))
    return Ok(results)
