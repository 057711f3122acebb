from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from models import BorrowRecord, InventoryLine, Request, RequestItem
from orm import BorrowRecordORM, InventoryLineORM, RequestORM
from results import CabinetError, Err, Ok, Result, StoreTimeout

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()

def store_call(fn):
    """Turn a driver lock timeout into a retryable ``StoreTimeout`` result.

    The session is rolled back first so nothing from the interrupted unit of
    work can be committed later by accident.
    """
    @functools.wraps(fn)
    def wrapper(db: Session, *args, **kwargs):
        try:
            return fn(db, *args, **kwargs)
        except OperationalError as exc:
            db.rollback()
            logger.warning("store call failed op=%s error=%s", fn.__name__, exc.orig)
            return Err(StoreTimeout(f"store unavailable, retry later ({exc.orig})"))
    return wrapper

def _line_to_schema(l: InventoryLineORM) -> InventoryLine:
    return InventoryLine(
        id=l.id,
        city_id=l.city_id,
        equipment_id=l.equipment_id,
        equipment_name=l.equipment.name,
        quantity=l.quantity,
        is_consumable=l.is_consumable,
        equipment_status=l.equipment_status,  # type: ignore
        version=l.version,
        updated_at=l.updated_at,
    )

def _request_to_schema(r: RequestORM) -> Request:
    return Request(
        id=r.id,
        city_id=r.city_id,
        requester_name=r.requester_name,
        requester_phone=r.requester_phone,
        call_id=r.call_id,
        status=r.status,  # type: ignore
        expires_at=r.expires_at,
        approved_by=r.approved_by,
        approved_at=r.approved_at,
        rejected_reason=r.rejected_reason,
        fulfilled_at=r.fulfilled_at,
        created_at=r.created_at,
        updated_at=r.updated_at,
        items=[
            RequestItem(equipment_id=i.equipment_id, equipment_name=i.equipment.name, quantity=i.quantity)
            for i in r.items
        ],
    )

def _record_to_schema(b: BorrowRecordORM) -> BorrowRecord:
    return BorrowRecord(
        id=b.id,
        request_id=b.request_id,
        name=b.name,
        phone=b.phone,
        equipment_id=b.equipment_id,
        equipment_name=b.equipment_name,
        city_id=b.city_id,
        quantity=b.quantity,
        is_consumable=b.is_consumable,
        status=b.status,  # type: ignore
        borrow_date=b.borrow_date,
        return_date=b.return_date,
        equipment_status=b.equipment_status,  # type: ignore
        faulty_notes=b.faulty_notes,
        confirmed_by=b.confirmed_by,
        needs_reconciliation=b.needs_reconciliation,
    )


# ---------- Lookups ----------
def find_line(db: Session, city_id: str, equipment_id: str) -> Optional[InventoryLineORM]:
    stmt = select(InventoryLineORM).where(
        InventoryLineORM.city_id == city_id,
        InventoryLineORM.equipment_id == equipment_id,
    )
    return db.execute(stmt).scalars().first()

def find_request_by_hash(db: Session, token_hash: str) -> Optional[RequestORM]:
    stmt = select(RequestORM).where(RequestORM.token_hash == token_hash)
    return db.execute(stmt).scalars().first()

@store_call
def list_requests(db: Session, city_id: str, status: Optional[str] = None) -> Result[list[Request], CabinetError]:
    stmt = select(RequestORM).where(RequestORM.city_id == city_id)
    if status:
        stmt = stmt.where(RequestORM.status == status)
    stmt = stmt.order_by(RequestORM.created_at.desc())
    return Ok([_request_to_schema(r) for r in db.execute(stmt).scalars().all()])

@store_call
def list_records(
    db: Session,
    *,
    phone: Optional[str] = None,
    city_id: Optional[str] = None,
    status: Optional[str] = None,
    needs_reconciliation: Optional[bool] = None,
) -> Result[list[BorrowRecord], CabinetError]:
    stmt = select(BorrowRecordORM)
    if phone:
        stmt = stmt.where(BorrowRecordORM.phone == phone)
    if city_id:
        stmt = stmt.where(BorrowRecordORM.city_id == city_id)
    if status:
        stmt = stmt.where(BorrowRecordORM.status == status)
    if needs_reconciliation is not None:
        stmt = stmt.where(BorrowRecordORM.needs_reconciliation == needs_reconciliation)
    stmt = stmt.order_by(BorrowRecordORM.borrow_date.desc())
    return Ok([_record_to_schema(b) for b in db.execute(stmt).scalars().all()])
