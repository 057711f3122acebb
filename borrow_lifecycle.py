"""Custody records: direct borrow, borrower-reported return, manager confirmation.

A record is created at pickup and is the only source of truth for whether a
unit is out. Non-consumable stock goes back to the ledger when a record is
closed; consumables are closed at creation and never released.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

import activity
import inventory
from crud import _record_to_schema, find_line, persist, store_call, utcnow
from filter_helpers import blank_to_none, normalize_phone
from models import BorrowerIn, BorrowRecord
from notifications import IntentKind, NotificationDispatcher, NotificationIntent, notify
from orm import BorrowRecordORM, InventoryLineORM
from results import (
    CabinetError,
    Err,
    InconsistentWrite,
    InvalidStateTransition,
    NotFound,
    Ok,
    Result,
    ValidationError,
)
from settings import DEFAULT_SETTINGS, Settings
from states import ACTIVE_BORROW_STATUSES, BorrowStatus, EquipmentCondition, check_borrow_transition

logger = logging.getLogger(__name__)


def record_fields(
    *,
    name: str,
    phone: str,
    line: InventoryLineORM,
    quantity: int,
    now: datetime,
    request_id: Optional[str] = None,
) -> dict[str, Any]:
    consumable = line.is_consumable
    return {
        "id": str(uuid4()),
        "request_id": request_id,
        "name": name,
        "phone": phone,
        "equipment_id": line.equipment_id,
        "equipment_name": line.equipment.name,
        "city_id": line.city_id,
        "quantity": quantity,
        "is_consumable": consumable,
        "status": BorrowStatus.RETURNED.value if consumable else BorrowStatus.BORROWED.value,
        "borrow_date": now,
        "return_date": now if consumable else None,
        "equipment_status": EquipmentCondition.WORKING.value,
    }


def _parse_condition(condition: Any) -> Optional[EquipmentCondition]:
    try:
        return EquipmentCondition(condition)
    except ValueError:
        return None


def _cas_status(db: Session, record_id: str, expected: str, **values: Any) -> bool:
    result = db.execute(
        update(BorrowRecordORM)
        .where(BorrowRecordORM.id == record_id, BorrowRecordORM.status == expected)
        .values(**values)
    )
    return result.rowcount == 1


@store_call
def direct_borrow(
    db: Session,
    borrower: BorrowerIn,
    city_id: str,
    equipment_id: str,
    quantity: int = 1,
    *,
    settings: Settings = DEFAULT_SETTINGS,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[BorrowRecord, CabinetError]:
    """Walk-up borrow with no approval step.

    The record insert and the stock decrement share one transaction. If the
    decrement itself blows up, the record is still written, flagged
    ``needs_reconciliation`` and audited, and ``InconsistentWrite`` is
    returned. That path always commits, whatever ``commit`` says.
    """
    name = (borrower.name or "").strip()
    phone = normalize_phone(borrower.phone)
    city_id = (city_id or "").strip()
    if not name or not phone:
        return Err(ValidationError("borrower name and phone are required"))
    if not city_id:
        return Err(ValidationError("city_id is required"))

    line = find_line(db, city_id, equipment_id)
    problem = inventory.check_availability(line, quantity)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    fields = record_fields(name=name, phone=phone, line=line, quantity=quantity, now=now)
    line_id = line.id
    record = BorrowRecordORM(**fields)
    try:
        db.add(record)
        db.flush()
    except Exception:
        db.rollback()
        raise

    try:
        reserved = inventory.check_and_reserve(db, line_id, quantity, now=now)
    except OperationalError:
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        return _keep_inconsistent(db, fields, line_id=line_id, error=exc)

    if isinstance(reserved, Err):
        db.rollback()
        return reserved

    persist(db, commit=commit)
    if commit:
        db.refresh(record)
    logger.info(
        "direct borrow record_id=%s city_id=%s equipment_id=%s quantity=%s remaining=%s",
        record.id, city_id, equipment_id, quantity, reserved.value.remaining,
    )
    if reserved.value.remaining <= settings.low_stock_threshold:
        notify(dispatcher, NotificationIntent(
            kind=IntentKind.STOCK_LOW,
            city_id=city_id,
            payload={"line_id": line_id, "equipment_name": fields["equipment_name"], "remaining": reserved.value.remaining},
        ))
    return Ok(_record_to_schema(record))


def _keep_inconsistent(db: Session, fields: dict[str, Any], *, line_id: str, error: Exception) -> Result[BorrowRecord, CabinetError]:
    flagged = BorrowRecordORM(**fields, needs_reconciliation=True)
    db.add(flagged)
    activity.log_activity(
        db,
        city_id=fields["city_id"],
        manager_name=activity.SYSTEM_ACTOR,
        action=activity.INCONSISTENT_WRITE,
        details={
            "record_id": fields["id"],
            "line_id": line_id,
            "quantity": fields["quantity"],
            "error": str(error),
        },
    )
    db.commit()
    logger.error(
        "inconsistent write record_id=%s line_id=%s quantity=%s error=%s",
        fields["id"], line_id, fields["quantity"], error,
    )
    return Err(InconsistentWrite(
        "borrow was recorded but stock was not updated; flagged for reconciliation",
        record_id=fields["id"],
    ))


@store_call
def mark_returned_by_borrower(
    db: Session,
    record_id: str,
    condition: EquipmentCondition | str = EquipmentCondition.WORKING,
    notes: Optional[str] = None,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[BorrowRecord, CabinetError]:
    b = db.get(BorrowRecordORM, record_id)
    if b is None:
        return Err(NotFound("borrow record not found"))

    parsed = _parse_condition(condition)
    if parsed is None:
        return Err(ValidationError(f"unknown equipment condition {condition!r}"))
    notes = blank_to_none(notes)
    if parsed is EquipmentCondition.FAULTY and not notes:
        return Err(ValidationError("describe the fault when returning faulty equipment"))

    problem = check_borrow_transition(b.status, BorrowStatus.PENDING_APPROVAL)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    moved = _cas_status(
        db,
        record_id,
        BorrowStatus.BORROWED.value,
        status=BorrowStatus.PENDING_APPROVAL.value,
        return_date=now,
        equipment_status=parsed.value,
        faulty_notes=notes if parsed is EquipmentCondition.FAULTY else None,
    )
    if not moved:
        db.rollback()
        return Err(InvalidStateTransition("borrow record changed concurrently", attempted=BorrowStatus.PENDING_APPROVAL.value))

    persist(db, commit=commit)
    db.refresh(b)
    logger.info("return reported record_id=%s condition=%s", record_id, parsed.value)
    notify(dispatcher, NotificationIntent(
        kind=IntentKind.RETURN_REPORTED,
        city_id=b.city_id,
        payload={
            "record_id": b.id,
            "equipment_name": b.equipment_name,
            "borrower": b.name,
            "condition": parsed.value,
            "faulty_notes": b.faulty_notes,
        },
    ))
    return Ok(_record_to_schema(b))


def _close_record(
    db: Session,
    record_id: str,
    manager_name: str,
    *,
    action: str,
    condition: Optional[EquipmentCondition],
    notes: Optional[str],
    now: Optional[datetime],
    commit: bool,
) -> Result[BorrowRecord, CabinetError]:
    manager = blank_to_none(manager_name)
    if not manager:
        return Err(ValidationError("manager_name is required"))

    b = db.get(BorrowRecordORM, record_id)
    if b is None:
        return Err(NotFound("borrow record not found"))

    problem = check_borrow_transition(b.status, BorrowStatus.RETURNED)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    previous = b.status
    values: dict[str, Any] = {
        "status": BorrowStatus.RETURNED.value,
        "return_date": b.return_date or now,
        "confirmed_by": manager,
        "needs_reconciliation": False,
    }
    if condition is not None:
        values["equipment_status"] = condition.value
        values["faulty_notes"] = notes if condition is EquipmentCondition.FAULTY else None

    # a flagged record never took stock out, so there is nothing to put back
    release_stock = not b.is_consumable and not b.needs_reconciliation

    try:
        if not _cas_status(db, record_id, previous, **values):
            db.rollback()
            return Err(InvalidStateTransition("borrow record changed concurrently", attempted=BorrowStatus.RETURNED.value))

        if release_stock:
            line = find_line(db, b.city_id, b.equipment_id)
            if line is None:
                db.rollback()
                return Err(NotFound("inventory line for this record no longer exists"))
            released = inventory.release(db, line.id, b.quantity, now=now)
            if isinstance(released, Err):
                db.rollback()
                return released

        activity.log_activity(
            db,
            city_id=b.city_id,
            manager_name=manager,
            action=action,
            details={
                "record_id": record_id,
                "equipment_name": b.equipment_name,
                "previous_status": previous,
                "condition": values.get("equipment_status", b.equipment_status),
            },
        )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    db.refresh(b)
    logger.info("return closed record_id=%s previous=%s manager=%s released=%s", record_id, previous, manager, release_stock)
    return Ok(_record_to_schema(b))


@store_call
def confirm_return(
    db: Session,
    record_id: str,
    manager_name: str,
    *,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[BorrowRecord, CabinetError]:
    return _close_record(
        db, record_id, manager_name,
        action=activity.RETURN_CONFIRMED,
        condition=None,
        notes=None,
        now=now,
        commit=commit,
    )


@store_call
def manager_override_return(
    db: Session,
    record_id: str,
    manager_name: str,
    condition: EquipmentCondition | str = EquipmentCondition.WORKING,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[BorrowRecord, CabinetError]:
    parsed = _parse_condition(condition)
    if parsed is None:
        return Err(ValidationError(f"unknown equipment condition {condition!r}"))
    notes = blank_to_none(notes)
    if parsed is EquipmentCondition.FAULTY and not notes:
        return Err(ValidationError("describe the fault when marking equipment faulty"))
    return _close_record(
        db, record_id, manager_name,
        action=activity.RETURN_OVERRIDDEN,
        condition=parsed,
        notes=notes,
        now=now,
        commit=commit,
    )


@store_call
def reconcile_record(
    db: Session,
    record_id: str,
    manager_name: str,
    *,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[BorrowRecord, CabinetError]:
    """Apply the stock decrement a flagged record is missing and clear the flag."""
    manager = blank_to_none(manager_name)
    if not manager:
        return Err(ValidationError("manager_name is required"))

    b = db.get(BorrowRecordORM, record_id)
    if b is None:
        return Err(NotFound("borrow record not found"))
    if not b.needs_reconciliation:
        return Err(InvalidStateTransition("borrow record does not need reconciliation", current=b.status))

    try:
        if b.status in ACTIVE_BORROW_STATUSES or b.is_consumable:
            line = find_line(db, b.city_id, b.equipment_id)
            if line is None:
                return Err(NotFound("inventory line for this record no longer exists"))
            reserved = inventory.check_and_reserve(db, line.id, b.quantity, now=now)
            if isinstance(reserved, Err):
                db.rollback()
                return reserved

        cleared = db.execute(
            update(BorrowRecordORM)
            .where(BorrowRecordORM.id == record_id, BorrowRecordORM.needs_reconciliation.is_(True))
            .values(needs_reconciliation=False)
        )
        if cleared.rowcount != 1:
            db.rollback()
            return Err(InvalidStateTransition("borrow record was reconciled concurrently", current=b.status))

        activity.log_activity(
            db,
            city_id=b.city_id,
            manager_name=manager,
            action=activity.RECORD_RECONCILED,
            details={"record_id": record_id, "quantity": b.quantity},
        )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    db.refresh(b)
    logger.info("record reconciled record_id=%s manager=%s", record_id, manager)
    return Ok(_record_to_schema(b))


@store_call
def get_borrow_record(db: Session, record_id: str) -> Result[BorrowRecord, CabinetError]:
    row = db.get(BorrowRecordORM, record_id)
    if row is None:
        return Err(NotFound("borrow record not found"))
    return Ok(_record_to_schema(row))
