"""Per-city equipment counters. ``check_and_reserve`` and ``release`` never commit."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crud import _line_to_schema, find_line, persist, store_call, utcnow
from models import InventoryLine, InventoryLineIn, Reservation
from orm import EquipmentORM, InventoryLineORM
from results import CabinetError, Err, InsufficientStock, NotFound, Ok, Result, ValidationError
from states import EquipmentCondition

logger = logging.getLogger(__name__)


def get_or_create_equipment_id(db: Session, name: str | None) -> str | None:
    name = (name or "").strip()
    if not name:
        return None
    e = db.execute(select(EquipmentORM).where(EquipmentORM.name == name)).scalar_one_or_none()
    if e:
        return e.id
    e = EquipmentORM(id=str(uuid4()), name=name, created_at=utcnow())
    db.add(e)
    persist(db, commit=False)
    return e.id


@store_call
def create_line(db: Session, body: InventoryLineIn, *, commit: bool = True) -> Result[InventoryLine, CabinetError]:
    city_id = (body.city_id or "").strip()
    if not city_id:
        return Err(ValidationError("city_id is required"))
    equipment_id = get_or_create_equipment_id(db, body.equipment_name)
    if equipment_id is None:
        return Err(ValidationError("equipment_name is required"))
    if find_line(db, city_id, equipment_id) is not None:
        db.rollback()
        return Err(ValidationError(f"city {city_id} already stocks {body.equipment_name.strip()}"))

    now = utcnow()
    line = InventoryLineORM(
        id=str(uuid4()),
        city_id=city_id,
        equipment_id=equipment_id,
        quantity=body.quantity,
        is_consumable=body.is_consumable,
        equipment_status=body.equipment_status.value,
        version=0,
        created_at=now,
        updated_at=now,
    )
    db.add(line)
    persist(db, commit=commit)
    if commit:
        db.refresh(line)
    return Ok(_line_to_schema(line))


@store_call
def get_line(db: Session, line_id: str) -> Result[InventoryLine, CabinetError]:
    row = db.get(InventoryLineORM, line_id)
    if row is None:
        return Err(NotFound("inventory line not found"))
    return Ok(_line_to_schema(row))


@store_call
def list_lines(db: Session, city_id: str) -> Result[list[InventoryLine], CabinetError]:
    stmt = (
        select(InventoryLineORM)
        .join(EquipmentORM, EquipmentORM.id == InventoryLineORM.equipment_id)
        .where(InventoryLineORM.city_id == city_id)
        .order_by(EquipmentORM.name.asc())
    )
    return Ok([_line_to_schema(l) for l in db.execute(stmt).unique().scalars().all()])


def check_availability(line: Optional[InventoryLineORM], amount: int, *, label: str = "equipment") -> Optional[CabinetError]:
    """Soft check used before anything is reserved. Returns the first problem found."""
    if line is None:
        return NotFound(f"{label} is not stocked in this city")
    name = line.equipment.name
    if amount < 1:
        return ValidationError(f"quantity for {name} must be at least 1")
    if line.equipment_status != EquipmentCondition.WORKING.value:
        return ValidationError(f"{name} is faulty and cannot be lent")
    if not line.is_consumable and amount != 1:
        return ValidationError(f"{name} is not consumable; quantity must be 1")
    if line.quantity < amount:
        return InsufficientStock(
            f"not enough {name} in stock",
            line_id=line.id,
            requested=amount,
            available=line.quantity,
        )
    return None


def check_and_reserve(
    db: Session,
    line_id: str,
    amount: int,
    *,
    now: Optional[datetime] = None,
) -> Result[Reservation, CabinetError]:
    line = db.get(InventoryLineORM, line_id)
    if line is None:
        return Err(NotFound(f"inventory line {line_id} not found"))
    if amount < 1:
        return Err(ValidationError("reservation amount must be at least 1"))
    if not line.is_consumable and amount != 1:
        return Err(ValidationError("non-consumable equipment is lent one unit per record"))

    # single conditional write: the WHERE clause is the stock check
    stmt = (
        update(InventoryLineORM)
        .where(InventoryLineORM.id == line_id, InventoryLineORM.quantity >= amount)
        .values(
            quantity=InventoryLineORM.quantity - amount,
            version=InventoryLineORM.version + 1,
            updated_at=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        available = db.execute(
            select(InventoryLineORM.quantity).where(InventoryLineORM.id == line_id)
        ).scalar_one()
        logger.info("reservation refused line_id=%s requested=%s available=%s", line_id, amount, available)
        return Err(InsufficientStock(
            f"not enough {line.equipment.name} in stock",
            line_id=line_id,
            requested=amount,
            available=int(available),
        ))

    db.refresh(line)
    return Ok(Reservation(line_id=line_id, amount=amount, remaining=line.quantity, is_consumable=line.is_consumable))


def release(
    db: Session,
    line_id: str,
    amount: int,
    *,
    now: Optional[datetime] = None,
) -> Result[InventoryLine, CabinetError]:
    line = db.get(InventoryLineORM, line_id)
    if line is None:
        return Err(NotFound(f"inventory line {line_id} not found"))
    if line.is_consumable:
        return Err(ValidationError("consumable stock is never released"))
    if amount < 1:
        return Err(ValidationError("release amount must be at least 1"))

    db.execute(
        update(InventoryLineORM)
        .where(InventoryLineORM.id == line_id)
        .values(
            quantity=InventoryLineORM.quantity + amount,
            version=InventoryLineORM.version + 1,
            updated_at=now or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.refresh(line)
    return Ok(_line_to_schema(line))
