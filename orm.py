from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, TypeDecorator, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db import Base


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class EquipmentORM(Base):
    __tablename__ = "equipment"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class InventoryLineORM(Base):
    __tablename__ = "city_equipment"
    __table_args__ = (UniqueConstraint("city_id", "equipment_id", name="uq_city_equipment"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    city_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    equipment_id: Mapped[str] = mapped_column(String, ForeignKey("equipment.id"), nullable=False, index=True)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_consumable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    equipment_status: Mapped[str] = mapped_column(String, nullable=False, default="working")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    equipment: Mapped[EquipmentORM] = relationship(lazy="joined")


class RequestORM(Base):
    __tablename__ = "requests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    city_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    requester_name: Mapped[str] = mapped_column(String, nullable=False)
    requester_phone: Mapped[str] = mapped_column(String, nullable=False, index=True)
    call_id: Mapped[str | None] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)
    token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    token_issued_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rejected_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    fulfilled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    items: Mapped[list["RequestItemORM"]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RequestItemORM.position",
    )


class RequestItemORM(Base):
    __tablename__ = "request_items"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    request_id: Mapped[str] = mapped_column(String, ForeignKey("requests.id"), nullable=False, index=True)
    equipment_id: Mapped[str] = mapped_column(String, ForeignKey("equipment.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    request: Mapped[RequestORM] = relationship(back_populates="items")
    equipment: Mapped[EquipmentORM] = relationship(lazy="joined")


class BorrowRecordORM(Base):
    __tablename__ = "borrow_history"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    request_id: Mapped[str | None] = mapped_column(String, ForeignKey("requests.id"), nullable=True, index=True)

    name: Mapped[str] = mapped_column(String, nullable=False)
    phone: Mapped[str] = mapped_column(String, nullable=False, index=True)
    equipment_id: Mapped[str] = mapped_column(String, ForeignKey("equipment.id"), nullable=False, index=True)
    equipment_name: Mapped[str] = mapped_column(String, nullable=False)
    city_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_consumable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(String, nullable=False, default="borrowed", index=True)
    borrow_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    return_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    equipment_status: Mapped[str | None] = mapped_column(String, nullable=True)
    faulty_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_by: Mapped[str | None] = mapped_column(String, nullable=True)

    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_reminder_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class ActivityLogORM(Base):
    __tablename__ = "activity_log"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    city_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    manager_name: Mapped[str] = mapped_column(String, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
