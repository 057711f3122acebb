from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from states import BorrowStatus, EquipmentCondition, RequestStatus

# ---------- Inventory ----------
class InventoryLineIn(BaseModel):
    city_id: str
    equipment_name: str
    quantity: int = Field(default=0, ge=0)
    is_consumable: bool = False
    equipment_status: EquipmentCondition = EquipmentCondition.WORKING

class InventoryLine(BaseModel):
    id: str
    city_id: str
    equipment_id: str
    equipment_name: str
    quantity: int
    is_consumable: bool
    equipment_status: EquipmentCondition
    version: int
    updated_at: datetime

class Reservation(BaseModel):
    line_id: str
    amount: int
    remaining: int
    is_consumable: bool

# ---------- Requests ----------
class BorrowerIn(BaseModel):
    name: str
    phone: str

class RequestItemIn(BaseModel):
    equipment_id: str
    quantity: int = 1

class RequestCreate(BaseModel):
    name: str
    phone: str
    city_id: str
    call_id: Optional[str] = None
    items: list[RequestItemIn]

class RequestItem(BaseModel):
    equipment_id: str
    equipment_name: str
    quantity: int

class Request(BaseModel):
    id: str
    city_id: str
    requester_name: str
    requester_phone: str
    call_id: Optional[str] = None
    status: RequestStatus
    expires_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    fulfilled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: list[RequestItem] = []

class TokenIssued(BaseModel):
    request_id: str
    token: str
    expires_at: datetime

class ManagerAction(BaseModel):
    manager_name: str

class RejectIn(ManagerAction):
    reason: Optional[str] = None

class CancelTokenIn(ManagerAction):
    reason: Optional[str] = None

class ExtendTokenIn(ManagerAction):
    minutes: int

class TokenIn(BaseModel):
    token: str

# ---------- Borrow records ----------
class BorrowRecord(BaseModel):
    id: str
    request_id: Optional[str] = None
    name: str
    phone: str
    equipment_id: str
    equipment_name: str
    city_id: str
    quantity: int
    is_consumable: bool
    status: BorrowStatus
    borrow_date: datetime
    return_date: Optional[datetime] = None
    equipment_status: Optional[EquipmentCondition] = None
    faulty_notes: Optional[str] = None
    confirmed_by: Optional[str] = None
    needs_reconciliation: bool = False

class Fulfillment(BaseModel):
    request: Request
    records: list[BorrowRecord]

class DirectBorrowItemIn(BaseModel):
    equipment_id: str
    quantity: int = 1

class DirectBorrowIn(BaseModel):
    name: str
    phone: str
    city_id: str
    items: list[DirectBorrowItemIn]

class DirectBorrowResult(BaseModel):
    equipment_id: str
    success: bool
    record_id: Optional[str] = None
    error: Optional[str] = None
    needs_reconciliation: bool = False

class DirectBorrowReport(BaseModel):
    results: list[DirectBorrowResult]
    success_count: int
    fail_count: int

class ReturnIn(BaseModel):
    condition: EquipmentCondition = EquipmentCondition.WORKING
    notes: Optional[str] = None

class OverrideReturnIn(ManagerAction):
    condition: EquipmentCondition = EquipmentCondition.WORKING
    notes: Optional[str] = None

# ---------- Overdue ----------
class OverdueItem(BaseModel):
    id: str
    name: str
    phone: str
    equipment_id: str
    equipment_name: str
    city_id: str
    borrow_date: datetime
    hours_overdue: int

class OverdueReport(BaseModel):
    has_overdue: bool
    overdue_count: int
    overdue_items: list[OverdueItem]
    message: Optional[str] = None

class ReminderResult(BaseModel):
    record_id: str
    phone: str
    equipment_name: str
    status: str  # sent / skipped
    reason: Optional[str] = None

# ---------- Activity ----------
class ActivityEntry(BaseModel):
    id: str
    city_id: str
    manager_name: str
    action: str
    details: Optional[dict] = None
    created_at: datetime
