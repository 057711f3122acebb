"""Manager audit trail.

Rows are written inside the caller's unit of work so an action and its audit
entry commit (or roll back) together.
"""

from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from crud import store_call, utcnow
from orm import ActivityLogORM
from results import CabinetError, Ok, Result

REQUEST_APPROVED = "request_approved"
REQUEST_REJECTED = "request_rejected"
TOKEN_CANCELLED = "cancel_token"
TOKEN_EXTENDED = "extend_token"
TOKEN_REGENERATED = "token_regenerated"
RETURN_CONFIRMED = "return_processed"
RETURN_OVERRIDDEN = "borrow_status_changed"
RECORD_RECONCILED = "record_reconciled"
INCONSISTENT_WRITE = "inconsistent_write"

SYSTEM_ACTOR = "system"


def log_activity(
    db: Session,
    *,
    city_id: str,
    manager_name: str,
    action: str,
    details: Optional[dict[str, Any]] = None,
) -> ActivityLogORM:
    entry = ActivityLogORM(
        id=str(uuid4()),
        city_id=city_id,
        manager_name=manager_name,
        action=action,
        details=details or None,
        created_at=utcnow(),
    )
    db.add(entry)
    return entry


@store_call
def list_activity(db: Session, city_id: str, *, action: Optional[str] = None, limit: int = 50) -> Result[list[ActivityLogORM], CabinetError]:
    stmt = select(ActivityLogORM).where(ActivityLogORM.city_id == city_id)
    if action:
        stmt = stmt.where(ActivityLogORM.action == action)
    stmt = stmt.order_by(ActivityLogORM.created_at.desc()).limit(limit)
    return Ok(list(db.execute(stmt).scalars().all()))
