"""Borrower requests: approval, pickup tokens and fulfilment.

    pending --approve--> approved --fulfil--> fulfilled
       |                    |--cancel--> cancelled
       '--reject--> rejected '--(time)--> expired

Expiry is lazy: an approved request past ``expires_at`` is flipped to
``expired`` by whichever call notices it first.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

import activity
import inventory
import tokens
from borrow_lifecycle import record_fields
from crud import (
    _record_to_schema,
    _request_to_schema,
    find_line,
    find_request_by_hash,
    persist,
    store_call,
    utcnow,
)
from filter_helpers import blank_to_none, normalize_phone
from models import Fulfillment, Request, RequestCreate, TokenIssued
from notifications import IntentKind, NotificationDispatcher, NotificationIntent, notify
from orm import BorrowRecordORM, RequestItemORM, RequestORM
from results import (
    CabinetError,
    Err,
    Expired,
    InvalidStateTransition,
    NotFound,
    Ok,
    Result,
    ValidationError,
)
from settings import DEFAULT_SETTINGS, Settings
from states import RequestStatus, check_request_transition

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "token cancelled by manager"


def _require(r: RequestORM, target: RequestStatus, allowed: RequestStatus) -> Optional[InvalidStateTransition]:
    problem = check_request_transition(r.status, target)
    if problem is None and r.status != allowed.value:
        problem = InvalidStateTransition(
            f"request is {r.status}; only {allowed.value} requests can become {target.value}",
            current=r.status,
            attempted=target.value,
        )
    return problem


def _cas(db: Session, request_id: str, expected: RequestStatus, **values: Any) -> bool:
    result = db.execute(
        update(RequestORM)
        .where(RequestORM.id == request_id, RequestORM.status == expected.value)
        .values(**values)
    )
    return result.rowcount == 1


def _expire(db: Session, r: RequestORM, now: datetime, *, commit: bool) -> Err:
    if _cas(db, r.id, RequestStatus.APPROVED, status=RequestStatus.EXPIRED.value, updated_at=now):
        persist(db, commit=commit)
        logger.info("request expired request_id=%s expires_at=%s", r.id, r.expires_at)
    return Err(Expired("the pickup token has expired"))


def _manager(manager_name: Optional[str]) -> Optional[str]:
    return blank_to_none(manager_name)


def _check_items(db: Session, r: RequestORM) -> Optional[CabinetError]:
    for item in r.items:
        line = find_line(db, r.city_id, item.equipment_id)
        problem = inventory.check_availability(line, item.quantity, label=item.equipment.name)
        if problem is not None:
            return problem
    return None


@store_call
def create_request(
    db: Session,
    body: RequestCreate,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[Request, CabinetError]:
    """Record a pending request after a soft availability check. Nothing is reserved."""
    name = (body.name or "").strip()
    phone = normalize_phone(body.phone)
    city_id = (body.city_id or "").strip()
    if not name or not phone:
        return Err(ValidationError("requester name and phone are required"))
    if not city_id:
        return Err(ValidationError("city_id is required"))
    if not body.items:
        return Err(ValidationError("a request needs at least one item"))

    seen: set[str] = set()
    for item in body.items:
        if item.equipment_id in seen:
            return Err(ValidationError("each equipment may appear only once per request"))
        seen.add(item.equipment_id)
        line = find_line(db, city_id, item.equipment_id)
        problem = inventory.check_availability(line, item.quantity)
        if problem is not None:
            return Err(problem)

    now = now or utcnow()
    r = RequestORM(
        id=str(uuid4()),
        city_id=city_id,
        requester_name=name,
        requester_phone=phone,
        call_id=blank_to_none(body.call_id),
        status=RequestStatus.PENDING.value,
        token_hash=None,
        expires_at=None,
        created_at=now,
        updated_at=now,
    )
    r.items = [
        RequestItemORM(id=str(uuid4()), equipment_id=item.equipment_id, quantity=item.quantity, position=idx)
        for idx, item in enumerate(body.items)
    ]
    db.add(r)
    persist(db, commit=commit)
    if commit:
        db.refresh(r)

    logger.info("request created request_id=%s city_id=%s items=%s", r.id, city_id, len(body.items))
    notify(dispatcher, NotificationIntent(
        kind=IntentKind.REQUEST_CREATED,
        city_id=city_id,
        payload={"request_id": r.id, "requester_name": name, "items_count": len(body.items)},
    ))
    return Ok(_request_to_schema(r))


@store_call
def approve_request(
    db: Session,
    request_id: str,
    manager_name: str,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[TokenIssued, CabinetError]:
    """Approve a pending request and mint its pickup token.

    The plaintext token is returned and handed to the dispatcher; only its
    hash is stored.
    """
    manager = _manager(manager_name)
    if not manager:
        return Err(ValidationError("manager_name is required"))

    r = db.get(RequestORM, request_id)
    if r is None:
        return Err(NotFound("request not found"))
    problem = _require(r, RequestStatus.APPROVED, RequestStatus.PENDING)
    if problem is not None:
        return Err(problem)

    problem = _check_items(db, r)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    issued = tokens.create_request_token(now)
    try:
        approved = _cas(
            db,
            r.id,
            RequestStatus.PENDING,
            status=RequestStatus.APPROVED.value,
            token_hash=issued.token_hash,
            expires_at=issued.expires_at,
            token_issued_at=now,
            approved_by=manager,
            approved_at=now,
            updated_at=now,
        )
        if not approved:
            db.rollback()
            return Err(InvalidStateTransition("request changed concurrently", attempted=RequestStatus.APPROVED.value))

        activity.log_activity(
            db,
            city_id=r.city_id,
            manager_name=manager,
            action=activity.REQUEST_APPROVED,
            details={
                "request_id": r.id,
                "requester_name": r.requester_name,
                "requester_phone": r.requester_phone,
                "items_count": len(r.items),
            },
        )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    logger.info("request approved request_id=%s manager=%s expires_at=%s", r.id, manager, issued.expires_at.isoformat())
    notify(dispatcher, NotificationIntent(
        kind=IntentKind.REQUEST_APPROVED,
        city_id=r.city_id,
        recipient_phone=r.requester_phone,
        payload={"request_id": r.id, "token": issued.token, "expires_at": issued.expires_at.isoformat()},
    ))
    return Ok(TokenIssued(request_id=r.id, token=issued.token, expires_at=issued.expires_at))


@store_call
def reject_request(
    db: Session,
    request_id: str,
    manager_name: str,
    reason: Optional[str] = None,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[Request, CabinetError]:
    manager = _manager(manager_name)
    if not manager:
        return Err(ValidationError("manager_name is required"))

    r = db.get(RequestORM, request_id)
    if r is None:
        return Err(NotFound("request not found"))
    problem = _require(r, RequestStatus.REJECTED, RequestStatus.PENDING)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    reason = blank_to_none(reason)
    try:
        if not _cas(db, r.id, RequestStatus.PENDING, status=RequestStatus.REJECTED.value, rejected_reason=reason, updated_at=now):
            db.rollback()
            return Err(InvalidStateTransition("request changed concurrently", attempted=RequestStatus.REJECTED.value))
        activity.log_activity(
            db,
            city_id=r.city_id,
            manager_name=manager,
            action=activity.REQUEST_REJECTED,
            details={"request_id": r.id, "requester_name": r.requester_name, "reason": reason},
        )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    db.refresh(r)
    logger.info("request rejected request_id=%s manager=%s", r.id, manager)
    notify(dispatcher, NotificationIntent(
        kind=IntentKind.REQUEST_REJECTED,
        city_id=r.city_id,
        recipient_phone=r.requester_phone,
        payload={"request_id": r.id, "reason": reason},
    ))
    return Ok(_request_to_schema(r))


@store_call
def verify_request_token(
    db: Session,
    token: str,
    *,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[Request, CabinetError]:
    """Look a request up by its pickup token.

    Only approved, unexpired requests verify. Cancelled, rejected and
    fulfilled requests answer NotFound so a spent token reveals nothing.
    """
    if not isinstance(token, str) or not token.strip():
        return Err(ValidationError("token is required"))
    token = token.strip()

    r = find_request_by_hash(db, tokens.hash_token(token))
    if r is None or not tokens.verify_token(token, r.token_hash):
        return Err(NotFound("request not found"))
    if r.status == RequestStatus.EXPIRED.value:
        return Err(Expired("the pickup token has expired"))
    if r.status != RequestStatus.APPROVED.value:
        return Err(NotFound("request not found"))

    now = now or utcnow()
    if tokens.is_expired(r.expires_at, now):
        return _expire(db, r, now, commit=commit)
    return Ok(_request_to_schema(r))


@store_call
def cancel_token(
    db: Session,
    request_id: str,
    manager_name: str,
    reason: Optional[str] = None,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[Request, CabinetError]:
    manager = _manager(manager_name)
    if not manager:
        return Err(ValidationError("manager_name is required"))

    r = db.get(RequestORM, request_id)
    if r is None:
        return Err(NotFound("request not found"))
    problem = _require(r, RequestStatus.CANCELLED, RequestStatus.APPROVED)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    reason = blank_to_none(reason) or DEFAULT_CANCEL_REASON
    try:
        if not _cas(db, r.id, RequestStatus.APPROVED, status=RequestStatus.CANCELLED.value, rejected_reason=reason, updated_at=now):
            db.rollback()
            return Err(InvalidStateTransition("request changed concurrently", attempted=RequestStatus.CANCELLED.value))
        activity.log_activity(
            db,
            city_id=r.city_id,
            manager_name=manager,
            action=activity.TOKEN_CANCELLED,
            details={"request_id": r.id, "requester_name": r.requester_name, "reason": reason},
        )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    db.refresh(r)
    logger.info("token cancelled request_id=%s manager=%s", r.id, manager)
    notify(dispatcher, NotificationIntent(
        kind=IntentKind.TOKEN_CANCELLED,
        city_id=r.city_id,
        recipient_phone=r.requester_phone,
        payload={"request_id": r.id, "reason": reason},
    ))
    return Ok(_request_to_schema(r))


@store_call
def extend_token(
    db: Session,
    request_id: str,
    minutes: int,
    manager_name: str,
    *,
    settings: Settings = DEFAULT_SETTINGS,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[Request, CabinetError]:
    """Push ``expires_at`` out by ``minutes`` from its stored value.

    The write is conditional on the expiry it read, so two concurrent
    extensions cannot both apply on top of the same base.
    """
    manager = _manager(manager_name)
    if not manager:
        return Err(ValidationError("manager_name is required"))
    if not isinstance(minutes, int) or isinstance(minutes, bool) or minutes <= 0:
        return Err(ValidationError("minutes must be a positive whole number"))

    r = db.get(RequestORM, request_id)
    if r is None:
        return Err(NotFound("request not found"))
    problem = _require(r, RequestStatus.APPROVED, RequestStatus.APPROVED)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    if tokens.is_expired(r.expires_at, now):
        return _expire(db, r, now, commit=commit)

    current = r.expires_at
    new_expiry = current + timedelta(minutes=minutes)
    cap = settings.max_token_window_minutes
    issued_at = r.token_issued_at or r.approved_at
    if cap is not None and issued_at is not None and new_expiry - issued_at > timedelta(minutes=cap):
        return Err(ValidationError(f"token validity cannot exceed {cap} minutes in total"))

    try:
        result = db.execute(
            update(RequestORM)
            .where(
                RequestORM.id == r.id,
                RequestORM.status == RequestStatus.APPROVED.value,
                RequestORM.expires_at == current,
            )
            .values(expires_at=new_expiry, updated_at=now)
        )
        if result.rowcount != 1:
            db.rollback()
            return Err(InvalidStateTransition("request changed concurrently; read it again", current=r.status))
        activity.log_activity(
            db,
            city_id=r.city_id,
            manager_name=manager,
            action=activity.TOKEN_EXTENDED,
            details={
                "request_id": r.id,
                "requester_name": r.requester_name,
                "minutes_added": minutes,
                "new_expiry": new_expiry.isoformat(),
            },
        )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    db.refresh(r)
    logger.info("token extended request_id=%s minutes=%s new_expiry=%s", r.id, minutes, new_expiry.isoformat())
    return Ok(_request_to_schema(r))


@store_call
def regenerate_token(
    db: Session,
    request_id: str,
    manager_name: str,
    *,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[TokenIssued, CabinetError]:
    """Re-issue the token of an approved request. The previous token stops verifying."""
    manager = _manager(manager_name)
    if not manager:
        return Err(ValidationError("manager_name is required"))

    r = db.get(RequestORM, request_id)
    if r is None:
        return Err(NotFound("request not found"))
    problem = _require(r, RequestStatus.APPROVED, RequestStatus.APPROVED)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    if tokens.is_expired(r.expires_at, now):
        return _expire(db, r, now, commit=commit)

    issued = tokens.create_request_token(now)
    try:
        if not _cas(
            db,
            r.id,
            RequestStatus.APPROVED,
            token_hash=issued.token_hash,
            expires_at=issued.expires_at,
            token_issued_at=now,
            updated_at=now,
        ):
            db.rollback()
            return Err(InvalidStateTransition("request changed concurrently", attempted=RequestStatus.APPROVED.value))
        activity.log_activity(
            db,
            city_id=r.city_id,
            manager_name=manager,
            action=activity.TOKEN_REGENERATED,
            details={"request_id": r.id, "requester_name": r.requester_name},
        )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    logger.info("token regenerated request_id=%s manager=%s", r.id, manager)
    notify(dispatcher, NotificationIntent(
        kind=IntentKind.TOKEN_REISSUED,
        city_id=r.city_id,
        recipient_phone=r.requester_phone,
        payload={"request_id": r.id, "token": issued.token, "expires_at": issued.expires_at.isoformat()},
    ))
    return Ok(TokenIssued(request_id=r.id, token=issued.token, expires_at=issued.expires_at))


@store_call
def fulfill_request(
    db: Session,
    request_id: str,
    *,
    settings: Settings = DEFAULT_SETTINGS,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> Result[Fulfillment, CabinetError]:
    """Hand over every item of an approved request, or none of them.

    The request is claimed first with a conditional ``approved -> fulfilled``
    write, then each item is reserved and gets its borrow record. Any failure
    rolls the whole unit back, including the claim.
    """
    r = db.get(RequestORM, request_id)
    if r is None:
        return Err(NotFound("request not found"))
    problem = _require(r, RequestStatus.FULFILLED, RequestStatus.APPROVED)
    if problem is not None:
        return Err(problem)

    now = now or utcnow()
    if tokens.is_expired(r.expires_at, now):
        return _expire(db, r, now, commit=commit)

    records: list[BorrowRecordORM] = []
    low_stock: list[dict[str, Any]] = []
    try:
        if not _cas(db, r.id, RequestStatus.APPROVED, status=RequestStatus.FULFILLED.value, fulfilled_at=now, updated_at=now):
            db.rollback()
            return Err(InvalidStateTransition("request was already picked up or changed", attempted=RequestStatus.FULFILLED.value))

        for item in r.items:
            line = find_line(db, r.city_id, item.equipment_id)
            if line is None:
                db.rollback()
                return Err(NotFound(f"{item.equipment.name} is no longer stocked in this city"))
            line_id = line.id
            reserved = inventory.check_and_reserve(db, line_id, item.quantity, now=now)
            if isinstance(reserved, Err):
                db.rollback()
                logger.info("fulfilment rolled back request_id=%s line_id=%s reason=%s", request_id, line_id, reserved.error.code)
                return reserved

            record = BorrowRecordORM(**record_fields(
                name=r.requester_name,
                phone=r.requester_phone,
                line=line,
                quantity=item.quantity,
                now=now,
                request_id=r.id,
            ))
            db.add(record)
            records.append(record)
            if reserved.value.remaining <= settings.low_stock_threshold:
                low_stock.append({
                    "line_id": line.id,
                    "equipment_name": line.equipment.name,
                    "remaining": reserved.value.remaining,
                })

        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    db.refresh(r)
    logger.info("request fulfilled request_id=%s records=%s", r.id, len(records))
    notify(dispatcher, NotificationIntent(
        kind=IntentKind.REQUEST_FULFILLED,
        city_id=r.city_id,
        recipient_phone=r.requester_phone,
        payload={"request_id": r.id, "items_count": len(records)},
    ))
    for entry in low_stock:
        notify(dispatcher, NotificationIntent(kind=IntentKind.STOCK_LOW, city_id=r.city_id, payload=entry))

    return Ok(Fulfillment(
        request=_request_to_schema(r),
        records=[_record_to_schema(b) for b in records],
    ))


def confirm_pickup(
    db: Session,
    token: str,
    *,
    settings: Settings = DEFAULT_SETTINGS,
    dispatcher: Optional[NotificationDispatcher] = None,
    now: Optional[datetime] = None,
) -> Result[Fulfillment, CabinetError]:
    verified = verify_request_token(db, token, now=now)
    if isinstance(verified, Err):
        return verified
    return fulfill_request(db, verified.value.id, settings=settings, dispatcher=dispatcher, now=now)


@store_call
def get_request(db: Session, request_id: str) -> Result[Request, CabinetError]:
    row = db.get(RequestORM, request_id)
    if row is None:
        return Err(NotFound("request not found"))
    return Ok(_request_to_schema(row))
