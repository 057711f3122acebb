from datetime import timedelta

from sqlalchemy import select

import activity
import borrow_lifecycle
import request_lifecycle
from models import BorrowerIn, RequestCreate, RequestItemIn
from notifications import IntentKind
from orm import BorrowRecordORM, InventoryLineORM, RequestORM
from results import Err, Expired, InsufficientStock, InvalidStateTransition, NotFound, Ok, ValidationError
from settings import Settings
from states import RequestStatus


def _request(db, lines, *, now, phone="050-111-2222", dispatcher=None):
    body = RequestCreate(
        name="Dana",
        phone=phone,
        city_id="haifa",
        call_id="call-17",
        items=[RequestItemIn(equipment_id=l.equipment_id, quantity=q) for l, q in lines],
    )
    result = request_lifecycle.create_request(db, body, now=now, dispatcher=dispatcher)
    assert isinstance(result, Ok), result
    return result.value


def _approved(db, lines, *, now, dispatcher=None):
    req = _request(db, lines, now=now)
    issued = request_lifecycle.approve_request(db, req.id, "Avi", now=now, dispatcher=dispatcher)
    assert isinstance(issued, Ok), issued
    return req, issued.value


def _quantity(db, line_id):
    return db.execute(select(InventoryLineORM.quantity).where(InventoryLineORM.id == line_id)).scalar_one()


def test_create_request_is_pending_without_token(db_session, make_line, now, dispatcher):
    radio = make_line("Radio", 1)
    req = _request(db_session, [(radio, 1)], now=now, dispatcher=dispatcher)

    assert req.status == RequestStatus.PENDING
    assert req.requester_phone == "0501112222"
    assert req.expires_at is None
    assert [i.equipment_name for i in req.items] == ["Radio"]
    assert _quantity(db_session, radio.id) == 1
    assert dispatcher.kinds() == [IntentKind.REQUEST_CREATED]


def test_create_request_validates_items(db_session, make_line, now):
    radio = make_line("Radio", 1)
    body = RequestCreate(
        name="Dana",
        phone="0501112222",
        city_id="haifa",
        items=[RequestItemIn(equipment_id=radio.equipment_id), RequestItemIn(equipment_id=radio.equipment_id)],
    )
    dup = request_lifecycle.create_request(db_session, body, now=now)
    assert isinstance(dup.error, ValidationError)

    body = RequestCreate(name="Dana", phone="0501112222", city_id="haifa", items=[RequestItemIn(equipment_id="missing")])
    assert isinstance(request_lifecycle.create_request(db_session, body, now=now).error, NotFound)

    body = RequestCreate(name="", phone="0501112222", city_id="haifa", items=[RequestItemIn(equipment_id=radio.equipment_id)])
    assert isinstance(request_lifecycle.create_request(db_session, body, now=now).error, ValidationError)


def test_full_request_to_return_scenario(db_session, make_line, now, dispatcher):
    radio = make_line("Radio", 1)
    bandage = make_line("Bandage", 10, is_consumable=True)
    req = _request(db_session, [(radio, 1), (bandage, 3)], now=now)

    issued = request_lifecycle.approve_request(db_session, req.id, "Avi", now=now, dispatcher=dispatcher)
    assert isinstance(issued, Ok)
    assert issued.value.expires_at == now + timedelta(minutes=30)
    stored = db_session.get(RequestORM, req.id)
    assert stored.token_hash != issued.value.token
    approved_intent = dispatcher.intents[-1]
    assert approved_intent.kind == IntentKind.REQUEST_APPROVED
    assert approved_intent.payload["token"] == issued.value.token
    assert approved_intent.recipient_phone == "0501112222"

    later = now + timedelta(minutes=10)
    picked = request_lifecycle.confirm_pickup(db_session, issued.value.token, now=later, dispatcher=dispatcher)
    assert isinstance(picked, Ok), picked
    assert picked.value.request.status == RequestStatus.FULFILLED
    assert len(picked.value.records) == 2
    assert _quantity(db_session, radio.id) == 0
    assert _quantity(db_session, bandage.id) == 7

    by_name = {r.equipment_name: r for r in picked.value.records}
    assert by_name["Radio"].status == "borrowed"
    assert by_name["Bandage"].status == "returned"
    assert by_name["Bandage"].return_date == later

    # the spent token no longer verifies
    again = request_lifecycle.verify_request_token(db_session, issued.value.token, now=later)
    assert isinstance(again.error, NotFound)

    record_id = by_name["Radio"].id
    assert borrow_lifecycle.mark_returned_by_borrower(db_session, record_id, "working", now=later).ok
    closed = borrow_lifecycle.confirm_return(db_session, record_id, "Avi", now=later)
    assert isinstance(closed, Ok)
    assert closed.value.status == "returned"
    assert closed.value.confirmed_by == "Avi"
    assert _quantity(db_session, radio.id) == 1
    assert _quantity(db_session, bandage.id) == 7

    kinds = dispatcher.kinds()
    assert IntentKind.REQUEST_FULFILLED in kinds
    assert IntentKind.STOCK_LOW in kinds  # the radio line hit zero


def test_token_valid_until_expiry_boundary(db_session, make_line, now):
    radio = make_line("Radio", 1)
    _, issued = _approved(db_session, [(radio, 1)], now=now)
    expires_at = issued.expires_at

    ok = request_lifecycle.verify_request_token(db_session, issued.token, now=expires_at - timedelta(seconds=1))
    assert isinstance(ok, Ok)

    late = request_lifecycle.verify_request_token(db_session, issued.token, now=expires_at + timedelta(seconds=1))
    assert isinstance(late.error, Expired)

    db_session.expire_all()
    assert db_session.get(RequestORM, issued.request_id).status == RequestStatus.EXPIRED.value

    # once expired it stays expired and cannot be picked up
    still = request_lifecycle.verify_request_token(db_session, issued.token, now=expires_at - timedelta(seconds=1))
    assert isinstance(still.error, Expired)
    fulfil = request_lifecycle.fulfill_request(db_session, issued.request_id, now=expires_at)
    assert isinstance(fulfil.error, InvalidStateTransition)


def test_fulfill_after_expiry_marks_request_expired(db_session, make_line, now):
    radio = make_line("Radio", 1)
    _, issued = _approved(db_session, [(radio, 1)], now=now)

    result = request_lifecycle.fulfill_request(db_session, issued.request_id, now=now + timedelta(minutes=31))
    assert isinstance(result.error, Expired)
    assert _quantity(db_session, radio.id) == 1
    db_session.expire_all()
    assert db_session.get(RequestORM, issued.request_id).status == RequestStatus.EXPIRED.value


def test_verify_rejects_unknown_and_blank_tokens(db_session):
    assert isinstance(request_lifecycle.verify_request_token(db_session, "not-a-token").error, NotFound)
    assert isinstance(request_lifecycle.verify_request_token(db_session, "  ").error, ValidationError)


def test_cancelled_token_does_not_verify(db_session, make_line, now, dispatcher):
    radio = make_line("Radio", 1)
    req, issued = _approved(db_session, [(radio, 1)], now=now)

    cancelled = request_lifecycle.cancel_token(db_session, req.id, "Avi", "borrower called", now=now, dispatcher=dispatcher)
    assert cancelled.value.status == RequestStatus.CANCELLED
    assert cancelled.value.rejected_reason == "borrower called"
    assert dispatcher.kinds()[-1] == IntentKind.TOKEN_CANCELLED

    result = request_lifecycle.verify_request_token(db_session, issued.token, now=now)
    assert isinstance(result.error, NotFound)

    entries = activity.list_activity(db_session, "haifa", action=activity.TOKEN_CANCELLED).value
    assert len(entries) == 1
    assert entries[0].manager_name == "Avi"


def test_illegal_transitions_are_refused(db_session, make_line, now):
    radio = make_line("Radio", 1)
    req = _request(db_session, [(radio, 1)], now=now)

    # pending requests have no token to cancel, extend or re-issue
    assert isinstance(request_lifecycle.cancel_token(db_session, req.id, "Avi", now=now).error, InvalidStateTransition)
    assert isinstance(request_lifecycle.extend_token(db_session, req.id, 10, "Avi", now=now).error, InvalidStateTransition)
    assert isinstance(request_lifecycle.fulfill_request(db_session, req.id, now=now).error, InvalidStateTransition)

    rejected = request_lifecycle.reject_request(db_session, req.id, "Avi", "no stock for you", now=now)
    assert rejected.value.status == RequestStatus.REJECTED

    again = request_lifecycle.approve_request(db_session, req.id, "Avi", now=now)
    assert isinstance(again, Err)
    assert isinstance(again.error, InvalidStateTransition)
    assert again.error.current == "rejected"
    assert again.error.attempted == "approved"


def test_approve_requires_manager_and_rechecks_stock(db_session, make_line, now):
    radio = make_line("Radio", 1)
    req = _request(db_session, [(radio, 1)], now=now)

    assert isinstance(request_lifecycle.approve_request(db_session, req.id, " ", now=now).error, ValidationError)
    assert isinstance(request_lifecycle.approve_request(db_session, "missing", "Avi", now=now).error, NotFound)

    taken = borrow_lifecycle.direct_borrow(db_session, BorrowerIn(name="Yossi", phone="0509999999"), "haifa", radio.equipment_id, now=now)
    assert taken.ok

    result = request_lifecycle.approve_request(db_session, req.id, "Avi", now=now)
    assert isinstance(result.error, InsufficientStock)
    db_session.expire_all()
    assert db_session.get(RequestORM, req.id).status == RequestStatus.PENDING.value


def test_extend_is_additive_from_stored_expiry(db_session, make_line, now):
    radio = make_line("Radio", 1)
    req, issued = _approved(db_session, [(radio, 1)], now=now)

    first = request_lifecycle.extend_token(db_session, req.id, 10, "Avi", now=now + timedelta(minutes=5))
    assert first.value.expires_at == issued.expires_at + timedelta(minutes=10)
    second = request_lifecycle.extend_token(db_session, req.id, 10, "Avi", now=now + timedelta(minutes=6))
    assert second.value.expires_at == issued.expires_at + timedelta(minutes=20)

    # the token itself is unchanged
    assert request_lifecycle.verify_request_token(db_session, issued.token, now=now + timedelta(minutes=45)).ok

    assert isinstance(request_lifecycle.extend_token(db_session, req.id, 0, "Avi", now=now).error, ValidationError)
    assert isinstance(request_lifecycle.extend_token(db_session, req.id, -5, "Avi", now=now).error, ValidationError)


def test_extend_respects_configured_cap(db_session, make_line, now):
    radio = make_line("Radio", 1)
    req, issued = _approved(db_session, [(radio, 1)], now=now)
    capped = Settings(max_token_window_minutes=40)

    ok = request_lifecycle.extend_token(db_session, req.id, 10, "Avi", settings=capped, now=now)
    assert ok.value.expires_at == now + timedelta(minutes=40)

    over = request_lifecycle.extend_token(db_session, req.id, 1, "Avi", settings=capped, now=now)
    assert isinstance(over.error, ValidationError)
    db_session.expire_all()
    assert db_session.get(RequestORM, req.id).expires_at == now + timedelta(minutes=40)


def test_extend_after_expiry_is_refused(db_session, make_line, now):
    radio = make_line("Radio", 1)
    req, issued = _approved(db_session, [(radio, 1)], now=now)

    result = request_lifecycle.extend_token(db_session, req.id, 10, "Avi", now=issued.expires_at + timedelta(seconds=1))
    assert isinstance(result.error, Expired)


def test_regenerate_replaces_the_token(db_session, make_line, now, dispatcher):
    radio = make_line("Radio", 1)
    req, old = _approved(db_session, [(radio, 1)], now=now)

    later = now + timedelta(minutes=20)
    new = request_lifecycle.regenerate_token(db_session, req.id, "Avi", now=later, dispatcher=dispatcher)
    assert isinstance(new, Ok)
    assert new.value.token != old.token
    assert new.value.expires_at == later + timedelta(minutes=30)
    assert dispatcher.kinds()[-1] == IntentKind.TOKEN_REISSUED

    assert isinstance(request_lifecycle.verify_request_token(db_session, old.token, now=later).error, NotFound)
    assert request_lifecycle.verify_request_token(db_session, new.value.token, now=later).ok


def test_fulfill_rolls_back_everything_on_insufficient_stock(db_session, make_line, now):
    radio = make_line("Radio", 1)
    bandage = make_line("Bandage", 10, is_consumable=True)
    stretcher = make_line("Stretcher", 1)
    req, issued = _approved(db_session, [(radio, 1), (bandage, 2), (stretcher, 1)], now=now)

    # someone walks off with the last stretcher after approval
    taken = borrow_lifecycle.direct_borrow(db_session, BorrowerIn(name="Yossi", phone="0509999999"), "haifa", stretcher.equipment_id, now=now)
    assert taken.ok

    result = request_lifecycle.fulfill_request(db_session, req.id, now=now + timedelta(minutes=1))
    assert isinstance(result.error, InsufficientStock)

    db_session.expire_all()
    assert _quantity(db_session, radio.id) == 1
    assert _quantity(db_session, bandage.id) == 10
    assert db_session.get(RequestORM, req.id).status == RequestStatus.APPROVED.value
    records = db_session.execute(select(BorrowRecordORM).where(BorrowRecordORM.request_id == req.id)).scalars().all()
    assert records == []


def test_fulfill_twice_is_refused(db_session, make_line, now):
    bandage = make_line("Bandage", 10, is_consumable=True)
    req, issued = _approved(db_session, [(bandage, 2)], now=now)

    assert request_lifecycle.fulfill_request(db_session, req.id, now=now).ok
    second = request_lifecycle.fulfill_request(db_session, req.id, now=now)
    assert isinstance(second.error, InvalidStateTransition)
    assert _quantity(db_session, bandage.id) == 8


def test_single_jack_round_trip(db_session, make_line, now):
    jack = make_line("Jack", 3, city_id="C")
    body = RequestCreate(name="Dana", phone="0501112222", city_id="C", items=[RequestItemIn(equipment_id=jack.equipment_id)])
    req = request_lifecycle.create_request(db_session, body, now=now).value
    issued = request_lifecycle.approve_request(db_session, req.id, "Avi", now=now).value
    assert issued.expires_at == now + timedelta(minutes=30)

    verified = request_lifecycle.verify_request_token(db_session, issued.token, now=now)
    assert [(i.equipment_name, i.quantity) for i in verified.value.items] == [("Jack", 1)]

    done = request_lifecycle.fulfill_request(db_session, req.id, now=now).value
    assert _quantity(db_session, jack.id) == 2
    assert [r.status for r in done.records] == ["borrowed"]

    record_id = done.records[0].id
    assert borrow_lifecycle.mark_returned_by_borrower(db_session, record_id, "working", now=now).value.status == "pending_approval"
    assert borrow_lifecycle.confirm_return(db_session, record_id, "Avi", now=now).value.status == "returned"
    assert _quantity(db_session, jack.id) == 3
