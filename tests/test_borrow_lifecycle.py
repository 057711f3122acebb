from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

import activity
import borrow_lifecycle
import crud
import inventory
from models import BorrowerIn
from notifications import IntentKind
from orm import BorrowRecordORM, InventoryLineORM
from results import InconsistentWrite, InsufficientStock, InvalidStateTransition, NotFound, Ok, ValidationError

BORROWER = BorrowerIn(name="Yossi", phone="+972-50-999-9999")


def _quantity(db, line_id):
    return db.execute(select(InventoryLineORM.quantity).where(InventoryLineORM.id == line_id)).scalar_one()


def _borrow(db, line, quantity=1, **kwargs):
    result = borrow_lifecycle.direct_borrow(db, BORROWER, "haifa", line.equipment_id, quantity, **kwargs)
    assert isinstance(result, Ok), result
    return result.value


def test_direct_borrow_non_consumable(db_session, make_line, now):
    radio = make_line("Radio", 2)
    record = _borrow(db_session, radio, now=now)

    assert record.status == "borrowed"
    assert record.phone == "0509999999"
    assert record.return_date is None
    assert record.needs_reconciliation is False
    assert _quantity(db_session, radio.id) == 1


def test_direct_borrow_consumable_is_closed_immediately(db_session, make_line, now, dispatcher):
    bandage = make_line("Bandage", 5, is_consumable=True)
    record = _borrow(db_session, bandage, 5, now=now, dispatcher=dispatcher)

    assert record.status == "returned"
    assert record.return_date == now
    assert _quantity(db_session, bandage.id) == 0
    assert dispatcher.kinds() == [IntentKind.STOCK_LOW]

    # nothing to confirm and nothing goes back to the shelf
    result = borrow_lifecycle.confirm_return(db_session, record.id, "Avi", now=now)
    assert isinstance(result.error, InvalidStateTransition)
    assert _quantity(db_session, bandage.id) == 0


def test_direct_borrow_refusals(db_session, make_line, now):
    radio = make_line("Radio", 1)
    broken = make_line("Oxygen kit", 1, equipment_status="faulty")

    two = borrow_lifecycle.direct_borrow(db_session, BORROWER, "haifa", radio.equipment_id, 2, now=now)
    assert isinstance(two.error, ValidationError)

    faulty = borrow_lifecycle.direct_borrow(db_session, BORROWER, "haifa", broken.equipment_id, now=now)
    assert isinstance(faulty.error, ValidationError)

    elsewhere = borrow_lifecycle.direct_borrow(db_session, BORROWER, "eilat", radio.equipment_id, now=now)
    assert isinstance(elsewhere.error, NotFound)

    anon = borrow_lifecycle.direct_borrow(db_session, BorrowerIn(name="Yossi", phone="--"), "haifa", radio.equipment_id, now=now)
    assert isinstance(anon.error, ValidationError)

    _borrow(db_session, radio, now=now)
    empty = borrow_lifecycle.direct_borrow(db_session, BORROWER, "haifa", radio.equipment_id, now=now)
    assert isinstance(empty.error, InsufficientStock)
    assert len(crud.list_records(db_session, city_id="haifa").value) == 1


def test_borrower_return_then_manager_confirm(db_session, make_line, now, dispatcher):
    radio = make_line("Radio", 1)
    record = _borrow(db_session, radio, now=now)

    later = now + timedelta(hours=2)
    reported = borrow_lifecycle.mark_returned_by_borrower(db_session, record.id, "working", now=later, dispatcher=dispatcher)
    assert reported.value.status == "pending_approval"
    assert reported.value.return_date == later
    # stock only comes back once a manager confirms
    assert _quantity(db_session, radio.id) == 0
    assert dispatcher.kinds()[-1] == IntentKind.RETURN_REPORTED

    twice = borrow_lifecycle.mark_returned_by_borrower(db_session, record.id, "working", now=later)
    assert isinstance(twice.error, InvalidStateTransition)

    assert isinstance(borrow_lifecycle.confirm_return(db_session, record.id, "", now=later).error, ValidationError)

    closed = borrow_lifecycle.confirm_return(db_session, record.id, "Avi", now=later + timedelta(hours=1))
    assert closed.value.status == "returned"
    assert closed.value.return_date == later
    assert _quantity(db_session, radio.id) == 1

    again = borrow_lifecycle.confirm_return(db_session, record.id, "Avi", now=later)
    assert isinstance(again.error, InvalidStateTransition)
    assert _quantity(db_session, radio.id) == 1

    entries = activity.list_activity(db_session, "haifa", action=activity.RETURN_CONFIRMED).value
    assert [e.details["record_id"] for e in entries] == [record.id]


def test_faulty_return_requires_notes(db_session, make_line, now):
    radio = make_line("Radio", 1)
    record = _borrow(db_session, radio, now=now)

    missing = borrow_lifecycle.mark_returned_by_borrower(db_session, record.id, "faulty", "  ", now=now)
    assert isinstance(missing.error, ValidationError)

    bogus = borrow_lifecycle.mark_returned_by_borrower(db_session, record.id, "scratched", now=now)
    assert isinstance(bogus.error, ValidationError)

    reported = borrow_lifecycle.mark_returned_by_borrower(db_session, record.id, "faulty", "antenna snapped", now=now)
    assert reported.value.equipment_status == "faulty"
    assert reported.value.faulty_notes == "antenna snapped"


def test_manager_override_closes_a_borrowed_record(db_session, make_line, now):
    radio = make_line("Radio", 1)
    record = _borrow(db_session, radio, now=now)

    no_notes = borrow_lifecycle.manager_override_return(db_session, record.id, "Avi", "faulty", now=now)
    assert isinstance(no_notes.error, ValidationError)

    closed = borrow_lifecycle.manager_override_return(db_session, record.id, "Avi", "faulty", "cracked screen", now=now)
    assert closed.value.status == "returned"
    assert closed.value.equipment_status == "faulty"
    assert closed.value.return_date == now
    assert _quantity(db_session, radio.id) == 1

    entries = activity.list_activity(db_session, "haifa", action=activity.RETURN_OVERRIDDEN).value
    assert entries[0].details["previous_status"] == "borrowed"


def test_unknown_record(db_session):
    assert isinstance(borrow_lifecycle.mark_returned_by_borrower(db_session, "nope").error, NotFound)
    assert isinstance(borrow_lifecycle.confirm_return(db_session, "nope", "Avi").error, NotFound)
    assert isinstance(borrow_lifecycle.get_borrow_record(db_session, "nope").error, NotFound)


def _boom(*args, **kwargs):
    raise SQLAlchemyError("ledger write failed")


def test_inconsistent_write_keeps_a_flagged_record(db_session, make_line, now, monkeypatch):
    radio = make_line("Radio", 1)
    monkeypatch.setattr(inventory, "check_and_reserve", _boom)

    result = borrow_lifecycle.direct_borrow(db_session, BORROWER, "haifa", radio.equipment_id, now=now)
    assert isinstance(result.error, InconsistentWrite)
    record_id = result.error.record_id

    db_session.expire_all()
    row = db_session.get(BorrowRecordORM, record_id)
    assert row is not None
    assert row.status == "borrowed"
    assert row.needs_reconciliation is True
    assert _quantity(db_session, radio.id) == 1

    audit = activity.list_activity(db_session, "haifa", action=activity.INCONSISTENT_WRITE).value
    assert len(audit) == 1
    assert audit[0].manager_name == activity.SYSTEM_ACTOR
    assert audit[0].details["record_id"] == record_id

    flagged = crud.list_records(db_session, needs_reconciliation=True).value
    assert [r.id for r in flagged] == [record_id]

    monkeypatch.undo()
    reconciled = borrow_lifecycle.reconcile_record(db_session, record_id, "Avi", now=now)
    assert reconciled.value.needs_reconciliation is False
    assert _quantity(db_session, radio.id) == 0

    again = borrow_lifecycle.reconcile_record(db_session, record_id, "Avi", now=now)
    assert isinstance(again.error, InvalidStateTransition)


def test_closing_a_flagged_record_does_not_release_stock(db_session, make_line, now, monkeypatch):
    radio = make_line("Radio", 1)
    monkeypatch.setattr(inventory, "check_and_reserve", _boom)
    result = borrow_lifecycle.direct_borrow(db_session, BORROWER, "haifa", radio.equipment_id, now=now)
    monkeypatch.undo()

    closed = borrow_lifecycle.confirm_return(db_session, result.error.record_id, "Avi", now=now)
    assert closed.value.status == "returned"
    assert closed.value.needs_reconciliation is False
    # the decrement never happened, so the count must not grow past what is on the shelf
    assert _quantity(db_session, radio.id) == 1

