from enum import Enum
from typing import Optional

from results import InvalidStateTransition


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FULFILLED = "fulfilled"


class BorrowStatus(str, Enum):
    BORROWED = "borrowed"
    PENDING_APPROVAL = "pending_approval"
    RETURNED = "returned"


class EquipmentCondition(str, Enum):
    WORKING = "working"
    FAULTY = "faulty"


# approved -> approved is a token re-issue
REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset({
        RequestStatus.APPROVED,
        RequestStatus.FULFILLED,
        RequestStatus.CANCELLED,
        RequestStatus.EXPIRED,
    }),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
    RequestStatus.FULFILLED: frozenset(),
}

BORROW_TRANSITIONS: dict[BorrowStatus, frozenset[BorrowStatus]] = {
    BorrowStatus.BORROWED: frozenset({BorrowStatus.PENDING_APPROVAL, BorrowStatus.RETURNED}),
    BorrowStatus.PENDING_APPROVAL: frozenset({BorrowStatus.RETURNED}),
    BorrowStatus.RETURNED: frozenset(),
}

ACTIVE_BORROW_STATUSES = (BorrowStatus.BORROWED.value, BorrowStatus.PENDING_APPROVAL.value)


def check_request_transition(current: str, target: RequestStatus) -> Optional[InvalidStateTransition]:
    """Return an error when ``current -> target`` is not in the request table."""
    try:
        status = RequestStatus(current)
    except ValueError:
        return InvalidStateTransition(f"unknown request status {current!r}", current=current, attempted=target.value)
    if target in REQUEST_TRANSITIONS[status]:
        return None
    return InvalidStateTransition(
        f"request cannot move from {status.value} to {target.value}",
        current=status.value,
        attempted=target.value,
    )


def check_borrow_transition(current: str, target: BorrowStatus) -> Optional[InvalidStateTransition]:
    try:
        status = BorrowStatus(current)
    except ValueError:
        return InvalidStateTransition(f"unknown borrow status {current!r}", current=current, attempted=target.value)
    if target in BORROW_TRANSITIONS[status]:
        return None
    return InvalidStateTransition(
        f"borrow record cannot move from {status.value} to {target.value}",
        current=status.value,
        attempted=target.value,
    )

