from fastapi import HTTPException

from results import (
    CabinetError,
    Expired,
    InconsistentWrite,
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    Ok,
    Result,
    StoreTimeout,
    ValidationError,
)

STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    NotFound: 404,
    Expired: 410,
    InsufficientStock: 409,
    InvalidStateTransition: 409,
    InconsistentWrite: 500,
    StoreTimeout: 503,
}


def error_detail(error: CabinetError) -> dict:
    detail = {"code": error.code, "message": error.message, "retryable": error.retryable}
    if isinstance(error, InconsistentWrite):
        detail["record_id"] = error.record_id
    if isinstance(error, InsufficientStock):
        detail["available"] = error.available
    return detail


def unwrap(result: Result):
    if isinstance(result, Ok):
        return result.value
    error = result.error
    raise HTTPException(status_code=STATUS_CODES.get(type(error), 400), detail=error_detail(error))
