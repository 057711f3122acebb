from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
import request_lifecycle
from dependencies import get_db, get_dispatcher, get_settings
from filter_helpers import normalize_request_status
from models import (
    CancelTokenIn,
    ExtendTokenIn,
    Fulfillment,
    ManagerAction,
    RejectIn,
    Request,
    RequestCreate,
    TokenIn,
    TokenIssued,
)
from notifications import NotificationDispatcher
from settings import Settings

from .responses import unwrap

router = APIRouter()


@router.post("/requests", response_model=Request, status_code=201)
def create_request_api(
    body: RequestCreate,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(request_lifecycle.create_request(db, body, dispatcher=dispatcher))


@router.get("/requests", response_model=list[Request])
def list_requests_api(
    city_id: str,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return unwrap(crud.list_requests(db, city_id, normalize_request_status(status)))


@router.post("/requests/verify", response_model=Request)
def verify_token_api(
    body: TokenIn,
    db: Session = Depends(get_db),
):
    return unwrap(request_lifecycle.verify_request_token(db, body.token))


@router.post("/requests/pickup", response_model=Fulfillment)
def confirm_pickup_api(
    body: TokenIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(request_lifecycle.confirm_pickup(db, body.token, settings=settings, dispatcher=dispatcher))


@router.get("/requests/{request_id}", response_model=Request)
def get_request_api(
    request_id: str,
    db: Session = Depends(get_db),
):
    return unwrap(request_lifecycle.get_request(db, request_id))


@router.post("/requests/{request_id}/approve", response_model=TokenIssued)
def approve_request_api(
    request_id: str,
    body: ManagerAction,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(request_lifecycle.approve_request(db, request_id, body.manager_name, dispatcher=dispatcher))


@router.post("/requests/{request_id}/reject", response_model=Request)
def reject_request_api(
    request_id: str,
    body: RejectIn,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(request_lifecycle.reject_request(db, request_id, body.manager_name, body.reason, dispatcher=dispatcher))


@router.post("/requests/{request_id}/cancel-token", response_model=Request)
def cancel_token_api(
    request_id: str,
    body: CancelTokenIn,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(request_lifecycle.cancel_token(db, request_id, body.manager_name, body.reason, dispatcher=dispatcher))


@router.post("/requests/{request_id}/extend-token", response_model=Request)
def extend_token_api(
    request_id: str,
    body: ExtendTokenIn,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return unwrap(request_lifecycle.extend_token(db, request_id, body.minutes, body.manager_name, settings=settings))


@router.post("/requests/{request_id}/regenerate-token", response_model=TokenIssued)
def regenerate_token_api(
    request_id: str,
    body: ManagerAction,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(request_lifecycle.regenerate_token(db, request_id, body.manager_name, dispatcher=dispatcher))


@router.post("/requests/{request_id}/fulfill", response_model=Fulfillment)
def fulfill_request_api(
    request_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return unwrap(request_lifecycle.fulfill_request(db, request_id, settings=settings, dispatcher=dispatcher))
