from collections.abc import Generator

from fastapi import Request
from sqlalchemy.orm import Session

from db import SessionLocal
from notifications import NotificationDispatcher
from settings import Settings


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher
