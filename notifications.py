import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from settings import NotificationConfig

logger = logging.getLogger(__name__)


class IntentKind(str, Enum):
    REQUEST_CREATED = "request_created"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    TOKEN_CANCELLED = "token_cancelled"
    TOKEN_REISSUED = "token_reissued"
    REQUEST_FULFILLED = "request_fulfilled"
    RETURN_REPORTED = "return_reported"
    STOCK_LOW = "stock_low"
    OVERDUE_REMINDER = "overdue_reminder"


# payload keys that must never reach a log line
SECRET_KEYS = frozenset({"token"})


@dataclass(frozen=True)
class NotificationIntent:
    kind: IntentKind
    city_id: str
    recipient_phone: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    def dispatch(self, intent: NotificationIntent) -> None: ...


class LoggingDispatcher:
    def __init__(self, config: NotificationConfig) -> None:
        self.config = config

    def channels(self, intent: NotificationIntent) -> list[str]:
        names = []
        if self.config.push_enabled:
            names.append("push")
        if self.config.whatsapp_enabled and intent.recipient_phone:
            names.append("whatsapp")
        if self.config.email_enabled:
            names.append("email")
        return names

    def dispatch(self, intent: NotificationIntent) -> None:
        channels = self.channels(intent)
        if not channels:
            logger.debug("notification skipped kind=%s city_id=%s (no channel configured)", intent.kind.value, intent.city_id)
            return
        safe = {k: v for k, v in intent.payload.items() if k not in SECRET_KEYS}
        logger.info(
            "notification kind=%s city_id=%s channels=%s payload=%s",
            intent.kind.value,
            intent.city_id,
            ",".join(channels),
            safe,
        )


def notify(dispatcher: Optional[NotificationDispatcher], intent: NotificationIntent) -> None:
    """Hand an intent to the dispatcher; a delivery failure never undoes committed work."""
    if dispatcher is None:
        return
    try:
        dispatcher.dispatch(intent)
    except Exception:
        logger.exception("notification dispatch failed kind=%s city_id=%s", intent.kind.value, intent.city_id)
