import os
from typing import Optional

from pydantic import BaseModel, ConfigDict


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class NotificationConfig(BaseModel):
    """Which delivery channels are wired up. Handed to the dispatcher when it is built."""

    model_config = ConfigDict(frozen=True)

    push_enabled: bool = False
    whatsapp_enabled: bool = False
    email_enabled: bool = False
    app_url: str = "http://localhost:3000"

    @property
    def any_channel(self) -> bool:
        return self.push_enabled or self.whatsapp_enabled or self.email_enabled


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    # None means token extensions are unbounded
    max_token_window_minutes: Optional[int] = None
    overdue_threshold_hours: int = 24
    reminder_interval_hours: int = 24
    low_stock_threshold: int = 0
    block_borrow_when_overdue: bool = True
    notifications: NotificationConfig = NotificationConfig()


def load_settings() -> Settings:
    notifications = NotificationConfig(
        push_enabled=_env_bool("CABINET_PUSH_ENABLED", False),
        whatsapp_enabled=_env_bool("CABINET_WHATSAPP_ENABLED", False),
        email_enabled=_env_bool("CABINET_EMAIL_ENABLED", False),
        app_url=os.getenv("CABINET_APP_URL") or "http://localhost:3000",
    )
    return Settings(
        max_token_window_minutes=_env_int("CABINET_MAX_TOKEN_WINDOW_MINUTES", None),
        overdue_threshold_hours=_env_int("CABINET_OVERDUE_THRESHOLD_HOURS", 24) or 24,
        reminder_interval_hours=_env_int("CABINET_REMINDER_INTERVAL_HOURS", 24) or 24,
        low_stock_threshold=_env_int("CABINET_LOW_STOCK_THRESHOLD", 0) or 0,
        block_borrow_when_overdue=_env_bool("CABINET_BLOCK_BORROW_WHEN_OVERDUE", True),
        notifications=notifications,
    )


DEFAULT_SETTINGS = Settings()
