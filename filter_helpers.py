import re
from typing import Optional

VALID_REQUEST_STATUSES = {"pending", "approved", "rejected", "cancelled", "expired", "fulfilled"}
VALID_BORROW_STATUSES = {"borrowed", "pending_approval", "returned"}

_NON_DIGITS = re.compile(r"\D")


def blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if value == "":
        return None
    return value


def normalize_phone(phone: Optional[str]) -> str:
    """Digits only, local form: ``+972-50-123-4567`` -> ``0501234567``."""
    digits = _NON_DIGITS.sub("", phone or "")
    if digits.startswith("972"):
        digits = "0" + digits[3:]
    elif digits and not digits.startswith("0") and len(digits) == 9:
        digits = "0" + digits
    return digits


def normalize_request_status(status: Optional[str]) -> Optional[str]:
    if status in VALID_REQUEST_STATUSES:
        return status
    return None


def normalize_borrow_status(status: Optional[str]) -> Optional[str]:
    if status in VALID_BORROW_STATUSES:
        return status
    return None


def normalize_threshold_hours(hours: Optional[int], default: int) -> int:
    if hours is None or hours < 0:
        return default
    return hours


def normalize_limit(limit: int, *, min_value: int = 1, max_value: int = 500) -> int:
    if limit < min_value:
        return min_value
    if limit > max_value:
        return max_value
    return limit
