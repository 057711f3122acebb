import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

TOKEN_BYTES = 32  # 256 bits
TOKEN_EXPIRY_MINUTES = 30


@dataclass(frozen=True)
class RequestToken:
    token: str
    token_hash: str
    expires_at: datetime


def generate_token() -> str:
    # token_urlsafe never emits padding
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    if not isinstance(token, str):
        token = str(token)
    return hashlib.sha256(token.encode("utf-8", errors="surrogatepass")).hexdigest()


def verify_token(token: object, token_hash: object) -> bool:
    if not isinstance(token, str) or not isinstance(token_hash, str):
        return False
    expected = token_hash.encode("utf-8", errors="replace")
    actual = hash_token(token).encode("ascii")
    # compare_digest handles unequal lengths by returning False
    return hmac.compare_digest(actual, expected)


def token_expiry(now: Optional[datetime] = None, minutes: int = TOKEN_EXPIRY_MINUTES) -> datetime:
    base = now or datetime.now(timezone.utc)
    return base + timedelta(minutes=minutes)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if expires_at is None:
        return True
    return (now or datetime.now(timezone.utc)) > expires_at


def create_request_token(now: Optional[datetime] = None) -> RequestToken:
    token = generate_token()
    return RequestToken(token=token, token_hash=hash_token(token), expires_at=token_expiry(now))
