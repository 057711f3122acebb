import re
from datetime import datetime, timedelta, timezone

import tokens


def test_generated_tokens_are_url_safe_and_distinct():
    seen = {tokens.generate_token() for _ in range(200)}
    assert len(seen) == 200
    for t in seen:
        assert len(t) >= 43
        assert re.fullmatch(r"[A-Za-z0-9_-]+", t)


def test_hash_is_sha256_hex():
    h = tokens.hash_token("abc")
    assert h == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert tokens.hash_token("abc") == h


def test_verify_token_matches_only_its_hash():
    t = tokens.generate_token()
    h = tokens.hash_token(t)
    assert tokens.verify_token(t, h) is True
    assert tokens.verify_token(t + "x", h) is False
    assert tokens.verify_token(t, h[:-1]) is False


def test_verify_token_rejects_non_string_input():
    h = tokens.hash_token("abc")
    assert tokens.verify_token(None, h) is False
    assert tokens.verify_token(123, h) is False
    assert tokens.verify_token("abc", None) is False
    assert tokens.verify_token("\ud800", h) is False


def test_is_expired_boundary():
    expires_at = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
    assert tokens.is_expired(expires_at, expires_at - timedelta(seconds=1)) is False
    assert tokens.is_expired(expires_at, expires_at) is False
    assert tokens.is_expired(expires_at, expires_at + timedelta(seconds=1)) is True
    assert tokens.is_expired(None) is True


def test_create_request_token_expires_after_thirty_minutes():
    now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    issued = tokens.create_request_token(now)
    assert issued.expires_at == now + timedelta(minutes=30)
    assert issued.token_hash == tokens.hash_token(issued.token)
    assert issued.token not in issued.token_hash
