"""
CSRF 令牌单元测试：签发、校验、过期与篡改。
"""
from __future__ import annotations

from tunnelforge_gateway.csrf import issue_token, verify_token

SECRET = "test-secret"


def test_issued_token_verifies():
    token = issue_token(SECRET, timestamp=1_700_000_000)
    assert verify_token(SECRET, token, 3600, now=1_700_000_100) == (True, "")


def test_missing_and_malformed():
    assert verify_token(SECRET, None, 3600) == (False, "missing_token")
    assert verify_token(SECRET, "   ", 3600) == (False, "missing_token")
    assert verify_token(SECRET, "abc", 3600) == (False, "malformed_token")
    assert verify_token(SECRET, "abc.def", 3600) == (False, "malformed_token")


def test_expired_token():
    token = issue_token(SECRET, timestamp=1_700_000_000)
    assert verify_token(SECRET, token, 60, now=1_700_000_061) == (False, "token_expired")


def test_future_token_beyond_skew():
    token = issue_token(SECRET, timestamp=1_700_000_500)
    assert verify_token(SECRET, token, 3600, now=1_700_000_000) == (False, "token_from_future")


def test_wrong_secret_or_tampered_signature():
    token = issue_token(SECRET, timestamp=1_700_000_000)
    assert verify_token("other", token, 3600, now=1_700_000_000) == (False, "token_mismatch")
    ts, sig = token.split(".")
    forged = f"{int(ts) + 1}.{sig}"
    assert verify_token(SECRET, forged, 3600, now=1_700_000_000) == (False, "token_mismatch")
