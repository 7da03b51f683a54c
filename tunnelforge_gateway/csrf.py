"""
CSRF 令牌：HMAC-SHA256 签名 + 时间戳，格式 "<unix 秒>.<十六进制签名>"。
令牌由网关 /csrf-token 签发，状态变更请求须在 X-CSRF-Token 头或 csrf_token 表单字段中回传。
有效期与会话超时一致；允许少量时钟偏差。
"""
from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional, Tuple

CSRF_HEADER = "X-CSRF-Token"
CSRF_FORM_FIELD = "csrf_token"
CLOCK_SKEW_SEC = 60
STATE_CHANGING_METHODS = frozenset(("POST", "PUT", "PATCH", "DELETE"))


def _sign(secret: str, timestamp: int) -> str:
    payload = f"csrf|{timestamp}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def issue_token(secret: str, timestamp: Optional[int] = None) -> str:
    if timestamp is None:
        timestamp = int(time.time())
    return f"{timestamp}.{_sign(secret, timestamp)}"


def verify_token(secret: str, token: Optional[str], max_age_sec: int, now: Optional[float] = None) -> Tuple[bool, str]:
    """返回 (是否通过, 失败原因)。"""
    token = (token or "").strip()
    if not token:
        return False, "missing_token"
    ts_str, sep, sig = token.partition(".")
    if not sep or not sig:
        return False, "malformed_token"
    try:
        ts = int(ts_str)
    except ValueError:
        return False, "malformed_token"
    if now is None:
        now = time.time()
    if ts - now > CLOCK_SKEW_SEC:
        return False, "token_from_future"
    if now - ts > max_age_sec:
        return False, "token_expired"
    if not hmac.compare_digest(_sign(secret, ts), sig):
        return False, "token_mismatch"
    return True, ""


__all__ = [
    "CSRF_FORM_FIELD",
    "CSRF_HEADER",
    "STATE_CHANGING_METHODS",
    "issue_token",
    "verify_token",
]
