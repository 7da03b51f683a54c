"""
安全策略引擎：对每个请求按固定顺序评估已启用的策略，首个拒绝即短路返回。
顺序：IP 白名单 → 限流 → CSRF → 认证（含本地免认证）。
拒绝结果携带 HTTP 状态码、机器可读 code 与策略名，由网关统一转为错误响应。
"""
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Mapping, Optional, Union

from .config import GatewayConfig
from .csrf import CSRF_HEADER, STATE_CHANGING_METHODS, verify_token
from .rate_limit import RateLimiter

logger = logging.getLogger("gateway.policy")

LOCAL_BYPASS_HEADER = "X-TunnelForge-Local"

# 流式端点（WebSocket / SSE）不参与限流，避免长连接与重连风暴被误伤
_STREAMING_EXACT = frozenset((
    "/ws",
    "/buffers",
    "/api/events",
    "/api/control/stream",
    "/api/repositories/discover",
))
_STREAMING_PREFIXES = ("/api/fs/",)
_RATE_LIMIT_EXEMPT = frozenset(("/health",))

# 认证开启时仍公开的 API
_PUBLIC_API_PATHS = frozenset((
    "/api/health",
    "/api/auth/config",
    "/api/auth/login",
    "/api/auth/password",
))

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class DecisionKind(str, Enum):
    ALLOW = "allow"
    REJECT_IP = "reject_ip"
    REJECT_RATE_LIMIT = "reject_rate_limit"
    REJECT_CSRF = "reject_csrf"
    REJECT_AUTH = "reject_auth"
    BYPASS_AUTH = "bypass_auth"


@dataclass(frozen=True)
class PolicyDecision:
    kind: DecisionKind
    status: int = 200
    code: str = ""
    policy: str = ""
    message: str = ""
    details: str = ""
    retry_after: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.kind in (DecisionKind.ALLOW, DecisionKind.BYPASS_AUTH)

    @property
    def bypass(self) -> bool:
        return self.kind is DecisionKind.BYPASS_AUTH


ALLOW = PolicyDecision(kind=DecisionKind.ALLOW)
BYPASS = PolicyDecision(kind=DecisionKind.BYPASS_AUTH)


@dataclass(frozen=True)
class RequestInfo:
    """策略评估所需的请求元数据（单请求生命周期）。"""

    method: str
    path: str
    headers: Mapping[str, str]
    remote_addr: str
    form_token: Optional[str] = None


def get_header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for k, v in headers.items():
            if k.lower() == lowered:
                value = v
                break
    return (value or "").strip()


def parse_ip(raw: str) -> Optional[IPAddress]:
    raw = (raw or "").strip()
    if raw.startswith("[") and raw.endswith("]"):
        raw = raw[1:-1]
    raw = raw.split("%", 1)[0]
    try:
        addr = ipaddress.ip_address(raw)
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def is_loopback(raw: str) -> bool:
    if (raw or "").strip() == "localhost":
        return True
    addr = parse_ip(raw)
    return bool(addr is not None and addr.is_loopback)


def client_address(remote_addr: str, headers: Mapping[str, str], trust_proxy_headers: bool = False) -> str:
    """客户端地址：默认取 socket 对端；仅在信任上游代理时读取 X-Forwarded-For / X-Real-IP。"""
    if trust_proxy_headers:
        xff = get_header(headers, "X-Forwarded-For")
        if xff:
            first = xff.split(",")[0].strip()
            if first:
                return first
        xri = get_header(headers, "X-Real-IP")
        if xri:
            return xri
    return remote_addr or ""


def parse_networks(entries) -> List[IPNetwork]:
    networks: List[IPNetwork] = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry.strip(), strict=False))
        except ValueError:
            logger.warning("ignoring invalid allow-list entry: %r", entry)
    return networks


def is_streaming_path(path: str) -> bool:
    return path in _STREAMING_EXACT or path.startswith(_STREAMING_PREFIXES) or "/stream" in path


def is_protected_api_path(path: str) -> bool:
    if not (path == "/api" or path.startswith("/api/")):
        return False
    return path not in _PUBLIC_API_PATHS


def _has_bearer(headers: Mapping[str, str]) -> bool:
    raw = get_header(headers, "Authorization")
    if not raw.lower().startswith("bearer "):
        return False
    return bool(raw[7:].strip())


class PolicyEngine:
    """按配置快照评估请求；限流计数是唯一的共享可变状态。"""

    def __init__(self, config: GatewayConfig, rate_limiter: Optional[RateLimiter] = None):
        self.config = config
        self.networks = parse_networks(config.allowed_ips) if config.enable_ip_whitelist else []
        if config.enable_rate_limit:
            self.rate_limiter: Optional[RateLimiter] = rate_limiter or RateLimiter(config.rate_limit_per_min)
        else:
            self.rate_limiter = None
        self.csrf_max_age = config.session_timeout * 60

    def _ip_allowed(self, ip: str) -> bool:
        addr = parse_ip(ip)
        if addr is None:
            return False
        return any(addr.version == net.version and addr in net for net in self.networks)

    def evaluate(self, req: RequestInfo) -> PolicyDecision:
        cfg = self.config
        ip = client_address(req.remote_addr, req.headers, cfg.trust_proxy_headers)
        method = req.method.upper()

        # 1. IP 白名单：对所有路径生效
        if cfg.enable_ip_whitelist and not self._ip_allowed(ip):
            logger.info("ip rejected ip=%s path=%s", ip, req.path)
            return PolicyDecision(
                kind=DecisionKind.REJECT_IP,
                status=403,
                code="IP_NOT_ALLOWED",
                policy="ip_allowlist",
                message="来源地址不在允许列表中",
                details=ip,
            )

        # 2. 限流
        if self.rate_limiter is not None and req.path not in _RATE_LIMIT_EXEMPT and not is_streaming_path(req.path):
            ok, retry_after = self.rate_limiter.allow(ip)
            if not ok:
                logger.info("rate limited ip=%s path=%s", ip, req.path)
                return PolicyDecision(
                    kind=DecisionKind.REJECT_RATE_LIMIT,
                    status=429,
                    code="RATE_LIMITED",
                    policy="rate_limit",
                    message="请求过于频繁，请稍后重试",
                    details=f"limit={self.rate_limiter.limit}/min",
                    retry_after=max(1, int(retry_after + 0.999)),
                )

        # 3. CSRF：仅状态变更方法
        if cfg.enable_csrf and method in STATE_CHANGING_METHODS:
            token = get_header(req.headers, CSRF_HEADER) or (req.form_token or "")
            ok, reason = verify_token(cfg.csrf_secret, token, self.csrf_max_age)
            if not ok:
                logger.info("csrf rejected ip=%s path=%s reason=%s", ip, req.path, reason)
                return PolicyDecision(
                    kind=DecisionKind.REJECT_CSRF,
                    status=403,
                    code="CSRF_INVALID",
                    policy="csrf",
                    message="CSRF 令牌缺失或无效",
                    details=reason,
                )

        # 4. 本地免认证：只看 socket 对端地址，绝不信任转发头
        if cfg.allow_local_bypass and get_header(req.headers, LOCAL_BYPASS_HEADER) and is_loopback(req.remote_addr):
            return BYPASS

        # CORS 预检不带凭据
        if method == "OPTIONS":
            return ALLOW
        if cfg.auth_required and is_protected_api_path(req.path) and not _has_bearer(req.headers):
            return PolicyDecision(
                kind=DecisionKind.REJECT_AUTH,
                status=401,
                code="UNAUTHORIZED",
                policy="auth",
                message="缺少 Authorization 头",
            )
        return ALLOW


__all__ = [
    "ALLOW",
    "BYPASS",
    "DecisionKind",
    "LOCAL_BYPASS_HEADER",
    "PolicyDecision",
    "PolicyEngine",
    "RequestInfo",
    "client_address",
    "get_header",
    "is_loopback",
    "is_protected_api_path",
    "is_streaming_path",
    "parse_networks",
]
