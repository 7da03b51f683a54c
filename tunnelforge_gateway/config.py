"""
网关配置：进程启动时从环境变量构建一次、之后只读的配置快照。
每个字段独立解析；类型不合法（整数、布尔、时长、逗号列表）时静默回退默认值，绝不中断启动。
启动后任何组件都不再读取实时环境变量，统一通过 GatewayConfig 传递。
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

logger = logging.getLogger("gateway.config")

DEFAULT_PORT = 3001
DEFAULT_BACKEND_URL = "http://localhost:4021"
DEFAULT_CSRF_SECRET = "tunnelforge-csrf-secret-change-in-production"
DEFAULT_ALLOWED_IPS = ("127.0.0.1/8", "::1/128")
# 时长上限 7 天，超出按不合法处理
MAX_DURATION_SEC = 7 * 24 * 3600.0

TUNNEL_PROVIDERS = ("cloudflare", "tailscale", "ngrok")

# 与 Go time.ParseDuration 一致的单位（秒）
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_INT_RE = re.compile(r"^[+-]?\d+$")
_TRUE_VALUES = frozenset(("1", "t", "T", "TRUE", "true", "True"))
_FALSE_VALUES = frozenset(("0", "f", "F", "FALSE", "false", "False"))


def parse_bool(raw: str) -> Optional[bool]:
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return None


def parse_int(raw: str) -> Optional[int]:
    raw = raw.strip()
    if not _INT_RE.match(raw):
        return None
    return int(raw)


def parse_duration(raw: str) -> Optional[float]:
    """解析 "300ms"、"1.5s"、"2m30s" 形式的时长，返回秒；不合法返回 None。"""
    raw = raw.strip()
    if not raw:
        return None
    sign = 1.0
    if raw[0] in "+-":
        if raw[0] == "-":
            sign = -1.0
        raw = raw[1:]
    if raw == "0":
        return 0.0
    pos = 0
    total = 0.0
    while pos < len(raw):
        m = _DURATION_PART.match(raw, pos)
        if not m:
            return None
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0:
        return None
    return sign * total


def parse_list(raw: str) -> Tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


class _EnvReader:
    """按字段读取环境变量，每个字段独立回退默认值。"""

    def __init__(self, environ: Mapping[str, str]):
        self._env = environ

    def _raw(self, key: str) -> str:
        return self._env.get(key) or ""

    def get_str(self, key: str, default: str) -> str:
        return self._raw(key) or default

    def get_int(self, key: str, default: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
        raw = self._raw(key)
        if not raw:
            return default
        value = parse_int(raw)
        if value is None or (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
            logger.debug("invalid int for %s=%r, using default %s", key, raw, default)
            return default
        return value

    def get_bool(self, key: str, default: bool) -> bool:
        raw = self._raw(key)
        if not raw:
            return default
        value = parse_bool(raw)
        if value is None:
            logger.debug("invalid bool for %s=%r, using default %s", key, raw, default)
            return default
        return value

    def get_duration(self, key: str, default: float) -> float:
        raw = self._raw(key)
        if not raw:
            return default
        value = parse_duration(raw)
        if value is None or not 0 < value <= MAX_DURATION_SEC:
            logger.debug("invalid duration for %s=%r, using default %ss", key, raw, default)
            return default
        return value

    def get_list(self, key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
        raw = self._raw(key)
        if not raw:
            return default
        return parse_list(raw) or default


@dataclass(frozen=True)
class TunnelProviderConfig:
    """隧道提供方（Cloudflare / Tailscale / ngrok）开关与凭据；网关仅据此对外声明是否可用。"""

    name: str
    enabled: bool = False
    api_token: str = ""
    account_id: str = ""
    config_dir: str = ""

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.api_token) and bool(self.account_id)


@dataclass(frozen=True)
class GatewayConfig:
    # 网络
    host: str = "localhost"
    port: int = DEFAULT_PORT
    allowed_origins: Tuple[str, ...] = ("*",)
    backend_url: str = DEFAULT_BACKEND_URL
    proxy_timeout: float = 30.0
    shutdown_grace_period: float = 10.0
    server_name: str = "TunnelForge Gateway"

    # 会话
    max_sessions: int = 50
    session_timeout: int = 1440  # 分钟

    # 认证
    enable_auth: bool = False
    auth_required: bool = False
    allow_local_bypass: bool = True

    # 文件系统
    static_dir: str = "./public"
    static_required: bool = False
    filesystem_base_path: str = ""
    git_base_path: str = ""
    vapid_key_path: str = ""

    # 持久化
    enable_persistence: bool = True
    persistence_dir: str = ""
    persistence_interval: float = 30.0

    # 安全中间件
    enable_rate_limit: bool = True
    rate_limit_per_min: int = 100
    enable_csrf: bool = False
    csrf_secret: str = DEFAULT_CSRF_SECRET
    enable_ip_whitelist: bool = False
    allowed_ips: Tuple[str, ...] = DEFAULT_ALLOWED_IPS
    enable_request_log: bool = True
    trust_proxy_headers: bool = False

    log_level: str = "INFO"

    tunnels: Tuple[TunnelProviderConfig, ...] = field(
        default_factory=lambda: tuple(TunnelProviderConfig(name=n) for n in TUNNEL_PROVIDERS)
    )

    def tunnel(self, name: str) -> Optional[TunnelProviderConfig]:
        for t in self.tunnels:
            if t.name == name:
                return t
        return None

    def tunnel_status(self) -> Dict[str, Dict[str, bool]]:
        """对外声明的隧道状态（不含凭据）。"""
        return {t.name: {"enabled": t.enabled, "configured": t.configured} for t in self.tunnels}


def _load_tunnel(env: _EnvReader, name: str, home: str) -> TunnelProviderConfig:
    prefix = name.upper()
    return TunnelProviderConfig(
        name=name,
        enabled=env.get_bool(f"ENABLE_{prefix}_TUNNELS", False),
        api_token=env.get_str(f"{prefix}_API_TOKEN", ""),
        account_id=env.get_str(f"{prefix}_ACCOUNT_ID", ""),
        config_dir=env.get_str(f"{prefix}_CONFIG_DIR", os.path.join(home, ".tunnelforge", name)),
    )


def load_config(environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """从环境变量构建配置快照；纯函数，任何输入都不会抛异常。"""
    env = _EnvReader(os.environ if environ is None else environ)
    home = env.get_str("HOME", os.path.expanduser("~"))
    tf_home = os.path.join(home, ".tunnelforge")
    return GatewayConfig(
        host=env.get_str("HOST", "localhost"),
        port=env.get_int("PORT", DEFAULT_PORT, minimum=1, maximum=65535),
        allowed_origins=env.get_list("ALLOWED_ORIGINS", ("*",)),
        backend_url=env.get_str("BACKEND_URL", DEFAULT_BACKEND_URL).rstrip("/"),
        proxy_timeout=env.get_duration("PROXY_TIMEOUT", 30.0),
        shutdown_grace_period=env.get_duration("SHUTDOWN_GRACE_PERIOD", 10.0),
        server_name=env.get_str("SERVER_NAME", "TunnelForge Gateway"),
        max_sessions=env.get_int("MAX_SESSIONS", 50, minimum=1),
        session_timeout=env.get_int("SESSION_TIMEOUT", 1440, minimum=1),
        enable_auth=env.get_bool("ENABLE_AUTH", False),
        auth_required=env.get_bool("AUTH_REQUIRED", False),
        allow_local_bypass=env.get_bool("ALLOW_LOCAL_BYPASS", True),
        static_dir=env.get_str("STATIC_DIR", "./public"),
        static_required=env.get_bool("STATIC_REQUIRED", False),
        filesystem_base_path=env.get_str("FILESYSTEM_BASE_PATH", home),
        git_base_path=env.get_str("GIT_BASE_PATH", home),
        vapid_key_path=env.get_str("VAPID_KEY_PATH", os.path.join(tf_home, "keys")),
        enable_persistence=env.get_bool("ENABLE_PERSISTENCE", True),
        persistence_dir=env.get_str("PERSISTENCE_DIR", os.path.join(tf_home, "sessions")),
        persistence_interval=env.get_duration("PERSISTENCE_INTERVAL", 30.0),
        enable_rate_limit=env.get_bool("ENABLE_RATE_LIMIT", True),
        rate_limit_per_min=env.get_int("RATE_LIMIT_PER_MIN", 100, minimum=1),
        enable_csrf=env.get_bool("ENABLE_CSRF", False),
        csrf_secret=env.get_str("CSRF_SECRET", DEFAULT_CSRF_SECRET),
        enable_ip_whitelist=env.get_bool("ENABLE_IP_WHITELIST", False),
        allowed_ips=env.get_list("ALLOWED_IPS", DEFAULT_ALLOWED_IPS),
        enable_request_log=env.get_bool("ENABLE_REQUEST_LOG", True),
        trust_proxy_headers=env.get_bool("TRUST_PROXY_HEADERS", False),
        log_level=env.get_str("LOG_LEVEL", "INFO").upper(),
        tunnels=tuple(_load_tunnel(env, name, home) for name in TUNNEL_PROVIDERS),
    )


__all__ = [
    "GatewayConfig",
    "MAX_DURATION_SEC",
    "TunnelProviderConfig",
    "load_config",
    "parse_bool",
    "parse_duration",
    "parse_int",
    "parse_list",
]
