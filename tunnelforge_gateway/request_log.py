"""
请求日志与网关计数：每个请求一条结构化 JSON 记录（与策略结果无关），写入 gateway.access 日志器。
计数器供 /health 与持久化快照使用，线程安全。
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from typing import Any, Dict, Mapping, Optional

access_logger = logging.getLogger("gateway.access")


def json_log(logger: logging.Logger, level: int, msg: str, trace_id: str = "", **kwargs: Any) -> None:
    log_obj = {"message": msg, "trace_id": trace_id, **kwargs}
    logger.log(level, json.dumps(log_obj, ensure_ascii=False, default=str))


def ensure_trace_id(headers: Mapping[str, str]) -> str:
    """从请求头获取或生成 trace_id。"""
    trace_id = headers.get("X-Trace-Id") or headers.get("X-Request-ID")
    if not trace_id:
        trace_id = uuid.uuid4().hex
    return trace_id


def log_request(
    method: str,
    path: str,
    status: int,
    duration_ms: int,
    ip: str = "",
    route: str = "",
    decision: str = "",
    trace_id: str = "",
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    record = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "method": method,
        "path": path,
        "status": status,
        "durationMs": duration_ms,
        "ip": ip,
        "route": route,
        "decision": decision,
        **(extra or {}),
    }
    json_log(access_logger, logging.INFO, "request", trace_id, **record)


class RequestStats:
    """进程级请求计数。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_at = time.time()
        self._total = 0
        self._by_status: Dict[str, int] = {}
        self._rejections: Dict[str, int] = {}
        self._upstream_failures = 0

    def record(self, status: int, rejection: str = "", upstream_failure: bool = False) -> None:
        bucket = f"{status // 100}xx"
        with self._lock:
            self._total += 1
            self._by_status[bucket] = self._by_status.get(bucket, 0) + 1
            if rejection:
                self._rejections[rejection] = self._rejections.get(rejection, 0) + 1
            if upstream_failure:
                self._upstream_failures += 1

    def uptime(self) -> float:
        return time.time() - self.started_at

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requestsTotal": self._total,
                "byStatus": dict(self._by_status),
                "rejections": dict(self._rejections),
                "upstreamFailures": self._upstream_failures,
                "uptimeSec": round(self.uptime(), 3),
            }


__all__ = ["RequestStats", "ensure_trace_id", "json_log", "log_request"]
