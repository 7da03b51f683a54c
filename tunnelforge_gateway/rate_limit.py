"""
网关防刷/限流：按客户端地址的内存滑动窗口（60 秒）。
- 线程安全：单把锁保护计数表，同一地址并发请求不会丢失计数。
- 内存有界：计数表按最近放行时间排序，清扫只从表头弹出过期地址，超过上限时淘汰表头（最久未活动）的地址。
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict, deque
from typing import Callable, Deque, Optional, Tuple

WINDOW_SEC = 60.0
DEFAULT_MAX_TRACKED = 10000
_SWEEP_EVERY = 1000  # 每处理 N 次请求清扫一次表头


class RateLimiter:
    """每地址每窗口最多 limit 次；被拒绝的请求不计入窗口，也不刷新活动时间。"""

    def __init__(
        self,
        limit: int,
        window_sec: float = WINDOW_SEC,
        max_tracked: int = DEFAULT_MAX_TRACKED,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.limit = max(1, int(limit))
        self.window_sec = float(window_sec)
        self.max_tracked = max(1, int(max_tracked))
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._hits: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._calls = 0

    def _prune(self, hits: Deque[float], now: float) -> None:
        while hits and now - hits[0] >= self.window_sec:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        while self._hits:
            hits = next(iter(self._hits.values()))
            if hits and now - hits[-1] < self.window_sec:
                break
            self._hits.popitem(last=False)

    def allow(self, key: str) -> Tuple[bool, float]:
        """返回 (是否放行, 建议重试等待秒数)。"""
        now = self._clock()
        with self._lock:
            self._calls += 1
            if self._calls % _SWEEP_EVERY == 0:
                self._sweep(now)
            hits = self._hits.get(key)
            if hits is None:
                if len(self._hits) >= self.max_tracked:
                    self._sweep(now)
                    if len(self._hits) >= self.max_tracked:
                        self._hits.popitem(last=False)
                hits = self._hits[key] = deque()
            else:
                self._prune(hits, now)
            if len(hits) >= self.limit:
                retry_after = max(0.0, self.window_sec - (now - hits[0]))
                return False, retry_after
            hits.append(now)
            self._hits.move_to_end(key)
            return True, 0.0

    def tracked(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._calls = 0


__all__ = ["RateLimiter", "WINDOW_SEC"]
