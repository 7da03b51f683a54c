"""
持久化调度：单一后台定时线程，按固定节拍（start + k·interval，不累积漂移）触发保存回调。
回调提交到线程池脱离定时线程执行，失败只记日志，不影响后续节拍。
同一时刻至多一次保存：上一次保存未结束时跳过该节拍，不排队、不计数。
stop() 之后不再提交任何新的回调，已提交但未开始的保存被撤销。
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional

from .rate_limit import RateLimiter
from .request_log import RequestStats

logger = logging.getLogger("gateway.persistence")

STATE_FILENAME = "gateway-state.json"


class SchedulerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    CANCELLED = "cancelled"


class PersistenceScheduler:
    def __init__(self, interval: float, callback: Callable[[], None], clock: Optional[Callable[[], float]] = None):
        if not 0 < interval <= threading.TIMEOUT_MAX:
            raise ValueError("interval must be positive and within threading.TIMEOUT_MAX")
        self.interval = interval
        self.callback = callback
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._state = SchedulerState.CREATED
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._fire_count = 0
        self._skipped_count = 0
        self._pending: Optional[Future] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def fire_count(self) -> int:
        with self._lock:
            return self._fire_count

    @property
    def skipped_count(self) -> int:
        with self._lock:
            return self._skipped_count

    def start(self) -> None:
        with self._lock:
            if self._state is not SchedulerState.CREATED:
                raise RuntimeError(f"scheduler already {self._state.value}")
            self._state = SchedulerState.RUNNING
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="persistence-save")
            self._thread = threading.Thread(target=self._loop, name="persistence-timer", daemon=True)
            self._thread.start()
        logger.info("persistence scheduler started interval=%ss", self.interval)

    def stop(self, wait: bool = False) -> None:
        """取消定时并撤销尚未开始的保存；wait=True 时等待正在执行的回调结束。"""
        with self._lock:
            if self._state is SchedulerState.CANCELLED:
                return
            self._state = SchedulerState.CANCELLED
            self._stop.set()
            executor = self._executor
            pending = self._pending
        if pending is not None and pending.cancel():
            with self._lock:
                self._fire_count -= 1
            logger.debug("queued persistence save cancelled")
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval + 1)
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("persistence scheduler stopped fires=%s skipped=%s", self.fire_count, self.skipped_count)

    def _loop(self) -> None:
        started = self._clock()
        k = 1
        while True:
            delay = started + k * self.interval - self._clock()
            if delay > 0 and self._stop.wait(delay):
                return
            future = None
            with self._lock:
                if self._state is not SchedulerState.RUNNING:
                    return
                if self._pending is not None and not self._pending.done():
                    # 上一次保存仍在执行，本节拍不计数
                    self._skipped_count += 1
                else:
                    self._fire_count += 1
                    future = self._pending = self._executor.submit(self.callback)
            if future is None:
                logger.debug("persistence save still running, tick skipped")
            else:
                future.add_done_callback(self._on_done)
            now = self._clock()
            k = max(k + 1, int((now - started) // self.interval) + 1)

    @staticmethod
    def _on_done(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("persistence save failed: %s", exc, exc_info=exc)


def write_state_snapshot(directory: str, stats: RequestStats, rate_limiter: Optional[RateLimiter] = None) -> str:
    """原子写入网关状态快照：先写临时文件再 os.replace，读者不会看到半写文件。"""
    os.makedirs(directory, exist_ok=True)
    record = {
        "savedAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        **stats.snapshot(),
        "rateLimitTracked": rate_limiter.tracked() if rate_limiter is not None else 0,
    }
    target = os.path.join(directory, STATE_FILENAME)
    fd, tmp = tempfile.mkstemp(prefix=".gateway-state-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(record, f, ensure_ascii=False, indent=2)
        os.replace(tmp, target)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.debug("gateway state saved path=%s", target)
    return target


__all__ = ["PersistenceScheduler", "STATE_FILENAME", "SchedulerState", "write_state_snapshot"]
