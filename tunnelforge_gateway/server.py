"""
网关进程生命周期：绑定端口、多线程并发服务、信号驱动的优雅关闭。
关闭顺序：停止持久化定时 → 停止接受新连接 → 在宽限期内等待进行中的请求 → 关闭监听 socket 与后端连接池。
"""
from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import signal
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from flask import Flask
from werkzeug.serving import BaseWSGIServer, get_sockaddr, make_server, select_address_family
from werkzeug.wsgi import ClosingIterator

from . import __version__
from .app import create_app
from .config import GatewayConfig, load_config
from .http_client import close_pool
from .persistence import PersistenceScheduler, write_state_snapshot
from .static_files import check_static_root

logger = logging.getLogger("gateway")

EXIT_BIND_FAILED = 1
EXIT_STATIC_UNREADABLE = 2


@dataclass(frozen=True)
class GatewayAddress:
    host: str
    port: int


class InFlightTracker:
    """WSGI 包装：从进入应用到响应体关闭为止计为进行中，流式响应同样覆盖。"""

    def __init__(self, app):
        self.app = app
        self._cond = threading.Condition()
        self._active = 0

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def _enter(self) -> None:
        with self._cond:
            self._active += 1

    def _leave(self) -> None:
        with self._cond:
            self._active -= 1
            if self._active <= 0:
                self._cond.notify_all()

    def wait_idle(self, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._active > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def __call__(self, environ, start_response) -> Iterable[bytes]:
        self._enter()
        try:
            app_iter = self.app(environ, start_response)
        except BaseException:
            self._leave()
            raise
        return ClosingIterator(app_iter, [self._leave])


def bind_socket(host: str, port: int) -> socket.socket:
    """预先绑定监听 socket；werkzeug 自行绑定失败时直接退出进程，这里改为抛 OSError 由调用方决定。"""
    family = select_address_family(host, port)
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(get_sockaddr(host, port, family))
        sock.listen(socket.SOMAXCONN)
    except OSError:
        sock.close()
        raise
    return sock


class GatewayServer:
    def __init__(
        self,
        config: GatewayConfig,
        app: Optional[Flask] = None,
        save_callback: Optional[Callable[[], None]] = None,
    ):
        self.config = config
        self.app = app or create_app(config)
        self.tracker = InFlightTracker(self.app)
        self._save_callback = save_callback
        self._httpd: Optional[BaseWSGIServer] = None
        self._thread: Optional[threading.Thread] = None
        self.scheduler: Optional[PersistenceScheduler] = None
        self._closed = False

    def _default_save_callback(self) -> Callable[[], None]:
        state = self.app.extensions["tunnelforge_gateway"]
        stats = state["stats"]
        limiter = state["policy"].rate_limiter
        directory = self.config.persistence_dir
        return lambda: write_state_snapshot(directory, stats, limiter)

    def start(self) -> GatewayAddress:
        """绑定并开始服务；端口被占用等绑定失败时抛 OSError。"""
        if self._httpd is not None:
            raise RuntimeError("GatewayServer already started")
        cfg = self.config
        sock = bind_socket(cfg.host, cfg.port)
        try:
            # werkzeug 复制该描述符
            self._httpd = make_server(cfg.host, cfg.port, self.tracker, threaded=True, fd=sock.fileno())
        finally:
            sock.close()
        self._thread = threading.Thread(target=self._httpd.serve_forever, name="gateway-http", daemon=True)
        self._thread.start()
        address = GatewayAddress(host=cfg.host, port=self._httpd.port)
        logger.info("gateway listening on http://%s:%s backend=%s static=%s",
                    address.host, address.port, cfg.backend_url, cfg.static_dir)
        if cfg.enable_persistence:
            self.scheduler = PersistenceScheduler(
                cfg.persistence_interval,
                self._save_callback or self._default_save_callback(),
            )
            self.scheduler.start()
        return address

    def close(self) -> bool:
        """优雅关闭；返回宽限期内是否所有进行中的请求都已完成。"""
        if self._closed:
            return True
        self._closed = True
        if self.scheduler is not None:
            self.scheduler.stop()
        drained = True
        if self._httpd is not None:
            self._httpd.shutdown()
            drained = self.tracker.wait_idle(self.config.shutdown_grace_period)
            if not drained:
                logger.warning("shutdown grace period elapsed with %s request(s) in flight", self.tracker.active)
            self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        close_pool()
        logger.info("gateway stopped")
        return drained


def _port(raw: str) -> int:
    value = int(raw)
    if not 1 <= value <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {raw}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tunnelforge-gateway", description="TunnelForge 网关：静态资源、API 转发与安全策略")
    parser.add_argument("--host", help="监听地址（覆盖 HOST）")
    parser.add_argument("--port", type=_port, help="监听端口（覆盖 PORT）")
    parser.add_argument("--static-dir", help="静态资源根目录（覆盖 STATIC_DIR）")
    parser.add_argument("--backend-url", help="后端地址（覆盖 BACKEND_URL）")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_overrides(config: GatewayConfig, args: argparse.Namespace) -> GatewayConfig:
    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.static_dir:
        overrides["static_dir"] = args.static_dir
    if args.backend_url:
        overrides["backend_url"] = args.backend_url.rstrip("/")
    return dataclasses.replace(config, **overrides) if overrides else config


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = apply_overrides(load_config(), args)
    level = getattr(logging, config.log_level, None)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    static_root = os.path.abspath(config.static_dir)
    if config.static_required and not check_static_root(static_root):
        logger.error("static root not readable: %s", static_root)
        return EXIT_STATIC_UNREADABLE

    server = GatewayServer(config)
    try:
        server.start()
    except OSError as e:
        logger.error("failed to bind %s:%s: %s", config.host, config.port, e)
        return EXIT_BIND_FAILED

    stop = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    while not stop.wait(1.0):
        pass
    server.close()
    return 0


__all__ = ["GatewayAddress", "GatewayServer", "InFlightTracker", "build_parser", "main"]
