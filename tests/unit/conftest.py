"""
网关单元测试公共 fixture：路径、配置工厂、网关 app 与本地 mock 后端。
"""
from __future__ import annotations

import json
import os
import sys
import threading
import time

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture
def static_dir(tmp_path):
    """带外壳文档与打包产物的静态根目录。"""
    root = tmp_path / "public"
    (root / "bundle").mkdir(parents=True)
    (root / "index.html").write_text("<!doctype html><title>TunnelForge</title>", encoding="utf-8")
    (root / "bundle" / "app.js").write_bytes(b"console.log('tunnelforge');")
    (root / "bundle" / "styles.css").write_bytes(b"body{margin:0}")
    (root / "favicon.ico").write_bytes(b"\x00\x00\x01\x00")
    return root


@pytest.fixture
def make_config(tmp_path, static_dir):
    """从环境映射构建配置快照；测试默认关闭持久化与访问日志。"""
    from tunnelforge_gateway.config import load_config

    def _make(**env):
        base = {
            "HOME": str(tmp_path),
            "STATIC_DIR": str(static_dir),
            "ENABLE_PERSISTENCE": "false",
            "ENABLE_REQUEST_LOG": "false",
        }
        base.update({k: str(v) for k, v in env.items()})
        return load_config(base)

    return _make


@pytest.fixture
def make_client(make_config):
    """按环境变量创建网关测试客户端。"""
    from tunnelforge_gateway.app import create_app

    def _make(rate_limiter=None, **env):
        app = create_app(make_config(**env), rate_limiter=rate_limiter)
        app.config["TESTING"] = True
        return app.test_client()

    return _make


@pytest.fixture
def gateway_client(make_client):
    """默认配置的网关测试客户端。"""
    return make_client()


def _mock_backend_app(environ, start_response):
    from werkzeug.wrappers import Request, Response

    req = Request(environ)
    if req.path == "/api/slow":
        time.sleep(2)
        resp = Response(b"late", mimetype="text/plain")
    elif req.path == "/api/missing":
        resp = Response(json.dumps({"error": "not found"}), status=404, mimetype="application/json")
    elif req.path == "/api/stream":
        resp = Response((f"chunk-{i}\n".encode() for i in range(3)), mimetype="text/plain")
    elif req.path == "/api/raw":
        resp = Response(b"\x1f\x8bnot-really-gzip", headers={"Content-Encoding": "gzip", "X-Backend": "yes"})
    else:
        payload = {
            "method": req.method,
            "path": environ.get("RAW_URI", req.path).split("?", 1)[0],
            "query": environ.get("QUERY_STRING", ""),
            "headers": {k: v for k, v in req.headers.items()},
            "body": req.get_data().decode("utf-8", errors="replace"),
        }
        resp = Response(json.dumps(payload), status=201 if req.method == "POST" else 200, mimetype="application/json")
        resp.headers["X-Backend"] = "echo"
        resp.set_cookie("backend_session", "abc")
    return resp(environ, start_response)


@pytest.fixture
def mock_backend():
    """werkzeug 提供的回显后端，监听临时端口；返回 base_url。"""
    from werkzeug.serving import make_server

    server = make_server("127.0.0.1", 0, _mock_backend_app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_port}"
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def unused_port():
    """分配后立即释放的端口，用于模拟后端不可达。"""
    import socket

    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port
