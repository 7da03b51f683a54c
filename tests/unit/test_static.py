"""
静态资源单元测试：文件命中、扩展名映射、单页外壳回退、路径穿越。
"""
from __future__ import annotations

from tunnelforge_gateway.static_files import content_type_for, is_safe_path, resolve_static


def test_existing_bundle_served(gateway_client):
    r = gateway_client.get("/bundle/app.js")
    assert r.status_code == 200
    assert r.data == b"console.log('tunnelforge');"
    assert r.mimetype == "application/javascript"


def test_css_and_icon_types(gateway_client):
    assert gateway_client.get("/bundle/styles.css").mimetype == "text/css"
    assert gateway_client.get("/favicon.ico").mimetype == "image/x-icon"


def test_missing_asset_falls_back_to_shell(gateway_client):
    r = gateway_client.get("/bundle/missing.js")
    assert r.status_code == 200
    assert r.mimetype == "text/html"
    assert b"TunnelForge" in r.data


def test_client_side_route_serves_shell(gateway_client):
    r = gateway_client.get("/sessions/abc")
    assert r.status_code == 200
    assert r.mimetype == "text/html"
    assert gateway_client.get("/").status_code == 200


def test_traversal_rejected(gateway_client):
    r = gateway_client.get("/bundle/../../secret.js")
    assert r.status_code == 404
    assert r.get_json()["code"] == "NOT_FOUND"


def test_missing_shell_is_404(make_client, tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    client = make_client(STATIC_DIR=str(empty))
    r = client.get("/some/page")
    assert r.status_code == 404
    body = r.get_json()
    assert body["code"] == "NOT_FOUND"
    assert set(body) == {"code", "message", "details", "policy", "requestId"}


def test_non_get_on_static_route(gateway_client):
    assert gateway_client.post("/bundle/app.js").status_code == 405


def test_security_headers_on_static(gateway_client):
    r = gateway_client.get("/bundle/app.js")
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"
    assert r.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert r.headers.get("X-Trace-Id")


def test_helpers(static_dir):
    assert content_type_for("a.wasm") == "application/wasm"
    assert content_type_for("a.WOFF2") == "font/woff2"
    assert content_type_for("a.unknownext") == "application/octet-stream"
    assert not is_safe_path("/a/../b")
    assert not is_safe_path("/a\\b")
    assert not is_safe_path("/a\x00b")
    assert is_safe_path("/a/..b/c")
    assert resolve_static(str(static_dir), "/bundle/app.js") == "bundle/app.js"
    assert resolve_static(str(static_dir), "/bundle") is None
    assert resolve_static(str(static_dir), "/") is None


def test_options_on_local_route_lists_allowed_methods(gateway_client):
    r = gateway_client.options("/bundle/app.js")
    assert r.status_code == 200
    assert r.headers["Allow"] == "GET, HEAD, OPTIONS"
    assert gateway_client.open("/health", method="PROPFIND").headers["Allow"] == "GET, HEAD, OPTIONS"
