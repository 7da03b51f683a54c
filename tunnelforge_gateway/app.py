"""
TunnelForge 网关：单一对外入口，负责安全策略、请求分类、静态资源与后端转发。
- 安全策略在 before_request 中按固定顺序评估，拒绝即返回统一错误格式，不进入路由。
- 放行后由 routing.classify 决定去向：网关自有端点 / 静态资源 / 后端 API / 单页应用外壳。
- after_request 统一注入安全响应头、trace_id，记录计数与结构化访问日志。
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Optional
from urllib.parse import quote

from flask import Flask, Response, g, request
from flask_cors import CORS
from werkzeug.routing import Rule

from .config import GatewayConfig, load_config
from .csrf import CSRF_FORM_FIELD, CSRF_HEADER, issue_token
from .http_client import UpstreamError, filter_request_headers, forward_request
from .policy import ALLOW, LOCAL_BYPASS_HEADER, PolicyEngine, RequestInfo, client_address
from .rate_limit import RateLimiter
from .request_log import RequestStats, ensure_trace_id, json_log, log_request
from .routing import RouteKind, classify
from .static_files import check_static_root, is_safe_path, resolve_static, send_shell, send_static

logger = logging.getLogger("gateway")
proxy_logger = logging.getLogger("gateway.proxy")

LOCAL_METHODS_ALLOW = "GET, HEAD, OPTIONS"
CORS_ALLOW_HEADERS = ["Content-Type", "Authorization", "X-Requested-With", CSRF_HEADER, LOCAL_BYPASS_HEADER]
_FORM_MIMETYPES = ("application/x-www-form-urlencoded", "multipart/form-data")
_RAW_PATH_SAFE = "/:@!$&'()*+,;=-._~%"

# OWASP 推荐的基础安全头；后端已设置时保留后端取值
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _error_response(code: str, message: str, details: str, request_id: str, status: int = 400, policy: str = ""):
    """统一错误响应格式。"""
    body = {"code": code, "message": message, "details": details, "policy": policy, "requestId": request_id}
    return Response(
        json.dumps(body, ensure_ascii=False),
        status=status,
        mimetype="application/json",
    )


def _json_response(payload: dict, status: int = 200):
    return Response(json.dumps(payload, ensure_ascii=False), status=status, mimetype="application/json")


def _raw_path() -> str:
    """转发用的原始路径（保留百分号编码）；服务器未提供时由解码后的路径重新编码。"""
    raw = request.environ.get("RAW_URI") or request.environ.get("REQUEST_URI") or ""
    raw = raw.split("?", 1)[0]
    if raw.startswith("/"):
        return raw
    return quote(request.path, safe=_RAW_PATH_SAFE)


def _form_token() -> Optional[str]:
    """表单提交的 CSRF 令牌；先缓存原始请求体，保证表单解析后仍可原样转发。"""
    if request.mimetype not in _FORM_MIMETYPES:
        return None
    request.get_data(cache=True)
    return request.form.get(CSRF_FORM_FIELD)


def create_app(
    config: Optional[GatewayConfig] = None,
    rate_limiter: Optional[RateLimiter] = None,
    stats: Optional[RequestStats] = None,
) -> Flask:
    """
    创建网关 Flask 应用。
    - config：配置快照，缺省时从环境变量加载一次。
    - rate_limiter：可注入的限流器（测试用假时钟）；限流关闭时忽略。
    - stats：请求计数，缺省新建；同一实例供持久化快照读取。
    """
    config = config or load_config()
    stats = stats or RequestStats()
    engine = PolicyEngine(config, rate_limiter=rate_limiter)
    static_root = os.path.abspath(config.static_dir) if config.static_dir else ""
    if static_root and not check_static_root(static_root):
        logger.warning("static root not readable: %s", static_root)

    app = Flask(__name__)
    app.extensions["tunnelforge_gateway"] = {"config": config, "stats": stats, "policy": engine}
    CORS(
        app,
        origins=list(config.allowed_origins),
        supports_credentials=True,
        allow_headers=CORS_ALLOW_HEADERS,
    )

    @app.before_request
    def before():
        g.trace_id = ensure_trace_id(request.headers)
        g.start_time = time.perf_counter()
        g.route = None
        g.client_ip = client_address(request.remote_addr or "", request.headers, config.trust_proxy_headers)
        g.upstream_failure = False
        form_token = None
        if config.enable_csrf and not request.headers.get(CSRF_HEADER):
            form_token = _form_token()
        decision = engine.evaluate(RequestInfo(
            method=request.method,
            path=request.path,
            headers=request.headers,
            remote_addr=request.remote_addr or "",
            form_token=form_token,
        ))
        g.decision = decision
        if decision.allowed:
            g.route = classify(request.path)
            return None
        resp = _error_response(decision.code, decision.message, decision.details, g.trace_id, decision.status, decision.policy)
        if decision.retry_after is not None:
            resp.headers["Retry-After"] = str(decision.retry_after)
        return resp

    @app.after_request
    def after(resp):
        for k, v in SECURITY_HEADERS.items():
            resp.headers.setdefault(k, v)
        trace_id = getattr(g, "trace_id", "")
        resp.headers["X-Trace-Id"] = trace_id
        start = getattr(g, "start_time", None)
        duration_ms = int((time.perf_counter() - start) * 1000) if start is not None else 0
        resp.headers["X-Response-Time"] = str(duration_ms)
        decision = getattr(g, "decision", ALLOW)
        stats.record(
            resp.status_code,
            rejection="" if decision.allowed else decision.code,
            upstream_failure=getattr(g, "upstream_failure", False),
        )
        if config.enable_request_log:
            route = getattr(g, "route", None)
            log_request(
                request.method,
                request.path,
                resp.status_code,
                duration_ms,
                ip=getattr(g, "client_ip", ""),
                route=route.value if route is not None else "",
                decision=decision.kind.value,
                trace_id=trace_id,
            )
        return resp

    @app.errorhandler(500)
    def internal_error(e):
        logger.error("unhandled error path=%s error=%s", request.path, getattr(e, "original_exception", e))
        return _error_response("INTERNAL_ERROR", "网关内部错误", "", getattr(g, "trace_id", ""), 500)

    def health():
        return _json_response({"status": "ok", "uptime": round(stats.uptime(), 3), "server": config.server_name})

    def gateway_info():
        return _json_response({
            "serverName": config.server_name,
            "enableAuth": config.enable_auth,
            "authRequired": config.auth_required,
            "allowLocalBypass": config.allow_local_bypass,
            "maxSessions": config.max_sessions,
            "sessionTimeout": config.session_timeout,
            "csrfEnabled": config.enable_csrf,
            "rateLimitEnabled": config.enable_rate_limit,
            "tunnels": config.tunnel_status(),
        })

    def csrf_token():
        if not config.enable_csrf:
            return _error_response("NOT_FOUND", "Not Found", "CSRF 未启用", g.trace_id, 404)
        resp = _json_response({
            "token": issue_token(config.csrf_secret),
            "header": CSRF_HEADER,
            "expiresIn": engine.csrf_max_age,
        })
        resp.headers["Cache-Control"] = "no-store"
        return resp

    def proxy_api():
        decision = g.decision
        strip = () if decision.bypass else (LOCAL_BYPASS_HEADER,)
        headers = filter_request_headers(request.headers.items(), strip=strip, client_ip=request.remote_addr or "")
        try:
            upstream = forward_request(
                config.backend_url,
                _raw_path(),
                request.method,
                headers,
                body=request.get_data(cache=True) or None,
                query_string=request.query_string.decode("latin-1"),
                timeout=config.proxy_timeout,
            )
        except UpstreamError as e:
            g.upstream_failure = True
            json_log(proxy_logger, logging.WARNING, "upstream_failed", g.trace_id,
                     path=request.path, method=request.method, code=e.code, error=str(e))
            message = "后端响应超时" if e.timeout else "后端服务不可达"
            return _error_response(e.code, message, str(e), g.trace_id, e.status, "proxy")
        has_content_type = any(k.lower() == "content-type" for k, _ in upstream.headers)
        resp = Response(upstream.body, status=upstream.status, headers=upstream.headers, direct_passthrough=True)
        if not has_content_type:
            del resp.headers["Content-Type"]
        return resp

    def shell():
        resp = send_shell(static_root)
        if resp is None:
            return _error_response("NOT_FOUND", "Not Found", request.path, g.trace_id, 404)
        return resp

    def static_asset():
        rel = resolve_static(static_root, request.path)
        if rel is not None:
            return send_static(static_root, rel)
        return shell()

    handlers = {
        RouteKind.HEALTH: health,
        RouteKind.INFO: gateway_info,
        RouteKind.CSRF_TOKEN: csrf_token,
        RouteKind.API: proxy_api,
        RouteKind.STATIC: static_asset,
        RouteKind.SHELL: shell,
    }

    def dispatch(path):
        """任意方法都进入这里：API 原样转发（含 PROPFIND、普通 OPTIONS），其余路由只接受 GET/HEAD。"""
        route = g.route
        if request.method == "OPTIONS" and request.headers.get("Access-Control-Request-Method"):
            # CORS 预检：响应头由 flask-cors 补齐
            return Response(status=200)
        if route is not RouteKind.API:
            if not is_safe_path(request.path):
                return _error_response("NOT_FOUND", "Not Found", "", g.trace_id, 404)
            if request.method == "OPTIONS":
                return Response(status=200, headers={"Allow": LOCAL_METHODS_ALLOW})
            if request.method not in ("GET", "HEAD"):
                resp = _error_response("METHOD_NOT_ALLOWED", "不支持的请求方法", request.method, g.trace_id, 405)
                resp.headers["Allow"] = LOCAL_METHODS_ALLOW
                return resp
        return handlers[route]()

    # methods=None 的规则匹配任意方法，且不触发 Flask 自动 OPTIONS 应答
    app.url_map.add(Rule("/", defaults={"path": ""}, endpoint="dispatch"))
    app.url_map.add(Rule("/<path:path>", endpoint="dispatch"))
    app.view_functions["dispatch"] = dispatch

    return app


__all__ = ["create_app", "SECURITY_HEADERS"]
