"""
请求分类：显式有序的 (匹配规则 -> 路由类型) 表，按顺序求值，首个命中即返回。
分类只在安全策略放行之后进行。
"""
from __future__ import annotations

from enum import Enum
from typing import Callable, Tuple


class RouteKind(str, Enum):
    HEALTH = "health"
    INFO = "info"
    CSRF_TOKEN = "csrf_token"
    API = "api"
    STATIC = "static"
    SHELL = "shell"


API_PREFIX = "/api/"
STATIC_PREFIXES = ("/bundle/", "/assets/")
STATIC_FILES = frozenset(("/favicon.ico", "/sw.js"))
STATIC_SUFFIXES = (".js", ".css")


def _exact(target: str) -> Callable[[str], bool]:
    return lambda path: path == target


def _is_api(path: str) -> bool:
    return path == "/api" or path.startswith(API_PREFIX)


def _is_static(path: str) -> bool:
    return path.startswith(STATIC_PREFIXES) or path in STATIC_FILES or path.endswith(STATIC_SUFFIXES)


ROUTE_TABLE: Tuple[Tuple[Callable[[str], bool], RouteKind], ...] = (
    (_exact("/health"), RouteKind.HEALTH),
    (_exact("/gateway/info"), RouteKind.INFO),
    (_exact("/csrf-token"), RouteKind.CSRF_TOKEN),
    (_is_api, RouteKind.API),
    (_is_static, RouteKind.STATIC),
)


def classify(path: str) -> RouteKind:
    for matches, kind in ROUTE_TABLE:
        if matches(path):
            return kind
    return RouteKind.SHELL


__all__ = ["ROUTE_TABLE", "RouteKind", "classify"]
