"""
静态资源：请求路径直接拼接到静态根目录下定位文件；Content-Type 仅按扩展名映射决定。
任何包含 ".." 段、反斜杠或 NUL 的路径一律视为不存在（404），不触达文件系统。
文件不存在时回退单页应用外壳 index.html。
"""
from __future__ import annotations

import mimetypes
import os
from typing import Optional

from flask import Response, send_from_directory

SHELL_DOCUMENT = "index.html"
SHELL_MIMETYPE = "text/html"
DEFAULT_MIMETYPE = "application/octet-stream"

# 扩展名映射优先于系统 mimetypes，保证各平台一致
CONTENT_TYPES = {
    ".html": "text/html",
    ".htm": "text/html",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".css": "text/css",
    ".json": "application/json",
    ".map": "application/json",
    ".webmanifest": "application/manifest+json",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".wasm": "application/wasm",
    ".txt": "text/plain",
}


def content_type_for(filename: str) -> str:
    ext = os.path.splitext(filename)[1].lower()
    if ext in CONTENT_TYPES:
        return CONTENT_TYPES[ext]
    guessed, _ = mimetypes.guess_type(filename, strict=False)
    return guessed or DEFAULT_MIMETYPE


def is_safe_path(path: str) -> bool:
    if "\\" in path or "\x00" in path:
        return False
    return ".." not in path.split("/")


def resolve_static(root: str, path: str) -> Optional[str]:
    """返回静态根下的相对路径；不安全或文件不存在时返回 None。"""
    if not root or not is_safe_path(path):
        return None
    rel = path.lstrip("/")
    if not rel:
        return None
    full = os.path.join(root, rel)
    if not os.path.isfile(full):
        return None
    return rel


def send_static(root: str, rel: str) -> Response:
    return send_from_directory(root, rel, mimetype=content_type_for(rel))


def send_shell(root: str) -> Optional[Response]:
    """单页应用外壳；不存在时返回 None，由调用方给出 404。"""
    if not root or not os.path.isfile(os.path.join(root, SHELL_DOCUMENT)):
        return None
    return send_from_directory(root, SHELL_DOCUMENT, mimetype=SHELL_MIMETYPE)


def check_static_root(root: str) -> bool:
    """静态根目录存在且可读。"""
    return bool(root) and os.path.isdir(root) and os.access(root, os.R_OK | os.X_OK)


__all__ = [
    "CONTENT_TYPES",
    "check_static_root",
    "content_type_for",
    "is_safe_path",
    "resolve_static",
    "send_shell",
    "send_static",
]
