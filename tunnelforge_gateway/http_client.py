"""
后端转发：urllib3 连接池复用 TCP 连接，流式回传后端响应。
- 方法、请求头、请求体原样转发；仅去除逐跳头、Host、Content-Length 及安全层要求剥离的头。
- 不重试（重试策略属于调用方）；每次转发都有超时预算，超时即中断并释放连接。
- 响应体不解压、不改写，按块流式返回。
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

import urllib3
from urllib3.exceptions import HTTPError as Urllib3HTTPError
from urllib3.exceptions import NewConnectionError
from urllib3.exceptions import TimeoutError as Urllib3TimeoutError

logger = logging.getLogger("gateway.proxy")

CONNECT_TIMEOUT_SEC = 5.0
CHUNK_SIZE = 64 * 1024
POOL_NUM_POOLS = 16
POOL_MAXSIZE = 32

HOP_BY_HOP = frozenset((
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
))
_REQUEST_DROP = HOP_BY_HOP | {"host", "content-length"}

_pool: Optional[urllib3.PoolManager] = None
_pool_lock = threading.Lock()


class UpstreamError(Exception):
    """后端不可达或超时。"""

    def __init__(self, message: str, timeout: bool = False):
        super().__init__(message)
        self.timeout = timeout

    @property
    def status(self) -> int:
        return 504 if self.timeout else 502

    @property
    def code(self) -> str:
        return "UPSTREAM_TIMEOUT" if self.timeout else "UPSTREAM_UNREACHABLE"


@dataclass
class UpstreamResponse:
    status: int
    headers: List[Tuple[str, str]]
    body: Iterable[bytes]


def _get_pool() -> urllib3.PoolManager:
    """获取或创建全局连接池。"""
    global _pool
    if _pool is not None:
        return _pool
    with _pool_lock:
        if _pool is None:
            _pool = urllib3.PoolManager(num_pools=POOL_NUM_POOLS, maxsize=POOL_MAXSIZE, block=False)
            logger.info("gateway http pool created num_pools=%s maxsize=%s", POOL_NUM_POOLS, POOL_MAXSIZE)
        return _pool


def close_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.clear()
            _pool = None


def build_target_url(base_url: str, path: str, query_string: str = "") -> str:
    url = base_url.rstrip("/") + path
    if query_string:
        url += "?" + query_string
    return url


def filter_request_headers(
    headers: Iterable[Tuple[str, str]],
    strip: Iterable[str] = (),
    client_ip: str = "",
) -> List[Tuple[str, str]]:
    drop = _REQUEST_DROP | {h.lower() for h in strip}
    out = []
    forwarded_for = ""
    for k, v in headers:
        lk = k.lower()
        if lk in drop:
            continue
        if lk == "x-forwarded-for":
            forwarded_for = v
            continue
        out.append((k, v))
    if client_ip:
        forwarded_for = f"{forwarded_for}, {client_ip}" if forwarded_for else client_ip
    if forwarded_for:
        out.append(("X-Forwarded-For", forwarded_for))
    return out


def filter_response_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in HOP_BY_HOP]


class _UpstreamBody:
    """后端响应体的流式迭代器；close() 保证连接归还或关闭，即使从未开始迭代。"""

    def __init__(self, resp: urllib3.BaseHTTPResponse, url: str):
        self._resp = resp
        self._url = url
        self._released = False

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._resp.stream(CHUNK_SIZE, decode_content=False):
                if chunk:
                    yield chunk
        except (Urllib3HTTPError, OSError) as e:
            # 状态行已发出，只能中断连接
            logger.warning("upstream stream aborted url=%s error=%s", self._url, e)
            self._resp.close()
        finally:
            self.close()

    def close(self) -> None:
        if self._released:
            return
        self._released = True
        if not self._resp.isclosed():
            self._resp.close()
        self._resp.release_conn()


def forward_request(
    base_url: str,
    path: str,
    method: str,
    headers: List[Tuple[str, str]],
    body: Optional[bytes] = None,
    query_string: str = "",
    timeout: float = 30.0,
) -> UpstreamResponse:
    """
    转发一次请求到后端，返回状态码、响应头与流式响应体。
    超时抛 UpstreamError(timeout=True)，其余连接失败抛 UpstreamError。
    """
    url = build_target_url(base_url, path, query_string)
    header_dict = urllib3.HTTPHeaderDict()
    for k, v in headers:
        header_dict.add(k, v)
    try:
        resp = _get_pool().request(
            method.upper(),
            url,
            body=body or None,
            headers=header_dict,
            timeout=urllib3.Timeout(connect=min(CONNECT_TIMEOUT_SEC, timeout), read=timeout),
            retries=False,
            redirect=False,
            preload_content=False,
            decode_content=False,
        )
    except NewConnectionError as e:
        # urllib3 中 NewConnectionError 继承自 ConnectTimeoutError，须先于超时判断
        raise UpstreamError(f"backend unreachable: {e}") from e
    except Urllib3TimeoutError as e:
        raise UpstreamError(f"backend timed out after {timeout:g}s", timeout=True) from e
    except (Urllib3HTTPError, OSError) as e:
        raise UpstreamError(f"backend unreachable: {e}") from e
    return UpstreamResponse(
        status=resp.status,
        headers=filter_response_headers(resp.headers.items()),
        body=_UpstreamBody(resp, url),
    )


__all__ = [
    "HOP_BY_HOP",
    "UpstreamError",
    "UpstreamResponse",
    "build_target_url",
    "close_pool",
    "filter_request_headers",
    "filter_response_headers",
    "forward_request",
]
