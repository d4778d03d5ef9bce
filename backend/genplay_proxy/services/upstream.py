"""与上游 HTTP API 通信的辅助函数：路径改写、请求头过滤、共享 httpx 客户端"""

from typing import Mapping, Optional

import httpx

from genplay_proxy.core.config import Settings
from genplay_proxy.core.cors import is_cors_header

# 不应转发给上游的请求头（逐跳头、浏览器来源信息、客户端自带的凭证）
EXCLUDED_REQUEST_HEADERS = {
    "host",
    "content-length",
    "connection",
    "keep-alive",
    "transfer-encoding",
    "upgrade",
    "te",
    "trailer",
    "proxy-authorization",
    "proxy-connection",
    "origin",
    "referer",
    "authorization",
    "x-api-key",
}

# httpx 会自动解压，长度与编码相关的响应头不再适用
EXCLUDED_RESPONSE_HEADERS = {
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
    "keep-alive",
}


def create_http_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """创建进程内共享的 httpx 客户端（连接池复用）"""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PROXY_TIMEOUT, connect=10.0),
        transport=transport,
    )


def rewrite_path(path: str, local_prefix: str, upstream_prefix: str) -> Optional[str]:
    """
    将本地前缀改写为上游前缀，例如 /api/task/abc → /openapi/task/abc

    不以本地前缀开头的路径返回 None。
    """
    if path == local_prefix:
        return upstream_prefix
    if path.startswith(local_prefix + "/"):
        return upstream_prefix + path[len(local_prefix):]
    return None


def build_upstream_url(settings: Settings, upstream_path: str, query: str = "") -> str:
    url = f"{settings.UPSTREAM_BASE_URL}{upstream_path}"
    if query:
        url = f"{url}?{query}"
    return url


def filter_request_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """过滤掉不应转发的请求头"""
    return {k: v for k, v in headers.items() if k.lower() not in EXCLUDED_REQUEST_HEADERS}


def filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    """过滤上游响应头，上游自带的 CORS 头由本地 CORS 头覆盖；同名头逐个保留"""
    return [
        (k, v)
        for k, v in headers.multi_items()
        if k.lower() not in EXCLUDED_RESPONSE_HEADERS and not is_cors_header(k)
    ]
