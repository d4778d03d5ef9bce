"""
无服务器部署入口

单次调用、无状态、不支持 WebSocket。入参为 API Gateway 风格的 event，
路由规则与长驻服务完全一致（共用 ProxyService）。
由于该传输方式无法携带原始二进制，二进制响应体以 base64 编码并设置 isBase64Encoded。
"""

import asyncio
import base64
from functools import lru_cache
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from genplay_proxy.core.config import Settings, load_settings
from genplay_proxy.core.cors import cors_headers
from genplay_proxy.core.log_utils import setup_logging
from genplay_proxy.schemas.proxy_models import ProxyRequest, ProxyResponse
from genplay_proxy.services.proxy import ProxyService, health_payload
from genplay_proxy.services.upstream import create_http_client

TEXT_CONTENT_TYPES = ("text/", "application/json", "application/xml", "application/javascript")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """冷启动时读取一次配置"""
    settings = load_settings()
    setup_logging(settings.LOG_LEVEL, secret=settings.TRIPO_API_KEY)
    return settings


def event_to_request(event: dict[str, Any]) -> ProxyRequest:
    params = event.get("queryStringParameters") or {}
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        raw_body = base64.b64decode(body)
    else:
        raw_body = body.encode("utf-8") if isinstance(body, str) else bytes(body)

    return ProxyRequest(
        method=(event.get("httpMethod") or "GET").upper(),
        path=event.get("path") or "/",
        query=urlencode(params),
        headers=event.get("headers") or {},
        body=raw_body,
    )


def _is_text(content_type: str) -> bool:
    content_type = content_type.lower()
    return any(content_type.startswith(prefix) for prefix in TEXT_CONTENT_TYPES)


def response_to_result(response: ProxyResponse) -> dict[str, Any]:
    """将 ProxyResponse 渲染为 {statusCode, headers, body, isBase64Encoded}"""
    result = _render_body(response)
    multi_value = response.multi_value_headers()
    if multi_value:
        result["multiValueHeaders"] = multi_value
    return result


def _render_body(response: ProxyResponse) -> dict[str, Any]:
    content_type = next((v for k, v in response.headers.items() if k.lower() == "content-type"), "")
    if not response.body or _is_text(content_type):
        try:
            return {
                "statusCode": response.status_code,
                "headers": response.headers,
                "body": response.body.decode("utf-8"),
                "isBase64Encoded": False,
            }
        except UnicodeDecodeError:
            pass
    return {
        "statusCode": response.status_code,
        "headers": response.headers,
        "body": base64.b64encode(response.body).decode("ascii"),
        "isBase64Encoded": True,
    }


async def handle_event(
    event: dict[str, Any],
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    request = event_to_request(event)

    if request.method == "GET" and request.path.rstrip("/") == "/health":
        response = ProxyResponse.json(200, health_payload(settings), headers=cors_headers(settings.ALLOWED_ORIGIN))
        return response_to_result(response)

    async with create_http_client(settings, transport=transport) as client:
        response = await ProxyService(settings, client).handle(request)
    return response_to_result(response)


def handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """无服务器函数入口"""
    return asyncio.run(handle_event(event))
