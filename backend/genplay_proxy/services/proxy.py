"""
HTTP 反向代理核心

与具体运行形态无关：长驻的 FastAPI 服务和无服务器函数都把入站请求
转换为 ProxyRequest，交给 ProxyService.handle 处理，再把 ProxyResponse
渲染成各自的响应格式，从而保证两种部署形态遵循同一份请求/响应约定。
"""

from typing import Any

import httpx

from genplay_proxy.core.config import Settings
from genplay_proxy.core.cors import cors_headers
from genplay_proxy.core.exceptions import ApiException, UpstreamError
from genplay_proxy.core.log_utils import Logger, redact
from genplay_proxy.schemas.proxy_models import ProxyRequest, ProxyResponse
from genplay_proxy.services.download_relay import DownloadRelay
from genplay_proxy.services.upstream import (
    build_upstream_url,
    filter_request_headers,
    filter_response_headers,
    rewrite_path,
)


def health_payload(settings: Settings) -> dict[str, Any]:
    """存活检查，不依赖上游"""
    return {
        "status": "ok",
        "message": "GenPlay Proxy Server Running",
        "environment": settings.APP_ENV,
    }


class ProxyService:
    """按路由规则分发：预检 → 下载中转 → 通用路径改写转发"""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client
        self.download_relay = DownloadRelay(settings, client)

    @property
    def download_path(self) -> str:
        return f"{self.settings.LOCAL_PREFIX}/download"

    def is_download(self, request: ProxyRequest) -> bool:
        return request.method.upper() == "GET" and request.path.rstrip("/") == self.download_path

    async def handle(self, request: ProxyRequest) -> ProxyResponse:
        cors = cors_headers(self.settings.ALLOWED_ORIGIN)

        # 预检请求在本地应答，永远不转发
        if request.method.upper() == "OPTIONS":
            return ProxyResponse(status_code=200, headers=cors)

        try:
            if self.is_download(request):
                response = await self.download_relay.relay(request.query_param("url"))
            else:
                response = await self.forward(request)
        except ApiException as exc:
            response = self.error_response(exc.status_code, exc.detail)
        except Exception as exc:
            Logger.error("代理处理异常", exc=exc, path=request.path)
            response = self.error_response(500, {"error": "Internal server error", "message": str(exc)})

        response.headers.update(cors)
        return response

    async def forward(self, request: ProxyRequest) -> ProxyResponse:
        """将请求改写路径、注入凭证后转发给上游，并原样返回状态码和响应体"""
        # 缺少凭证时立即失败，绝不转发无凭证的请求
        api_key = self.settings.require_api_key()

        upstream_path = rewrite_path(request.path, self.settings.LOCAL_PREFIX, self.settings.UPSTREAM_PREFIX)
        if upstream_path is None:
            raise ApiException(
                status_code=404,
                detail={"error": "Not found", "message": f"Unsupported endpoint: {request.path}"},
            )

        url = build_upstream_url(self.settings, upstream_path, request.query)
        headers = filter_request_headers(request.headers)
        headers["Authorization"] = f"Bearer {api_key}"

        Logger.proxy_request(request.method, request.path, upstream_path, query=request.query)
        try:
            upstream = await self.client.request(
                request.method.upper(),
                url,
                headers=headers,
                content=request.body or None,
            )
        except httpx.HTTPError as exc:
            Logger.error("上游请求失败", exc=exc, path=request.path)
            raise UpstreamError("Proxy error", str(exc) or exc.__class__.__name__) from exc

        Logger.proxy_response(upstream.status_code, request.path, headers=dict(upstream.headers))
        return ProxyResponse.from_header_items(
            upstream.status_code,
            filter_response_headers(upstream.headers),
            body=upstream.content,
        )

    def error_response(self, status_code: int, detail: Any) -> ProxyResponse:
        """构造结构化错误响应，保证凭证不出现在响应体中"""
        if not isinstance(detail, dict):
            detail = {"error": "Proxy error", "message": str(detail)}
        secret = self.settings.TRIPO_API_KEY
        payload = {k: redact(v, secret) if isinstance(v, str) else v for k, v in detail.items()}
        return ProxyResponse.json(status_code, payload)
