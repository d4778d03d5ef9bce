from typing import Annotated, Optional

from fastapi import Depends, Query, Request, Response
from fastapi.routing import APIRouter

from genplay_proxy.api.deps import get_proxy_service, get_settings
from genplay_proxy.core.config import Settings
from genplay_proxy.core.cors import cors_headers
from genplay_proxy.schemas.proxy_models import ProxyRequest
from genplay_proxy.services.proxy import ProxyService

router = APIRouter(tags=["Proxy"])

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def raw_request_path(request: Request) -> str:
    """未解码的请求路径，保留 %2F 等转义，使上游收到的路径与浏览器发送的一致"""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        return raw_path.decode("latin-1").split("?", 1)[0]
    return request.url.path


# 下载中转必须在通用代理路由之前注册
@router.get("/download", name="proxy.download")
async def download_artifact(
    service: Annotated[ProxyService, Depends(get_proxy_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    url: Annotated[Optional[str], Query(description="Artifact URL, scheme optional (defaults to https)")] = None,
):
    """
    在服务端抓取制品并以二进制返回，绕开浏览器跨域限制。
    """
    result = await service.download_relay.relay(url)
    headers = {**result.headers, **cors_headers(settings.ALLOWED_ORIGIN)}
    return Response(content=result.body, status_code=result.status_code, headers=headers)


@router.api_route("/{path:path}", methods=PROXY_METHODS, name="proxy.forward")
async def forward(
    path: str,
    request: Request,
    service: Annotated[ProxyService, Depends(get_proxy_service)],
):
    """
    将 /api/<rest> 转发到上游 /openapi/<rest>，注入凭证，状态码与响应体原样返回。
    """
    proxy_request = ProxyRequest(
        method=request.method,
        path=raw_request_path(request),
        query=request.url.query,
        headers=dict(request.headers),
        body=await request.body(),
    )
    result = await service.handle(proxy_request)
    response = Response(content=result.body, status_code=result.status_code, headers=result.headers)
    for name, value in result.repeated_headers:
        response.headers.append(name, value)
    return response
