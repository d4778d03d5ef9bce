"""
二进制下载中转

在服务端抓取任意制品 URL（通常位于上游的对象存储），再把字节原样返回给浏览器，
以绕开浏览器的跨域限制。该请求不注入任何凭证。
"""

from typing import Optional

import httpx

from genplay_proxy.core.config import Settings
from genplay_proxy.core.exceptions import BadRequest, UpstreamError
from genplay_proxy.core.log_utils import Logger
from genplay_proxy.schemas.proxy_models import ProxyResponse

OCTET_STREAM = "application/octet-stream"


def normalize_target_url(url: str) -> str:
    """缺少协议前缀的 URL 视为 https"""
    url = url.strip()
    return url if url.startswith("http") else f"https://{url}"


class DownloadRelay:
    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client

    async def relay(self, url: Optional[str]) -> ProxyResponse:
        """
        抓取目标 URL 并构造二进制响应

        Raises:
            BadRequest: 缺少 url 参数
            UpstreamError: 非 2xx 响应、网络错误、URL 非法或超出大小上限
        """
        if not url:
            raise BadRequest("URL parameter is required")

        full_url = normalize_target_url(url)
        Logger.event("DOWNLOAD", "开始下载制品", url=full_url)

        body = await self.fetch(full_url, original_url=url)

        Logger.event("DOWNLOAD", "制品下载完成", size=len(body), content_type=OCTET_STREAM)
        return ProxyResponse(
            status_code=200,
            headers={"Content-Type": OCTET_STREAM, "Content-Length": str(len(body))},
            body=body,
        )

    async def fetch(self, full_url: str, original_url: Optional[str] = None) -> bytes:
        """流式读取响应体，超过 MAX_DOWNLOAD_BYTES 时中止"""
        limit = self.settings.MAX_DOWNLOAD_BYTES
        original_url = original_url or full_url
        try:
            async with self.client.stream(
                "GET",
                full_url,
                follow_redirects=True,
                timeout=self.settings.DOWNLOAD_TIMEOUT,
            ) as response:
                if not response.is_success:
                    Logger.warning("制品下载返回错误状态", status=response.status_code, url=full_url)
                    raise UpstreamError("Download failed", f"HTTP error! status: {response.status_code}", url=original_url)

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > limit:
                    raise UpstreamError("Download failed", f"Artifact exceeds {limit} bytes", url=original_url)

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > limit:
                        raise UpstreamError("Download failed", f"Artifact exceeds {limit} bytes", url=original_url)
                return bytes(buffer)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            Logger.error("制品下载失败", exc=exc, url=full_url)
            raise UpstreamError("Download failed", str(exc) or exc.__class__.__name__, url=original_url) from exc
