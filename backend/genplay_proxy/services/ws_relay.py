"""
WebSocket 中继

每个浏览器连接对应一个上游连接（按任务 ID 配对），双向原样转发帧，
不检查、不改写、不缓冲内容。任意一端关闭或出错，另一端随即关闭；不重连。
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosedOK

from genplay_proxy.core.config import Settings
from genplay_proxy.core.exceptions import ConfigError, RelayTransportError
from genplay_proxy.core.log_utils import Logger, redact

# WebSocket 关闭码
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

UpstreamConnector = Callable[[str, dict[str, str]], Awaitable[Any]]


async def connect_upstream(url: str, headers: dict[str, str]):
    """打开上游 WebSocket，凭证放在请求头中而不是 URL 里"""
    return await connect(url, additional_headers=headers, max_size=None, open_timeout=10)


class RelayState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class LegClosed:
    """某一端结束转发的原因"""

    side: str  # "browser" 或 "upstream"
    error: Optional[RelayTransportError] = None


class WebSocketRelay:
    """一对 浏览器/上游 WebSocket 连接"""

    def __init__(
        self,
        task_id: str,
        browser: WebSocket,
        settings: Settings,
        connector: UpstreamConnector = connect_upstream,
    ):
        self.task_id = task_id
        self.browser = browser
        self.settings = settings
        self.connector = connector
        self.upstream = None
        self.state = RelayState.CONNECTING

    async def run(self):
        """连接上游并转发，直到任意一端关闭；浏览器端须已 accept"""
        try:
            api_key = self.settings.require_api_key()
        except ConfigError as exc:
            Logger.error("无法建立中继：缺少凭证", task_id=self.task_id)
            await self._close_browser(CLOSE_INTERNAL_ERROR, exc.detail["message"])
            self.state = RelayState.CLOSED
            return

        url = self.settings.upstream_watch_url(self.task_id)
        try:
            self.upstream = await self.connector(url, {"Authorization": f"Bearer {api_key}"})
        except Exception as exc:
            Logger.error("上游 WebSocket 连接失败", exc=exc, task_id=self.task_id)
            await self._close_browser(CLOSE_INTERNAL_ERROR, "Upstream connection failed")
            self.state = RelayState.CLOSED
            return

        self.state = RelayState.OPEN
        Logger.event("RELAY_OPEN", "中继已建立", task_id=self.task_id)

        to_browser = asyncio.create_task(self._upstream_to_browser())
        to_upstream = asyncio.create_task(self._browser_to_upstream())
        try:
            done, pending = await asyncio.wait({to_browser, to_upstream}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            to_browser.cancel()
            to_upstream.cancel()
            await asyncio.gather(to_browser, to_upstream, return_exceptions=True)
            await self._shutdown(LegClosed("upstream", RelayTransportError(self.task_id, "relay", "server shutdown")))
            raise

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        await self._shutdown(done.pop().result())

    async def _shutdown(self, closed: LegClosed):
        """根据先结束的一端决定如何关闭另一端"""
        self.state = RelayState.CLOSING
        if closed.error:
            Logger.warning("中继传输异常", task_id=self.task_id, side=closed.side, reason=closed.error.reason)

        if closed.side == "upstream":
            if closed.error:
                await self._close_browser(CLOSE_INTERNAL_ERROR, "Upstream error")
            else:
                await self._close_browser(CLOSE_NORMAL)
            await self._close_upstream()
        else:
            await self._close_upstream()
            await self._close_browser(CLOSE_NORMAL)

        self.state = RelayState.CLOSED
        Logger.event("RELAY_CLOSED", "中继已关闭", task_id=self.task_id, closed_by=closed.side)

    async def _upstream_to_browser(self) -> LegClosed:
        try:
            async for frame in self.upstream:
                Logger.ws_browser(self.task_id, frame)
                try:
                    if isinstance(frame, str):
                        await self.browser.send_text(frame)
                    else:
                        await self.browser.send_bytes(frame)
                except Exception as exc:
                    return LegClosed("browser", RelayTransportError(self.task_id, "browser", str(exc)))
        except ConnectionClosedOK:
            return LegClosed("upstream")
        except Exception as exc:
            return LegClosed("upstream", RelayTransportError(self.task_id, "upstream", self._safe(exc)))
        return LegClosed("upstream")

    async def _browser_to_upstream(self) -> LegClosed:
        while True:
            try:
                message = await self.browser.receive()
            except Exception as exc:
                return LegClosed("browser", RelayTransportError(self.task_id, "browser", str(exc)))

            if message["type"] == "websocket.disconnect":
                return LegClosed("browser")

            frame = message.get("text")
            if frame is None:
                frame = message.get("bytes")
            if frame is None:
                continue

            Logger.ws_upstream(self.task_id, frame)
            try:
                await self.upstream.send(frame)
            except ConnectionClosedOK:
                return LegClosed("upstream")
            except Exception as exc:
                return LegClosed("upstream", RelayTransportError(self.task_id, "upstream", self._safe(exc)))

    async def _close_browser(self, code: int, reason: str = ""):
        if self.browser.application_state != WebSocketState.CONNECTED:
            return
        if self.browser.client_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.browser.close(code=code, reason=reason)
        except (RuntimeError, OSError) as exc:
            Logger.debug("关闭浏览器连接时出错", task_id=self.task_id, error=str(exc))

    async def _close_upstream(self):
        if self.upstream is None:
            return
        try:
            await self.upstream.close()
        except Exception as exc:
            Logger.debug("关闭上游连接时出错", task_id=self.task_id, error=self._safe(exc))

    def _safe(self, exc: Exception) -> str:
        return redact(str(exc) or exc.__class__.__name__, self.settings.TRIPO_API_KEY)


class RelayRegistry:
    """记录存活的中继，仅用于健康检查计数和关闭时清理；各中继之间不共享状态"""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def run(self, relay: WebSocketRelay):
        task = asyncio.current_task()
        self._tasks.add(task)
        try:
            await relay.run()
        finally:
            self._tasks.discard(task)

    async def close_all(self):
        """应用关闭时取消所有中继"""
        if not self._tasks:
            return
        Logger.event("SHUTDOWN", f"关闭 {len(self._tasks)} 个中继")
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
