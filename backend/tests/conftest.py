import asyncio
import threading
from typing import Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from genplay_proxy.core.config import Settings
from genplay_proxy.main import create_app

API_KEY = "sk-test-secret-123"
ORIGIN = "https://app.example"


def make_settings(**overrides) -> Settings:
    values = {"TRIPO_API_KEY": API_KEY, "ALLOWED_ORIGIN": ORIGIN}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class UpstreamRecorder:
    """记录所有发往上游的请求，并用 responder 生成响应"""

    def __init__(self, responder: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: list[httpx.Request] = []
        self.responder = responder or (lambda request: httpx.Response(200, json={"code": 0, "data": {}}))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class FakeUpstreamSocket:
    """模拟上游 WebSocket：先推送预设帧，然后结束、抛错或保持打开"""

    def __init__(self, frames=(), fail_with: Optional[Exception] = None, echo: bool = False):
        self.frames = list(frames)
        self.fail_with = fail_with
        self.echo = echo
        self.sent: list = []
        self.closed = threading.Event()
        self._queue: Optional[asyncio.Queue] = None

    def _inbox(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.fail_with is not None:
            raise self.fail_with
        if not self.echo:
            return
        while True:
            item = await self._inbox().get()
            if item is None:
                return
            yield item

    async def send(self, frame):
        self.sent.append(frame)
        if self.echo:
            await self._inbox().put(f"echo:{frame}" if isinstance(frame, str) else frame)

    async def close(self):
        self.closed.set()
        if self._queue is not None:
            self._queue.put_nowait(None)


class FakeConnector:
    def __init__(self, upstream: Optional[FakeUpstreamSocket] = None, error: Optional[Exception] = None):
        self.upstream = upstream
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url: str, headers: dict):
        self.calls.append((url, headers))
        if self.error is not None:
            raise self.error
        return self.upstream


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()


@pytest.fixture
def make_client():
    """构建带模拟上游的 TestClient"""
    clients = []

    def _make(settings: Settings, recorder: Optional[UpstreamRecorder] = None, connector=None) -> TestClient:
        recorder = recorder or UpstreamRecorder()
        http_client = httpx.AsyncClient(transport=recorder.transport)
        app = create_app(settings=settings, http_client=http_client, ws_connector=connector or FakeConnector())
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
