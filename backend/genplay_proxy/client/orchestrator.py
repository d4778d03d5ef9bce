"""
任务编排客户端

通过代理驱动上游的多步异步任务：
上传 → 创建生成任务 → 轮询到终态 →（可选）格式转换并再次轮询 → 解析最终制品。

客户端只观察任务状态，从不写入；每种失败都有独立的异常类型，由调用方负责展示。
"""

import asyncio
import inspect
import json
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from genplay_proxy.core.config import Settings
from genplay_proxy.core.exceptions import (
    MissingCredentialError,
    MissingIdentifierError,
    PollingCancelledError,
    PollingTimeoutError,
    TaskFailedError,
    TransportError,
    UnsupportedFormatError,
)
from genplay_proxy.core.log_utils import Logger
from genplay_proxy.schemas.task_models import (
    ProgressEvent,
    ResolvedArtifact,
    Task,
    TaskStatus,
    UploadResult,
    url_extension,
)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_ATTEMPTS = 300  # 10 分钟

# 上传响应中 file token 可能出现的位置，按顺序尝试
FILE_TOKEN_FIELDS = (
    ("data", "image_token"),
    ("data", "file_token"),
    ("image_token",),
    ("file_token",),
    ("data", "id"),
    ("id",),
    ("upload_id",),
    ("file_id",),
)

TASK_ID_FIELDS = (
    ("data", "task_id"),
    ("data", "id"),
    ("task_id",),
    ("id",),
)

GENERATION_OPTIONS = (
    "model_version",
    "model_seed",
    "face_limit",
    "pbr",
    "texture_seed",
    "texture_alignment",
    "texture_quality",
    "auto_size",
    "orientation",
    "quad",
    "smart_low_poly",
    "generate_parts",
)

CONVERSION_FORMATS = ("GLTF", "USDZ", "FBX", "OBJ", "STL", "3MF")

# 打包输出（非单个模型文件）的类型
PACKAGED_TYPES = ("zip",)

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


def _lookup(payload: Any, path: tuple[str, ...]) -> Optional[str]:
    value = payload
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    if value is None or value == "":
        return None
    return str(value)


def extract_file_token(payload: dict[str, Any]) -> str:
    for path in FILE_TOKEN_FIELDS:
        token = _lookup(payload, path)
        if token:
            return token
    raise MissingIdentifierError("file token", payload)


def extract_task_id(payload: dict[str, Any]) -> str:
    for path in TASK_ID_FIELDS:
        task_id = _lookup(payload, path)
        if task_id:
            return task_id
    raise MissingIdentifierError("task id", payload)


def artifact_extension(artifact_url: str, artifact_type: Optional[str], requested_format: Optional[str] = None) -> str:
    """
    决定制品扩展名

    声明类型或 URL 表明是打包输出时使用压缩包扩展名；
    否则优先使用请求的转换格式，其次是声明类型，最后是 URL 后缀。
    """
    declared = (artifact_type or "").lower()
    from_url = url_extension(artifact_url)
    if declared in PACKAGED_TYPES or from_url in PACKAGED_TYPES:
        return "zip"
    if requested_format:
        return requested_format.lower()
    return declared or from_url or "glb"


class TaskOrchestrationClient:
    """
    基于代理的任务编排客户端

    Args:
        base_url: 代理地址，例如 http://localhost:3001/api
        api_key: 直连上游时使用的凭证；经由代理时可不传，由代理注入
        interval: 轮询间隔（秒）
        max_attempts: 最大轮询次数
        http_client: 可选的 httpx.AsyncClient（测试中用于注入 MockTransport）
        sleep: 轮询间的等待函数
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)

    @classmethod
    def from_settings(cls, settings: Settings, base_url: str, **kwargs) -> "TaskOrchestrationClient":
        """使用配置中的轮询参数构建客户端"""
        kwargs.setdefault("interval", settings.POLL_INTERVAL)
        kwargs.setdefault("max_attempts", settings.POLL_MAX_ATTEMPTS)
        return cls(base_url, **kwargs)

    async def __aenter__(self) -> "TaskOrchestrationClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.http.aclose()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {str(exc) or exc.__class__.__name__}") from exc

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            payload = None

        if response.is_error:
            message = payload.get("message") if isinstance(payload, dict) else None
            # 代理在缺少凭证时返回的结构化错误
            if isinstance(payload, dict) and payload.get("error") == "Server configuration error":
                raise MissingCredentialError(message or "Upstream credential is not configured")
            raise TransportError(
                f"{method} {path} returned {response.status_code}: {message or response.reason_phrase}",
                status_code=response.status_code,
            )

        if not isinstance(payload, dict):
            raise TransportError(f"{method} {path} returned a non-JSON body", status_code=response.status_code)

        code = payload.get("code")
        if isinstance(code, int) and not isinstance(code, bool) and code != 0:
            raise TransportError(f"{method} {path} returned code {code}: {payload.get('message', '')}")
        return payload

    # ------------------------------------------------------------------
    # 1. 上传
    # ------------------------------------------------------------------

    async def upload_file(
        self,
        content: bytes,
        filename: str,
        content_type: str = "image/png",
        options: Optional[dict[str, Any]] = None,
    ) -> UploadResult:
        form: dict[str, str] = {}
        for key, value in (options or {}).items():
            if value in (None, ""):
                continue
            form[key] = json.dumps(value) if isinstance(value, (list, dict)) else str(value)

        Logger.event("UPLOAD", "上传文件", filename=filename, size=len(content))
        payload = await self._request(
            "POST",
            "/upload/sts",
            files={"file": (filename, content, content_type)},
            data=form or None,
        )
        result = UploadResult(file_token=extract_file_token(payload))
        Logger.event("UPLOAD", "上传完成", file_token=result.file_token)
        return result

    # ------------------------------------------------------------------
    # 2. 创建生成任务
    # ------------------------------------------------------------------

    async def create_generation_task(
        self,
        file_token: str,
        prompt: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
        file_type: Optional[str] = None,
    ) -> str:
        if not file_token:
            raise MissingIdentifierError("file token")

        file_ref: dict[str, Any] = {"file_token": file_token}
        if file_type:
            file_ref["type"] = file_type

        request_data: dict[str, Any] = {
            "type": "image_to_model",
            "file": file_ref,
            "texture": False,  # 打印用的基础模型不需要贴图
        }
        if prompt:
            request_data["prompt"] = prompt

        options = options or {}
        for key in GENERATION_OPTIONS:
            value = options.get(key)
            if value is not None and value != "":
                request_data[key] = value

        Logger.debug("创建生成任务", request=request_data)
        payload = await self._request("POST", "/task", json=request_data)
        task_id = extract_task_id(payload)
        Logger.event("TASK_CREATE", "生成任务已创建", task_id=task_id)
        return task_id

    # ------------------------------------------------------------------
    # 3. 轮询
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Task:
        payload = await self._request("GET", f"/task/{task_id}")
        return Task.from_payload(payload, task_id=task_id)

    async def watch_task(
        self,
        task_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncGenerator[ProgressEvent, None]:
        """
        以固定间隔轮询任务，逐次产生进度事件。

        非终态（包括无法识别的状态）产生一个事件后继续；成功终态产生最后一个携带
        task 的事件后结束；失败终态抛出 TaskFailedError。传输错误计入同一次数预算，
        预算耗尽时抛出 PollingTimeoutError（若最后一次仍是传输错误则抛出该错误）。
        """
        last_error: Optional[TransportError] = None

        for attempt in range(1, self.max_attempts + 1):
            self._check_cancelled(task_id, attempt - 1, cancel_event)

            try:
                task = await self.get_task(task_id)
            except TransportError as exc:
                last_error = exc
                Logger.warning("查询任务状态失败，稍后重试", task_id=task_id, attempt=attempt, error=str(exc))
            else:
                last_error = None
                Logger.debug("任务状态", task_id=task_id, attempt=attempt, status=task.raw_status, progress=task.progress)

                if task.status == TaskStatus.SUCCESS:
                    Logger.event("TASK_DONE", "任务完成", task_id=task_id, attempts=attempt)
                    yield ProgressEvent(task_id=task_id, status=task.status, progress=task.progress, attempt=attempt, task=task)
                    return
                if task.status == TaskStatus.FAILED:
                    Logger.event("TASK_FAILED", "任务失败", task_id=task_id, status=task.raw_status)
                    raise TaskFailedError(task)

                yield ProgressEvent(task_id=task_id, status=task.status, progress=task.progress, attempt=attempt)

            if attempt < self.max_attempts:
                await self._wait(task_id, attempt, cancel_event)

        if last_error is not None:
            raise last_error
        raise PollingTimeoutError(task_id, self.max_attempts, self.interval)

    async def poll_task(
        self,
        task_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Task:
        """轮询到终态并返回成功的任务；进度回调只在非终态时调用"""
        async with aclosing(self.watch_task(task_id, cancel_event=cancel_event)) as events:
            async for event in events:
                if event.task is not None:
                    return event.task
                if on_progress is not None:
                    outcome = on_progress(event)
                    if inspect.isawaitable(outcome):
                        await outcome
        # watch_task 只会以成功事件或异常结束
        raise PollingTimeoutError(task_id, self.max_attempts, self.interval)

    def _check_cancelled(self, task_id: str, attempts: int, cancel_event: Optional[asyncio.Event]):
        if cancel_event is not None and cancel_event.is_set():
            Logger.event("TASK_CANCEL", "轮询已取消", task_id=task_id, attempts=attempts)
            raise PollingCancelledError(task_id, attempts)

    async def _wait(self, task_id: str, attempt: int, cancel_event: Optional[asyncio.Event]):
        if cancel_event is None:
            await self._sleep(self.interval)
            return

        self._check_cancelled(task_id, attempt, cancel_event)
        # 等待间隔与取消信号竞争，先完成者结束等待
        sleeper = asyncio.ensure_future(self._sleep(self.interval))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, waiter):
                pending.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        self._check_cancelled(task_id, attempt, cancel_event)

    # ------------------------------------------------------------------
    # 4. 格式转换与制品解析
    # ------------------------------------------------------------------

    async def convert_model(
        self,
        original_task_id: str,
        target_format: str,
        options: Optional[dict[str, Any]] = None,
    ) -> str:
        if not original_task_id:
            raise MissingIdentifierError("original task id")
        target_format = (target_format or "").upper()
        if target_format not in CONVERSION_FORMATS:
            raise UnsupportedFormatError(target_format, CONVERSION_FORMATS)

        request_data = {
            "type": "convert_model",
            "format": target_format,
            "original_model_task_id": original_task_id,
            **(options or {}),
        }
        payload = await self._request("POST", "/task", json=request_data)
        task_id = extract_task_id(payload)
        Logger.event("TASK_CREATE", "转换任务已创建", task_id=task_id, source=original_task_id, format=target_format)
        return task_id

    def resolve_artifact(self, task: Task, requested_format: Optional[str] = None) -> ResolvedArtifact:
        if task.result is None or not task.result.artifact_url:
            raise MissingIdentifierError("artifact URL", task.raw)
        return ResolvedArtifact(
            task_id=task.task_id,
            url=task.result.artifact_url,
            extension=artifact_extension(task.result.artifact_url, task.result.artifact_type, requested_format),
            artifact_type=task.result.artifact_type,
        )

    @staticmethod
    def needs_conversion(artifact: ResolvedArtifact, target_format: Optional[str]) -> bool:
        return bool(target_format) and target_format.lower() != artifact.extension

    async def generate(
        self,
        content: bytes,
        filename: str,
        prompt: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
        target_format: Optional[str] = None,
        content_type: str = "image/png",
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ResolvedArtifact:
        """完整流程：上传 → 生成 → 轮询 →（按需）转换 → 解析制品"""
        upload = await self.upload_file(content, filename, content_type)
        task_id = await self.create_generation_task(upload.file_token, prompt, options)
        task = await self.poll_task(task_id, on_progress=on_progress, cancel_event=cancel_event)
        artifact = self.resolve_artifact(task)

        if not self.needs_conversion(artifact, target_format):
            return artifact

        conversion_id = await self.convert_model(task.task_id or task_id, target_format)
        converted = await self.poll_task(conversion_id, on_progress=on_progress, cancel_event=cancel_event)
        return self.resolve_artifact(converted, requested_format=target_format)

    async def download_artifact(self, url: str) -> bytes:
        """经由代理的下载中转获取制品字节"""
        try:
            response = await self.http.get("/download", params={"url": url})
        except httpx.HTTPError as exc:
            raise TransportError(f"Failed to download model: {str(exc) or exc.__class__.__name__}") from exc
        if response.is_error:
            raise TransportError(f"Failed to download model: {response.status_code}", status_code=response.status_code)
        return response.content
