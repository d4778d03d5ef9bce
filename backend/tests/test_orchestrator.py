import asyncio
import json

import httpx
import pytest

from genplay_proxy.client.orchestrator import (
    TaskOrchestrationClient,
    artifact_extension,
    extract_file_token,
    extract_task_id,
)
from genplay_proxy.core.exceptions import (
    MissingCredentialError,
    MissingIdentifierError,
    PollingCancelledError,
    PollingTimeoutError,
    TaskClientError,
    TaskFailedError,
    TransportError,
    UnsupportedFormatError,
)
from genplay_proxy.schemas.task_models import Task, TaskStatus

BASE_URL = "http://proxy.test/api"


class FakeProxy:
    """按路径分发的代理桩，记录每个任务被查询的次数"""

    def __init__(self):
        self.status_sequences: dict[str, list] = {}
        self.status_calls: dict[str, int] = {}
        self.created: list[dict] = []
        self.upload_response = {"code": 0, "data": {"image_token": "ft_1"}}
        self.create_responses = {"image_to_model": "t_1", "convert_model": "t_2"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/upload/sts" and request.method == "POST":
            return httpx.Response(200, json=self.upload_response)
        if path == "/api/task" and request.method == "POST":
            body = json.loads(request.content)
            self.created.append(body)
            task_id = self.create_responses.get(body["type"])
            data = {"task_id": task_id} if task_id else {}
            return httpx.Response(200, json={"code": 0, "data": data})
        if path.startswith("/api/task/") and request.method == "GET":
            task_id = path.rsplit("/", 1)[-1]
            calls = self.status_calls.get(task_id, 0)
            self.status_calls[task_id] = calls + 1
            sequence = self.status_sequences[task_id]
            step = sequence[min(calls, len(sequence) - 1)]
            if callable(step):
                return step(request)
            return httpx.Response(200, json={"code": 0, "data": {"task_id": task_id, **step}})
        return httpx.Response(404, json={"error": "Not found"})


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


def make_orchestrator(proxy: FakeProxy, max_attempts: int = 300, sleep=None) -> TaskOrchestrationClient:
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(proxy))
    return TaskOrchestrationClient(
        BASE_URL,
        interval=2.0,
        max_attempts=max_attempts,
        http_client=http,
        sleep=sleep or SleepRecorder(),
    )


RUNNING = {"status": "running", "progress": 10}
SUCCESS_GLB = {"status": "success", "result": {"artifactUrl": "https://x/model.glb", "artifactType": "glb"}}


# ----------------------------------------------------------------------------
# 轮询状态机
# ----------------------------------------------------------------------------


async def test_poll_returns_success_after_running_polls():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [RUNNING, RUNNING, RUNNING, SUCCESS_GLB]
    sleep = SleepRecorder()
    events = []

    async with make_orchestrator(proxy, sleep=sleep) as client:
        task = await client.poll_task("t_1", on_progress=events.append)

    assert task.status == TaskStatus.SUCCESS
    assert task.result.artifact_url == "https://x/model.glb"
    assert proxy.status_calls["t_1"] == 4
    assert len(events) == 3
    assert [e.attempt for e in events] == [1, 2, 3]
    assert sleep.calls == [2.0, 2.0, 2.0]


async def test_poll_times_out_after_max_attempts():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [RUNNING]
    sleep = SleepRecorder()

    async with make_orchestrator(proxy, max_attempts=7, sleep=sleep) as client:
        with pytest.raises(PollingTimeoutError) as exc_info:
            await client.poll_task("t_1")

    assert exc_info.value.attempts == 7
    assert proxy.status_calls["t_1"] == 7
    assert len(sleep.calls) == 6


async def test_poll_stops_immediately_on_failure():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [{"status": "failed"}]
    events = []

    async with make_orchestrator(proxy) as client:
        with pytest.raises(TaskFailedError) as exc_info:
            await client.poll_task("t_1", on_progress=events.append)

    assert proxy.status_calls["t_1"] == 1
    assert events == []
    assert exc_info.value.task.status == TaskStatus.FAILED


@pytest.mark.parametrize("raw_status", ["cancelled", "banned", "expired"])
async def test_other_failure_statuses_are_terminal(raw_status):
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [RUNNING, {"status": raw_status}]

    async with make_orchestrator(proxy) as client:
        with pytest.raises(TaskFailedError):
            await client.poll_task("t_1")

    assert proxy.status_calls["t_1"] == 2


async def test_unrecognized_status_keeps_polling():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [{"status": "queued"}, {"status": "uploading", "progress": 5}, SUCCESS_GLB]
    events = []

    async with make_orchestrator(proxy) as client:
        await client.poll_task("t_1", on_progress=events.append)

    assert [e.status for e in events] == [TaskStatus.QUEUED, TaskStatus.UNKNOWN]
    assert events[1].progress == 5


async def test_transient_errors_are_retried_within_budget():
    def unavailable(request):
        return httpx.Response(503, json={"message": "busy"})

    def network_down(request):
        raise httpx.ConnectError("down", request=request)

    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [unavailable, network_down, RUNNING, SUCCESS_GLB]
    events = []

    async with make_orchestrator(proxy, max_attempts=5) as client:
        task = await client.poll_task("t_1", on_progress=events.append)

    assert task.status == TaskStatus.SUCCESS
    assert proxy.status_calls["t_1"] == 4
    assert len(events) == 1


async def test_persistent_transient_errors_exhaust_budget():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [lambda request: httpx.Response(502, text="bad gateway")]

    async with make_orchestrator(proxy, max_attempts=3) as client:
        with pytest.raises(TransportError) as exc_info:
            await client.poll_task("t_1")

    assert exc_info.value.status_code == 502
    assert proxy.status_calls["t_1"] == 3


async def test_cancel_event_stops_polling_without_result():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [RUNNING]
    cancel = asyncio.Event()

    def on_progress(event):
        if event.attempt == 2:
            cancel.set()

    sleep = SleepRecorder()

    async with make_orchestrator(proxy, max_attempts=50, sleep=sleep) as client:
        with pytest.raises(PollingCancelledError):
            await client.poll_task("t_1", on_progress=on_progress, cancel_event=cancel)

    assert proxy.status_calls["t_1"] == 2
    assert sleep.calls == [2.0]


async def test_cancel_interrupts_pending_wait():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [RUNNING]
    cancel = asyncio.Event()
    never = asyncio.Event()

    async def blocking_sleep(seconds):
        await never.wait()

    def on_progress(event):
        asyncio.get_running_loop().call_soon(cancel.set)

    async with make_orchestrator(proxy, sleep=blocking_sleep) as client:
        with pytest.raises(PollingCancelledError) as exc_info:
            await client.poll_task("t_1", on_progress=on_progress, cancel_event=cancel)

    assert exc_info.value.attempts == 1
    assert proxy.status_calls["t_1"] == 1


async def test_async_progress_callback_is_awaited():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [{"status": "running", "progress": 40}, SUCCESS_GLB]
    seen = []

    async def on_progress(event):
        seen.append(event.progress)

    async with make_orchestrator(proxy) as client:
        await client.poll_task("t_1", on_progress=on_progress)

    assert seen == [40]


async def test_watch_task_yields_terminal_event_last():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [RUNNING, SUCCESS_GLB]

    async with make_orchestrator(proxy) as client:
        events = [event async for event in client.watch_task("t_1")]

    assert [e.status for e in events] == [TaskStatus.RUNNING, TaskStatus.SUCCESS]
    assert events[-1].task is not None
    assert events[0].task is None


# ----------------------------------------------------------------------------
# 标识符提取
# ----------------------------------------------------------------------------


def test_extract_file_token_checks_known_fields():
    assert extract_file_token({"data": {"image_token": "ft_1"}}) == "ft_1"
    assert extract_file_token({"file_token": "ft_2"}) == "ft_2"
    assert extract_file_token({"upload_id": "ft_3"}) == "ft_3"
    with pytest.raises(MissingIdentifierError) as exc_info:
        extract_file_token({"code": 0, "data": {}})
    assert exc_info.value.identifier == "file token"


def test_extract_task_id():
    assert extract_task_id({"data": {"task_id": "t_1"}}) == "t_1"
    assert extract_task_id({"id": "t_2"}) == "t_2"
    with pytest.raises(MissingIdentifierError):
        extract_task_id({"data": {"status": "queued"}})


def test_artifact_extension():
    assert artifact_extension("https://x/model.glb", "glb") == "glb"
    assert artifact_extension("https://x/model.glb?sig=1", None) == "glb"
    assert artifact_extension("https://x/model.stl", None, requested_format="STL") == "stl"
    assert artifact_extension("https://x/bundle", "zip", requested_format="OBJ") == "zip"
    assert artifact_extension("https://x/bundle.zip", "obj", requested_format="OBJ") == "zip"


def test_task_from_tripo_payload():
    task = Task.from_payload(
        {
            "code": 0,
            "data": {
                "task_id": "t_1",
                "type": "image_to_model",
                "status": "success",
                "progress": 100,
                "output": {"pbr_model": {"url": "https://x/pbr.glb", "type": "glb"}},
            },
        }
    )
    assert task.task_id == "t_1"
    assert task.is_terminal
    assert task.progress == 100
    assert task.result.artifact_url == "https://x/pbr.glb"


# ----------------------------------------------------------------------------
# 上传 / 创建任务
# ----------------------------------------------------------------------------


async def test_upload_without_token_is_a_hard_error():
    proxy = FakeProxy()
    proxy.upload_response = {"code": 0, "data": {"status": "ok"}}

    async with make_orchestrator(proxy) as client:
        with pytest.raises(MissingIdentifierError):
            await client.upload_file(b"\x89PNG", "photo.png")


async def test_create_task_without_id_is_a_hard_error():
    proxy = FakeProxy()
    proxy.create_responses = {}

    async with make_orchestrator(proxy) as client:
        with pytest.raises(MissingIdentifierError) as exc_info:
            await client.create_generation_task("ft_1", "a cat")

    assert exc_info.value.identifier == "task id"


async def test_create_task_sends_only_supported_options():
    proxy = FakeProxy()

    async with make_orchestrator(proxy) as client:
        await client.create_generation_task(
            "ft_1",
            "a cat",
            options={"face_limit": 5000, "quad": True, "style": "cartoon", "model_seed": "", "pbr": None},
        )

    assert proxy.created == [
        {
            "type": "image_to_model",
            "file": {"file_token": "ft_1"},
            "texture": False,
            "prompt": "a cat",
            "face_limit": 5000,
            "quad": True,
        }
    ]


async def test_missing_proxy_credential_is_reported_distinctly():
    def handler(request):
        return httpx.Response(
            500,
            json={"error": "Server configuration error", "message": "TRIPO_API_KEY environment variable not set"},
        )

    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    async with TaskOrchestrationClient(BASE_URL, http_client=http) as client:
        with pytest.raises(MissingCredentialError):
            await client.upload_file(b"img", "photo.png")
        with pytest.raises(MissingCredentialError):
            await client.poll_task("t_1")


async def test_convert_model_rejects_unknown_format():
    async with make_orchestrator(FakeProxy()) as client:
        with pytest.raises(UnsupportedFormatError) as exc_info:
            await client.convert_model("t_1", "BLEND")

    assert isinstance(exc_info.value, TaskClientError)
    assert "STL" in exc_info.value.supported


# ----------------------------------------------------------------------------
# 端到端场景
# ----------------------------------------------------------------------------


async def test_end_to_end_generation():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [{"status": "running", "progress": 40}, SUCCESS_GLB]
    progress = []

    async with make_orchestrator(proxy) as client:
        artifact = await client.generate(
            b"\x89PNG...",
            "photo.png",
            prompt="a small robot",
            on_progress=lambda event: progress.append(event.progress),
        )

    assert artifact.task_id == "t_1"
    assert artifact.url == "https://x/model.glb"
    assert artifact.extension == "glb"
    assert progress == [40]
    assert proxy.created[0]["file"] == {"file_token": "ft_1"}
    assert len(proxy.created) == 1


async def test_conversion_chain_produces_new_artifact():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [SUCCESS_GLB]
    proxy.status_sequences["t_2"] = [
        {"status": "running", "progress": 50},
        {"status": "success", "output": {"model": "https://x/converted/model.stl"}},
    ]

    async with make_orchestrator(proxy) as client:
        artifact = await client.generate(b"img", "photo.png", target_format="STL")

    assert proxy.created[1] == {"type": "convert_model", "format": "STL", "original_model_task_id": "t_1"}
    assert artifact.task_id == "t_2"
    assert artifact.url == "https://x/converted/model.stl"
    assert artifact.url != "https://x/model.glb"
    assert artifact.extension == "stl"


async def test_conversion_with_packaged_output_uses_archive_extension():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [SUCCESS_GLB]
    proxy.status_sequences["t_2"] = [
        {"status": "success", "output": {"model": {"url": "https://x/converted/model.zip", "type": "zip"}}},
    ]

    async with make_orchestrator(proxy) as client:
        artifact = await client.generate(b"img", "photo.png", target_format="OBJ")

    assert artifact.extension == "zip"


async def test_no_conversion_when_format_already_matches():
    proxy = FakeProxy()
    proxy.status_sequences["t_1"] = [SUCCESS_GLB]

    async with make_orchestrator(proxy) as client:
        artifact = await client.generate(b"img", "photo.png", target_format="GLB")

    assert artifact.extension == "glb"
    assert len(proxy.created) == 1


async def test_download_artifact_goes_through_relay():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b"glTF-bytes")

    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    async with TaskOrchestrationClient(BASE_URL, http_client=http) as client:
        data = await client.download_artifact("https://x/model.glb")

    assert data == b"glTF-bytes"
    assert seen[0].url.path == "/api/download"
    assert seen[0].url.params["url"] == "https://x/model.glb"


async def test_from_settings_uses_polling_configuration():
    from conftest import make_settings

    settings = make_settings(POLL_INTERVAL=0.5, POLL_MAX_ATTEMPTS=12)
    http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(FakeProxy()))

    async with TaskOrchestrationClient.from_settings(settings, BASE_URL, http_client=http) as client:
        assert client.interval == 0.5
        assert client.max_attempts == 12
