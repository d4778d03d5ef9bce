"""任务编排相关的数据模型

上游响应结构并不完全固定，这里负责把原始 payload 归一化为 Task。
"""

from enum import Enum
from typing import Any, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

SUCCESS_STATUSES = {"success", "completed"}
FAILURE_STATUSES = {"failed", "cancelled", "banned", "expired"}

# 结果中可能承载模型文件的字段，按优先级排列
ARTIFACT_KEYS = ("pbr_model", "model", "base_model")


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"  # 无法识别的状态，按非终态处理

    @classmethod
    def normalize(cls, raw: Optional[str]) -> "TaskStatus":
        value = (raw or "").strip().lower()
        if value in SUCCESS_STATUSES:
            return cls.SUCCESS
        if value in FAILURE_STATUSES:
            return cls.FAILED
        if value in ("queued", "running"):
            return cls(value)
        return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCESS, TaskStatus.FAILED)


class TaskKind(str, Enum):
    GENERATION = "generation"
    CONVERSION = "conversion"

    @classmethod
    def from_type(cls, raw: Optional[str]) -> Optional["TaskKind"]:
        if not raw:
            return None
        raw = raw.lower()
        if raw in ("conversion", "convert_model"):
            return cls.CONVERSION
        return cls.GENERATION


class TaskResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    artifact_url: str = Field(..., alias="artifactUrl")
    artifact_type: Optional[str] = Field(None, alias="artifactType")


class Task(BaseModel):
    """上游任务的只读快照，客户端从不修改任务状态"""

    task_id: str
    kind: Optional[TaskKind] = None
    status: TaskStatus
    raw_status: str = ""
    progress: Optional[int] = Field(None, ge=0, le=100)
    result: Optional[TaskResult] = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_payload(cls, payload: dict[str, Any], task_id: Optional[str] = None) -> "Task":
        """解析 {code, data: {...}} 或直接的任务对象"""
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        raw_status = str(data.get("status") or "")
        status = TaskStatus.normalize(raw_status)

        return cls(
            task_id=str(data.get("task_id") or data.get("id") or task_id or ""),
            kind=TaskKind.from_type(data.get("kind") or data.get("type")),
            status=status,
            raw_status=raw_status,
            progress=_parse_progress(data.get("progress")),
            result=_extract_result(data) if status == TaskStatus.SUCCESS else None,
            raw=data,
        )


class UploadResult(BaseModel):
    file_token: str


class ProgressEvent(BaseModel):
    """每次完成一次轮询最多产生一个事件；终态之后不再产生事件"""

    task_id: str
    status: TaskStatus
    progress: Optional[int] = None
    attempt: int
    task: Optional[Task] = Field(None, repr=False)  # 仅成功终态事件携带


class ResolvedArtifact(BaseModel):
    task_id: str
    url: str
    extension: str
    artifact_type: Optional[str] = None


def _parse_progress(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        progress = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(0, min(100, progress))


def _extract_result(data: dict[str, Any]) -> Optional[TaskResult]:
    for container in (data.get("result"), data.get("output")):
        if not isinstance(container, dict):
            continue

        url = container.get("artifactUrl") or container.get("artifact_url")
        if url:
            return TaskResult(
                artifact_url=url,
                artifact_type=container.get("artifactType") or container.get("artifact_type"),
            )

        for key in ARTIFACT_KEYS:
            value = container.get(key)
            if isinstance(value, dict) and value.get("url"):
                return TaskResult(artifact_url=value["url"], artifact_type=value.get("type"))
            if isinstance(value, str) and value:
                return TaskResult(artifact_url=value)

        if isinstance(container.get("url"), str):
            return TaskResult(artifact_url=container["url"], artifact_type=container.get("type"))
    return None


def url_extension(url: str) -> str:
    """URL 路径的扩展名（小写，不含点）"""
    path = urlsplit(url).path
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()
