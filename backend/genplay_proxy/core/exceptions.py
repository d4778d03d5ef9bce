from typing import Optional, Union


class ApiException(Exception):
    """代理层异常，由 FastAPI 异常处理器渲染为 JSON 响应"""

    def __init__(self, status_code: int, detail: Union[dict, str, None]):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class ConfigError(ApiException):
    """缺少必需的配置项（例如上游凭证）"""

    def __init__(self, setting_name: str):
        super().__init__(
            status_code=500,
            detail={
                "error": "Server configuration error",
                "message": f"{setting_name} environment variable not set",
            },
        )
        self.setting_name = setting_name


class BadRequest(ApiException):
    """缺少必需的请求参数"""

    def __init__(self, message: str):
        super().__init__(status_code=400, detail={"error": "Bad request", "message": message})


class UpstreamError(ApiException):
    """与上游通信失败（传输错误或下载时的非 2xx 响应）"""

    def __init__(self, error: str, message: str, **extra):
        super().__init__(status_code=500, detail={"error": error, "message": message, **extra})


class RelayTransportError(Exception):
    """WebSocket 中继的某一端出错或断开"""

    def __init__(self, task_id: str, side: str, reason: str = ""):
        super().__init__(f"{side} leg of relay {task_id} failed: {reason}")
        self.task_id = task_id
        self.side = side
        self.reason = reason


# ============================================================================
# 任务编排客户端异常
# ============================================================================


class TaskClientError(Exception):
    """任务编排客户端异常基类"""


class MissingCredentialError(TaskClientError):
    pass


class MissingIdentifierError(TaskClientError):
    """上游响应中找不到必需的标识符（file token / task id）"""

    def __init__(self, identifier: str, response: Optional[dict] = None):
        super().__init__(f"No {identifier} received from API")
        self.identifier = identifier
        self.response = response


class TaskFailedError(TaskClientError):
    """上游报告任务处于失败终态"""

    def __init__(self, task):
        super().__init__(f"Task {task.task_id} failed (status: {task.raw_status})")
        self.task = task


class PollingTimeoutError(TaskClientError):
    """轮询次数耗尽仍未到达终态"""

    def __init__(self, task_id: str, attempts: int, interval: float):
        minutes = attempts * interval / 60
        super().__init__(f"Task {task_id} monitoring timed out after {attempts} attempts (~{minutes:g} minutes)")
        self.task_id = task_id
        self.attempts = attempts


class PollingCancelledError(TaskClientError):
    """调用方取消了轮询，既不代表成功也不代表失败"""

    def __init__(self, task_id: str, attempts: int):
        super().__init__(f"Polling of task {task_id} cancelled after {attempts} attempts")
        self.task_id = task_id
        self.attempts = attempts


class TransportError(TaskClientError):
    """网络或非 2xx 响应导致的请求失败"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnsupportedFormatError(TaskClientError, ValueError):
    """请求的转换格式不在支持列表中"""

    def __init__(self, target_format: str, supported: tuple[str, ...]):
        super().__init__(f"Unsupported conversion format: {target_format or '<empty>'} (supported: {', '.join(supported)})")
        self.target_format = target_format
        self.supported = supported
