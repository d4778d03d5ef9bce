"""
统一日志工具模块
提供简洁、一致的日志接口，并保证上游凭证不会出现在任何日志中
"""

import logging
from typing import Optional

from rich.logging import RichHandler

# ============================================================================
# 日志系统配置
# ============================================================================

REDACTED = "***"


class CredentialRedactionFilter(logging.Filter):
    """将日志中出现的凭证替换为 ***"""

    def __init__(self, secret: Optional[str]):
        super().__init__()
        self.secret = secret

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secret:
            return True
        message = record.getMessage()
        if self.secret in message:
            record.msg = message.replace(self.secret, REDACTED)
            record.args = None
        # 异常栈由 handler 单独渲染，带凭证的异常改为只输出脱敏后的异常描述
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            text = f"{exc.__class__.__name__}: {exc}"
            if self.secret in text:
                record.msg = f"{record.msg}\n{text.replace(self.secret, REDACTED)}"
                record.exc_info = None
                record.exc_text = None
        return True


def redact(text: str, secret: Optional[str]) -> str:
    """对单个字符串做凭证脱敏，用于错误响应"""
    if secret and text:
        return text.replace(secret, REDACTED)
    return text


def setup_logging(log_level: str = "INFO", secret: Optional[str] = None):
    """
    配置统一的日志系统

    Args:
        log_level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        secret: 需要在日志中脱敏的上游凭证
    """

    # 过滤 ping/pong 噪音日志
    class PingPongFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            message = record.getMessage().lower()
            return not any(kw in message for kw in ["ping", "pong", "keepalive"])

    handler = RichHandler(rich_tracebacks=True, markup=True, log_time_format="[%Y-%m-%d %H:%M:%S]")
    handler.addFilter(CredentialRedactionFilter(secret))
    handler.addFilter(PingPongFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # 同步 uvicorn 日志级别
    for logger_name in ["uvicorn.error", "uvicorn.access"]:
        logger = logging.getLogger(logger_name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(log_level)
        logger.propagate = False

    # websockets 客户端的帧级日志过于嘈杂
    logging.getLogger("websockets").setLevel(max(logging.getLevelName(log_level), logging.INFO))


# ============================================================================
# 统一日志接口
# ============================================================================


class Logger:
    """
    统一的日志记录器

    日志级别说明：
    - INFO: 显示关键信息（方法、路径、状态码、任务ID）
    - DEBUG: 显示请求头、帧内容等详细数据
    """

    # 方向标识符
    _DIRECTIONS = {
        "proxy_request": "[bold yellow]▶[/bold yellow] [dim yellow]转发至上游[/dim yellow]",
        "proxy_response": "[bold yellow]◀[/bold yellow] [dim yellow]上游响应[/dim yellow]",
        "ws_upstream": "[bold cyan]▶[/bold cyan] [dim cyan]浏览器 → 上游[/dim cyan]",
        "ws_browser": "[bold cyan]◀[/bold cyan] [dim cyan]上游 → 浏览器[/dim cyan]",
    }

    @staticmethod
    def proxy_request(method: str, path: str, target: str, **debug_data):
        """
        代理请求日志

        Args:
            method: HTTP 方法
            path: 本地路径
            target: 改写后的上游路径
            **debug_data: DEBUG级别显示的详细数据
        """
        logging.info(
            f"{Logger._DIRECTIONS['proxy_request']} [bold green]{method}[/bold green] {path} → [cyan]{target}[/cyan]"
        )
        if debug_data and logging.getLogger().isEnabledFor(logging.DEBUG):
            logging.debug(f"  → 请求数据: {debug_data}")

    @staticmethod
    def proxy_response(status_code: int, path: str, **debug_data):
        """代理响应日志"""
        color = "green" if status_code < 400 else "red"
        logging.info(f"{Logger._DIRECTIONS['proxy_response']} [bold {color}]{status_code}[/bold {color}] {path}")
        if debug_data and logging.getLogger().isEnabledFor(logging.DEBUG):
            logging.debug(f"  ← 响应数据: {debug_data}")

    @staticmethod
    def ws_upstream(task_id: str, frame):
        """浏览器 → 上游 帧日志，仅 DEBUG"""
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            logging.debug(f"{Logger._DIRECTIONS['ws_upstream']} [bold green]{task_id}[/bold green] {Logger._describe(frame)}")

    @staticmethod
    def ws_browser(task_id: str, frame):
        """上游 → 浏览器 帧日志，仅 DEBUG"""
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            logging.debug(f"{Logger._DIRECTIONS['ws_browser']} [bold green]{task_id}[/bold green] {Logger._describe(frame)}")

    @staticmethod
    def _describe(frame) -> str:
        if isinstance(frame, (bytes, bytearray)):
            return f"<{len(frame)} bytes>"
        return str(frame)

    @staticmethod
    def event(category: str, message: str, **context):
        """业务事件日志"""
        ctx = " | ".join(f"{k}: [cyan]{v}[/cyan]" for k, v in context.items())
        log_msg = f"[bold magenta][{category}][/bold magenta] {message}"
        if ctx:
            log_msg += f" | {ctx}"
        logging.info(log_msg)

    @staticmethod
    def error(message: str, exc: Optional[Exception] = None, **context):
        """错误日志（带异常栈）"""
        ctx = " | ".join(f"{k}: [yellow]{v}[/yellow]" for k, v in context.items())
        log_msg = f"[bold red]错误[/bold red] {message}"
        if ctx:
            log_msg += f" | {ctx}"

        if exc:
            logging.error(log_msg, exc_info=exc)
        else:
            logging.error(log_msg)

    @staticmethod
    def _format_context(context: dict) -> str:
        """格式化上下文信息"""
        if not context:
            return ""
        ctx = " | ".join(f"{k}: [cyan]{v}[/cyan]" for k, v in context.items())
        return f" | {ctx}"

    @staticmethod
    def info(message: str, **context):
        """普通信息日志"""
        logging.info(f"{message}{Logger._format_context(context)}")

    @staticmethod
    def debug(message: str, **context):
        """调试日志"""
        logging.debug(f"{message}{Logger._format_context(context)}")

    @staticmethod
    def warning(message: str, **context):
        """警告日志"""
        log_msg = f"[bold yellow]警告[/bold yellow] {message}{Logger._format_context(context)}"
        logging.warning(log_msg)
