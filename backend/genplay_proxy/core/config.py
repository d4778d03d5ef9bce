"""应用配置模块

从环境变量和 .env 文件加载配置。
配置在进程启动时只构建一次，之后不可变，通过依赖注入传给各个组件。
"""

from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from genplay_proxy.core.exceptions import ConfigError


class Settings(BaseSettings):
    """应用配置类

    从 .env 文件和环境变量加载配置。
    环境变量优先级高于 .env 文件。
    """

    # ===========================
    # 应用配置
    # ===========================
    APP_ENV: str = "development"  # 应用环境: development, production
    LOG_LEVEL: str = "INFO"  # 日志级别: DEBUG, INFO, WARNING, ERROR, CRITICAL

    # ===========================
    # 服务器配置
    # ===========================
    HOST: str = "0.0.0.0"
    PORT: int = 3001

    # ===========================
    # 上游 API 配置
    # ===========================
    TRIPO_API_KEY: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("TRIPO_API_KEY", "VITE_TRIPO_AI_API_KEY"),
    )
    UPSTREAM_BASE_URL: str = "https://api.tripo3d.ai/v2"
    LOCAL_PREFIX: str = "/api"  # 本地路径前缀
    UPSTREAM_PREFIX: str = "/openapi"  # 上游路径前缀
    PROXY_TIMEOUT: float = 300.0  # 单次上游 HTTP 请求超时（秒）

    # ===========================
    # 下载中转配置
    # ===========================
    DOWNLOAD_TIMEOUT: float = 120.0
    MAX_DOWNLOAD_BYTES: int = 200 * 1024 * 1024

    # ===========================
    # CORS 配置
    # ===========================
    ALLOWED_ORIGIN: str = "*"

    # ===========================
    # 任务轮询配置
    # ===========================
    POLL_INTERVAL: float = 2.0
    POLL_MAX_ATTEMPTS: int = 300  # 2 秒 × 300 次 = 10 分钟

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"LOG_LEVEL 必须是 {valid_levels} 之一")
        return v_upper

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """验证应用环境"""
        valid_envs = ["development", "production"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"APP_ENV 必须是 {valid_envs} 之一")
        return v_lower

    @field_validator("TRIPO_API_KEY")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        """空字符串视为未配置"""
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("UPSTREAM_BASE_URL")
    @classmethod
    def validate_upstream_base_url(cls, v: str) -> str:
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("UPSTREAM_BASE_URL 必须是完整的 http(s) URL")
        return v.rstrip("/")

    @field_validator("LOCAL_PREFIX", "UPSTREAM_PREFIX")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """前缀统一为 '/xxx' 形式"""
        return "/" + v.strip("/")

    @property
    def is_production(self) -> bool:
        """是否为生产环境"""
        return self.APP_ENV == "production"

    @property
    def has_api_key(self) -> bool:
        return self.TRIPO_API_KEY is not None

    def require_api_key(self) -> str:
        """返回上游凭证，未配置时抛出 ConfigError"""
        if not self.TRIPO_API_KEY:
            raise ConfigError("TRIPO_API_KEY")
        return self.TRIPO_API_KEY

    @property
    def upstream_ws_base_url(self) -> str:
        """上游 WebSocket 基础地址（https → wss, http → ws）"""
        parts = urlsplit(self.UPSTREAM_BASE_URL)
        scheme = "wss" if parts.scheme == "https" else "ws"
        return urlunsplit((scheme, parts.netloc, parts.path, "", ""))

    def upstream_watch_url(self, task_id: str) -> str:
        """单个任务的上游 watch 端点"""
        return f"{self.upstream_ws_base_url}{self.UPSTREAM_PREFIX}/task/watch/{quote(task_id, safe='')}"


def load_settings() -> Settings:
    """启动时构建一次配置实例"""
    return Settings()
