from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from genplay_proxy.api import api_router
from genplay_proxy.core.config import Settings, load_settings
from genplay_proxy.core.cors import cors_headers
from genplay_proxy.core.exceptions import ApiException
from genplay_proxy.core.log_utils import Logger, setup_logging
from genplay_proxy.services.proxy import ProxyService, health_payload
from genplay_proxy.services.upstream import create_http_client
from genplay_proxy.services.ws_relay import RelayRegistry, UpstreamConnector, connect_upstream


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    ws_connector: Optional[UpstreamConnector] = None,
) -> FastAPI:
    """
    构建 FastAPI 应用。

    配置只在这里读取一次，之后通过 app.state 注入到各个路由；
    http_client / ws_connector 可由调用方替换（测试中用于模拟上游）。
    """
    settings = settings or load_settings()

    # 配置日志系统
    setup_logging(settings.LOG_LEVEL, secret=settings.TRIPO_API_KEY)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        client = http_client or create_http_client(settings)
        app.state.proxy_service = ProxyService(settings, client)
        Logger.event(
            "STARTUP",
            "代理服务启动",
            env=settings.APP_ENV,
            upstream=settings.UPSTREAM_BASE_URL,
            api_key_configured="Yes" if settings.has_api_key else "No",
        )
        yield
        # Shutdown
        await app.state.relays.close_all()
        if http_client is None:
            await client.aclose()
        Logger.event("SHUTDOWN", "代理服务已停止")

    app = FastAPI(
        title="GenPlayProxy-Python",
        description="Relays HTTP and WebSocket traffic to the Tripo3D API with a server-side credential.",
        lifespan=lifespan,
        # 生产环境不暴露接口文档
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    app.state.settings = settings
    app.state.relays = RelayRegistry()
    app.state.ws_connector = ws_connector or connect_upstream

    @app.exception_handler(ApiException)
    async def api_exception_handler(request: Request, exc: ApiException):
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.detail,
            headers=cors_headers(settings.ALLOWED_ORIGIN),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        Logger.error("请求验证失败", errors=str(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "Bad request", "message": str(exc.errors())},
            headers=cors_headers(settings.ALLOWED_ORIGIN),
        )

    @app.get("/health")
    async def health():
        """健康检查端点，不依赖上游"""
        return {**health_payload(settings), "active_relays": app.state.relays.active_count}

    app.include_router(api_router, prefix=settings.LOCAL_PREFIX)
    return app


app = create_app()


def run():
    """命令行入口：genplay-proxy"""
    settings: Settings = app.state.settings
    Logger.info("启动 uvicorn", host=settings.HOST, port=settings.PORT)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
