from fastapi import Request

from genplay_proxy.core.config import Settings
from genplay_proxy.services.proxy import ProxyService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_proxy_service(request: Request) -> ProxyService:
    return request.app.state.proxy_service
