from fastapi import APIRouter

from .proxy import router as proxy_router
from .watch import router as watch_router

api_router = APIRouter()
api_router.include_router(watch_router)
# 通用代理路由会匹配所有路径，必须最后注册
api_router.include_router(proxy_router)
