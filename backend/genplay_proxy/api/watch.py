from fastapi import WebSocket
from fastapi.routing import APIRouter

from genplay_proxy.core.log_utils import Logger
from genplay_proxy.services.ws_relay import CLOSE_POLICY_VIOLATION, WebSocketRelay

router = APIRouter()


@router.websocket("/task/watch")
async def watch_task(websocket: WebSocket):
    """
    任务进度 WebSocket：按 taskId 建立到上游 watch 端点的中继。
    """
    await websocket.accept()

    task_id = websocket.query_params.get("taskId")
    if not task_id:
        # 不尝试连接上游
        Logger.warning("WebSocket 连接缺少 taskId")
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="taskId query parameter is required")
        return

    app = websocket.app
    relay = WebSocketRelay(
        task_id=task_id,
        browser=websocket,
        settings=app.state.settings,
        connector=app.state.ws_connector,
    )
    await app.state.relays.run(relay)
