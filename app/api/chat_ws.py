"""
app.api.chat_ws
~~~~~~~~~~~~~~~

WebSocket 实时聊天接口 —— 双人聊天室。

提供 ``/ws/chat`` 端点。连接建立后客户端先发送 ``join``，
加入成功后即可收发消息和“正在输入”状态。事件协议见
:mod:`app.schemas.chat_events`。
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, WebSocket

from app.core.logging import get_logger, request_id_ctx_var
from app.services.chat_system import ChatSystem
from app.services.gateway import ChatGateway

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket 聊天端点。

    房间最多容纳两人，第三个连接会收到 ``room_full`` 后被关闭，
    已在房间中的人不受影响。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    system: ChatSystem = websocket.app.state.chat_system
    room = system.acquire_room()
    try:
        await websocket.accept()
        logger.info("新连接 | room=%s | 在线: %d", room.room_id, room.online_count)

        await ChatGateway(room=room, settings=system.settings).serve(websocket)
        logger.info("连接结束 | room=%s | 在线: %d", room.room_id, room.online_count)
    finally:
        system.release_room(room)
        request_id_ctx_var.reset(token)
