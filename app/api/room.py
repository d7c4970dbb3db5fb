"""
app.api.room
~~~~~~~~~~~~

聊天室 REST 接口 —— 只读的房间状态与消息记录。

所有状态修改都只能通过 WebSocket 网关进行。

端点:
  - ``GET /room``           → 房间摘要（在线人数、参与者、消息数）
  - ``GET /room/messages``  → 消息记录（分页，按发送顺序）
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_chat_system
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.schemas.api_response import ApiResponse
from app.schemas.chat_events import MessageHistoryData, RoomInfoData
from app.services.chat_system import ChatSystem

router: APIRouter = APIRouter()


@router.get(
    "/room",
    summary="获取聊天室状态",
    response_model=ApiResponse[RoomInfoData],
)
@limiter.limit(settings.REST_RATE_LIMIT)
async def room_info(
    request: Request,
    system: ChatSystem = Depends(get_chat_system),
) -> ApiResponse[RoomInfoData]:
    """返回聊天室的在线人数与参与者列表。房间不存在时返回空房间。"""
    return ApiResponse.ok(data=system.room_info())


@router.get(
    "/room/messages",
    summary="获取消息记录",
    response_model=ApiResponse[MessageHistoryData],
)
@limiter.limit(settings.REST_RATE_LIMIT)
async def room_messages(
    request: Request,
    skip: int = Query(0, ge=0, description="跳过条数（分页偏移）"),
    limit: int = Query(100, ge=1, le=500, description="每页最大条数"),
    system: ChatSystem = Depends(get_chat_system),
) -> ApiResponse[MessageHistoryData]:
    """获取当前聊天室的消息记录（分页，按发送顺序）。

    消息只在房间存活期间保留，房间拆除后记录随之清空。

    Args:
        skip: 跳过条数（分页偏移）。
        limit: 每页最大条数（1-500）。
    """
    messages = system.get_messages(skip=skip, limit=limit)
    return ApiResponse.ok(
        data=MessageHistoryData(
            room_id=system.settings.ROOM_ID,
            messages=messages,
            total=len(messages),
        ),
    )
