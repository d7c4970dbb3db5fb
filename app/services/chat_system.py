"""
app.services.chat_system
~~~~~~~~~~~~~~~~~~~~~~~~

聊天业务服务 —— 管理聊天室的生命周期。

房间在第一个连接到来时创建，在最后一个连接离开且无人在线时拆除，
消息记录随房间一起丢弃。本部署只有一个房间（``settings.ROOM_ID``）。

在 FastAPI lifespan 中初始化并挂载于 ``app.state.chat_system``。
"""
from __future__ import annotations

from app.core.logging import get_logger
from app.core.settings import Settings
from app.schemas.chat_events import Message, RoomInfoData
from app.services.chat_room import ChatRoom
from app.services.registry import SessionRegistry

logger = get_logger(__name__)


class ChatSystem:
    """聊天系统（每个应用实例一个）。

    - ``acquire_room()``     → 获取（必要时创建）房间，并登记一个使用中的连接
    - ``release_room(room)`` → 注销连接，房间空闲时拆除
    - ``room_info()``        → 当前房间摘要（房间不存在时返回空房间）

    Attributes:
        settings: 应用配置。
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._room: ChatRoom | None = None

    @property
    def room(self) -> ChatRoom | None:
        """当前存活的房间。"""
        return self._room

    def acquire_room(self) -> ChatRoom:
        """获取当前房间（不存在则创建）并登记一个连接。"""
        if self._room is None:
            registry = SessionRegistry(
                capacity=self.settings.ROOM_CAPACITY,
                display_name_max_length=self.settings.DISPLAY_NAME_MAX_LENGTH,
                message_max_length=self.settings.MESSAGE_MAX_LENGTH,
            )
            self._room = ChatRoom(room_id=self.settings.ROOM_ID, registry=registry)
            logger.info("聊天室已创建 | room_id=%s", self.settings.ROOM_ID)
        self._room.connection_count += 1
        return self._room

    def release_room(self, room: ChatRoom) -> None:
        """注销一个连接；房间空闲时拆除。"""
        room.connection_count = max(0, room.connection_count - 1)
        if room is self._room and room.is_idle:
            room.close()
            self._room = None
            logger.info("聊天室已拆除 | room_id=%s", room.room_id)

    def room_info(self) -> RoomInfoData:
        """返回当前房间摘要。"""
        if self._room is not None:
            return self._room.info()
        return RoomInfoData(
            room_id=self.settings.ROOM_ID,
            capacity=self.settings.ROOM_CAPACITY,
            online_count=0,
            occupants=[],
            message_count=0,
        )

    def get_messages(self, skip: int = 0, limit: int = 100) -> list[Message]:
        """分页获取当前房间的消息记录（按发送顺序）。"""
        if self._room is None:
            return []
        return self._room.registry.messages[skip:skip + limit]
