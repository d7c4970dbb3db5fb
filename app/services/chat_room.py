"""
app.services.chat_room
~~~~~~~~~~~~~~~~~~~~~~

聊天室领域模型 —— 把注册表和广播器组装成一个房间实体。

每个 ``ChatRoom`` 拥有独立的 ``SessionRegistry``（权威状态）
和 ``RoomBroadcaster``（连接扇出），创建时完成两者的订阅关系。
"""
from __future__ import annotations

from app.schemas.chat_events import RoomInfoData
from app.services.registry import SessionRegistry
from app.services.room_broadcaster import RoomBroadcaster


class ChatRoom:
    """一个完整的聊天室实体。

    Attributes:
        room_id: 房间唯一标识。
        registry: 本房间的会话注册表。
        broadcaster: 本房间的广播器。
        connection_count: 正在使用本房间的连接数（包括尚未加入的）。
    """

    def __init__(self, room_id: str, registry: SessionRegistry) -> None:
        self.room_id = room_id
        self.registry = registry
        self.broadcaster = RoomBroadcaster()
        self.connection_count: int = 0
        self._unsubscribe = registry.subscribe(self.broadcaster.handle_notification)

    @property
    def online_count(self) -> int:
        """当前在线人数。"""
        return len(self.registry.occupants)

    @property
    def is_idle(self) -> bool:
        """没有在线参与者，也没有连接在使用本房间。"""
        return self.connection_count == 0 and self.registry.is_empty

    def close(self) -> None:
        """拆除房间：解除广播器订阅。"""
        self._unsubscribe()

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            room_id=self.room_id,
            capacity=self.registry.capacity,
            online_count=self.online_count,
            occupants=self.registry.occupants,
            message_count=len(self.registry.messages),
        )
