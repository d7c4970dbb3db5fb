"""
app.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间广播器 —— 把注册表的状态变化通知扇出到房间内的各个连接。

广播器订阅 ``SessionRegistry`` 的通知。通知在注册表的锁内同步到达，
广播器只负责把事件放入各连接自己的发送队列，真正的网络发送由连接的
发送协程完成，因此单个慢连接或坏连接不会影响其他人。
"""
from __future__ import annotations

from app.core.logging import get_logger
from app.schemas.chat_events import MessageEvent, PresenceEvent, ServerEvent, TypingEvent
from app.services.connection import ParticipantConnection
from app.services.registry import (
    MessagePosted,
    PresenceChanged,
    RoomNotification,
    TypingChanged,
    others_typing,
)

logger = get_logger(__name__)

class RoomBroadcaster:
    """房间内已加入连接的集合与扇出逻辑。

    Attributes:
        active_connections: 参与者 ID → 连接。
    """

    def __init__(self) -> None:
        self.active_connections: dict[str, ParticipantConnection] = {}

    def attach(self, participant_id: str, connection: ParticipantConnection) -> None:
        """把已加入的连接纳入广播范围。"""
        self.active_connections[participant_id] = connection

    def detach(self, participant_id: str) -> None:
        """把连接移出广播范围。对未知 ID 是安全的。"""
        self.active_connections.pop(participant_id, None)

    def broadcast(self, event: ServerEvent, exclude: str | None = None) -> None:
        """向所有（或除 ``exclude`` 之外的所有）连接投递事件。"""
        for participant_id, connection in list(self.active_connections.items()):
            if participant_id == exclude:
                continue
            if not connection.send(event):
                logger.debug("投递失败，跳过 | participant=%s", participant_id)

    def handle_notification(self, notification: RoomNotification) -> None:
        """注册表通知回调。"""
        if isinstance(notification, MessagePosted):
            # 发送者也通过广播收到自己的消息，保证所有人看到同一顺序
            self.broadcast(MessageEvent(message=notification.message))
        elif isinstance(notification, PresenceChanged):
            occupants = list(notification.occupants)
            self.broadcast(PresenceEvent(occupants=occupants, count=len(occupants)))
        elif isinstance(notification, TypingChanged):
            self._fan_out_typing(notification)

    def _fan_out_typing(self, notification: TypingChanged) -> None:
        # 每个接收者看到的是“除自己之外是否有人在输入”，状态变化者本人不通知
        for participant_id, connection in list(self.active_connections.items()):
            if participant_id == notification.participant_id:
                continue
            connection.send(
                TypingEvent(others_typing=others_typing(notification.typing_ids, participant_id)),
            )

    @property
    def online_count(self) -> int:
        """当前已加入的连接数。"""
        return len(self.active_connections)
