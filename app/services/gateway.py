"""
app.services.gateway
~~~~~~~~~~~~~~~~~~~~

实时网关 —— 负责单个连接从建立到断开的全过程。

网关本身不修改房间状态：加入、发言、输入状态、离开全部交给
``SessionRegistry``，再由 ``RoomBroadcaster`` 把结果扇出给房间内的连接。

连接状态机::

    CONNECTING ──join 成功──▶ ADMITTED ──立即──▶ ACTIVE ──断开──▶ DISCONNECTED
        │                                                      ▲
        └──────────────── 房间已满（room_full）─────────────────┘
"""
from __future__ import annotations

import asyncio

from fastapi import WebSocket, WebSocketDisconnect

from app.core.exceptions import CapacityError, ChatError, RateLimitedError, ValidationError
from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.core.settings import Settings
from app.schemas.chat_events import (
    ErrorEvent,
    JoinedEvent,
    JoinEvent,
    RoomFullEvent,
    SendMessageEvent,
    SetTypingEvent,
    TypingEvent,
    parse_client_event,
)
from app.services.chat_room import ChatRoom
from app.services.connection import (
    CLOSE_IDLE_TIMEOUT,
    CLOSE_ROOM_FULL,
    ConnectionState,
    ParticipantConnection,
)
from app.services.registry import AdmitResult, others_typing

logger = get_logger(__name__)


class ChatGateway:
    """一个连接的网关会话。

    Attributes:
        room: 连接所属的聊天室。
        settings: 应用配置（超时、队列大小、限流间隔）。
        rate_limiter: 本连接专用的消息限流器。
    """

    def __init__(self, room: ChatRoom, settings: Settings) -> None:
        self.room = room
        self.settings = settings
        self.rate_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)

    async def serve(self, websocket: WebSocket) -> None:
        """接管一个已经 accept 的 WebSocket，直到连接结束。"""
        connection = ParticipantConnection(websocket, outbox_size=self.settings.WS_OUTBOX_SIZE)
        connection.start()
        try:
            if await self._await_admission(connection):
                await self._run_active(connection)
        finally:
            await self._disconnect(connection)

    # ── 接收 ──────────────────────────────────────────────────────────

    async def _receive(self, connection: ParticipantConnection) -> str | None:
        """读取下一帧文本；连接结束（正常、异常或空闲超时）时返回 ``None``。

        二进制帧不属于协议，回一个 ``error`` 后继续等待下一帧。
        """
        timeout = self.settings.IDLE_TIMEOUT_SECONDS
        while True:
            try:
                if timeout is not None:
                    message = await asyncio.wait_for(connection.websocket.receive(), timeout)
                else:
                    message = await connection.websocket.receive()
            except asyncio.TimeoutError:
                logger.info("连接空闲超时 | participant=%s", connection.participant_id)
                await connection.close(CLOSE_IDLE_TIMEOUT)
                return None
            except WebSocketDisconnect as e:
                logger.debug("客户端断开 | code=%s", e.code)
                return None
            except RuntimeError as e:
                # 连接已被本端关闭后再读取
                logger.debug("连接已关闭，停止接收 | %s", e)
                return None
            except Exception as e:
                logger.error("WebSocket 接收异常: %s", e, exc_info=True)
                return None

            if message["type"] == "websocket.disconnect":
                logger.debug("客户端断开 | code=%s", message.get("code"))
                return None
            text = message.get("text")
            if text is None:
                connection.send(ErrorEvent(code=ValidationError.code, detail="只支持文本帧"))
                continue
            return text

    # ── CONNECTING ────────────────────────────────────────────────────

    async def _await_admission(self, connection: ParticipantConnection) -> bool:
        """等待 ``join`` 并尝试加入房间。

        Returns:
            是否进入 ACTIVE 状态。
        """
        while True:
            raw = await self._receive(connection)
            if raw is None:
                return False

            try:
                event = parse_client_event(raw)
                if not isinstance(event, JoinEvent):
                    raise ValidationError("请先发送 join 加入聊天室")
                await self.room.registry.admit(
                    event.display_name,
                    on_admitted=lambda result: self._activate(connection, result),
                )
            except CapacityError as e:
                logger.info("聊天室已满，拒绝连接 | room=%s", self.room.room_id)
                connection.send(RoomFullEvent(detail=e.detail))
                await connection.drain()
                await connection.close(CLOSE_ROOM_FULL)
                return False
            except ValidationError as e:
                connection.send(ErrorEvent(code=e.code, detail=e.detail))
                continue
            return True

    def _activate(self, connection: ParticipantConnection, result: AdmitResult) -> None:
        # 在注册表锁内执行：先回放状态，再纳入广播，之后的通知都不会漏掉
        connection.participant_id = result.participant_id
        connection.state = ConnectionState.ADMITTED
        connection.send(
            JoinedEvent(
                participant_id=result.participant_id,
                occupants=list(result.occupants),
                messages=list(result.messages),
            ),
        )
        if others_typing(result.typing_ids, result.participant_id):
            connection.send(TypingEvent(others_typing=True))
        self.room.broadcaster.attach(result.participant_id, connection)
        connection.state = ConnectionState.ACTIVE

    # ── ACTIVE ────────────────────────────────────────────────────────

    async def _run_active(self, connection: ParticipantConnection) -> None:
        while True:
            raw = await self._receive(connection)
            if raw is None:
                return
            try:
                await self._dispatch(connection, raw)
            except ChatError as e:
                # 软拒绝：只通知发送者，连接保持打开
                logger.debug("事件被拒绝 | code=%s | %s", e.code, e.detail)
                connection.send(ErrorEvent(code=e.code, detail=e.detail))
            # 让出事件循环，各连接的发送协程才能跟上
            await asyncio.sleep(0)

    async def _dispatch(self, connection: ParticipantConnection, raw: str) -> None:
        event = parse_client_event(raw)
        participant_id = connection.participant_id
        registry = self.room.registry

        if isinstance(event, SendMessageEvent):
            if not self.rate_limiter.is_allowed(participant_id):
                raise RateLimitedError("发送速度太快啦，请慢一点~")
            await registry.post_message(participant_id, event.text)
            # 消息发出后不再处于输入状态
            connection.cancel_typing_timer()
            await registry.set_typing(participant_id, False)

        elif isinstance(event, SetTypingEvent):
            if event.is_typing:
                connection.arm_typing_timer(
                    self.settings.TYPING_TIMEOUT_SECONDS,
                    lambda: registry.set_typing(participant_id, False),
                )
            else:
                connection.cancel_typing_timer()
            await registry.set_typing(participant_id, event.is_typing)

        else:
            raise ValidationError("已经加入聊天室")

    # ── DISCONNECTED ──────────────────────────────────────────────────

    async def _disconnect(self, connection: ParticipantConnection) -> None:
        connection.cancel_typing_timer()
        participant_id = connection.participant_id
        if participant_id is not None:
            self.room.broadcaster.detach(participant_id)
            self.rate_limiter.remove_client(participant_id)
            await self.room.registry.evict(participant_id)
        await connection.shutdown()
