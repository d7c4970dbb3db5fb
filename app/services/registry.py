"""
app.services.registry
~~~~~~~~~~~~~~~~~~~~~

会话注册表 —— 单个聊天室的权威状态。

``SessionRegistry`` 独占三份状态：在线参与者、“正在输入”标记、消息记录。
网关只持有连接句柄，所有修改都必须经过这里的四个操作
（``admit`` / ``evict`` / ``post_message`` / ``set_typing``），
这样容量上限（最多 2 人、绝不挤掉已有的人）只在一个地方保证。

并发模型:
  四个操作共用一把 ``asyncio.Lock``，容量检查、插入与通知发出是一个原子步骤。
  通知在锁内同步分发给订阅者，因此每个订阅者看到的通知顺序就是产生顺序。
  订阅者必须是非阻塞的（只入队，不做 I/O）。
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Union

from pydantic import BaseModel, ConfigDict

from app.core.exceptions import CapacityError, ValidationError
from app.core.logging import get_logger
from app.schemas.chat_events import Message, Occupant

logger = get_logger(__name__)


# ── 通知 ──────────────────────────────────────────────────────────────

class PresenceChanged(BaseModel):
    """有人加入或离开。"""

    model_config = ConfigDict(frozen=True)

    occupants: tuple[Occupant, ...]


class MessagePosted(BaseModel):
    """新消息已追加到记录末尾。"""

    model_config = ConfigDict(frozen=True)

    message: Message


class TypingChanged(BaseModel):
    """某人的输入状态发生变化。

    ``participant_id`` 是状态发生变化的人；为 ``None`` 表示变化来自驱逐，
    此时应通知所有剩余的人。
    """

    model_config = ConfigDict(frozen=True)

    participant_id: str | None
    typing_ids: frozenset[str]


RoomNotification = Union[PresenceChanged, MessagePosted, TypingChanged]
RoomListener = Callable[[RoomNotification], None]


class AdmitResult(BaseModel):
    """加入成功后返回给网关的快照，用于向新连接回放状态。"""

    model_config = ConfigDict(frozen=True)

    participant_id: str
    occupants: tuple[Occupant, ...]
    messages: tuple[Message, ...]
    typing_ids: frozenset[str] = frozenset()


def others_typing(typing_ids: Iterable[str], recipient_id: str) -> bool:
    """对某个接收者而言，是否有“别人”正在输入。"""
    return any(pid != recipient_id for pid in typing_ids)


class SessionRegistry:
    """一个聊天室的权威状态。

    Attributes:
        capacity: 最大同时在线人数。
        display_name_max_length: 昵称最大长度。
        message_max_length: 单条消息最大长度。
    """

    def __init__(
        self,
        capacity: int = 2,
        display_name_max_length: int = 32,
        message_max_length: int = 2000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.capacity = capacity
        self.display_name_max_length = display_name_max_length
        self.message_max_length = message_max_length
        self._clock = clock

        self._lock = asyncio.Lock()
        self._occupants: dict[str, Occupant] = {}
        self._typing: set[str] = set()
        self._messages: list[Message] = []
        self._last_message_id: int = 0
        self._listeners: list[RoomListener] = []

    # ── 订阅 ──────────────────────────────────────────────────────────

    def subscribe(self, listener: RoomListener) -> Callable[[], None]:
        """订阅状态变化通知，返回取消订阅的函数。"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, notification: RoomNotification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as e:
                # 单个订阅者失败不影响本次修改，也不影响其他订阅者
                logger.warning("通知分发失败: %s", e, exc_info=True)

    # ── 只读视图 ──────────────────────────────────────────────────────

    @property
    def occupants(self) -> list[Occupant]:
        """按加入顺序排列的在线参与者。"""
        return list(self._occupants.values())

    @property
    def messages(self) -> list[Message]:
        """按发送顺序排列的消息记录。"""
        return list(self._messages)

    @property
    def typing_ids(self) -> frozenset[str]:
        """当前正在输入的参与者 ID。"""
        return frozenset(self._typing)

    @property
    def is_empty(self) -> bool:
        return not self._occupants

    def is_occupant(self, participant_id: str) -> bool:
        return participant_id in self._occupants

    # ── 操作 ──────────────────────────────────────────────────────────

    async def admit(
        self,
        display_name: str,
        on_admitted: Callable[[AdmitResult], None] | None = None,
    ) -> AdmitResult:
        """尝试让一名新参与者加入房间。

        ``on_admitted`` 在锁内、``PresenceChanged`` 发出之前调用，
        网关借此在任何后续通知之前完成新连接的订阅。

        Args:
            display_name: 客户端提供的昵称（去除首尾空白后 1..N 个字符）。
            on_admitted: 可选的锁内回调，必须是非阻塞的。

        Returns:
            新参与者 ID 以及当前在线列表、完整消息记录和输入状态的快照。

        Raises:
            CapacityError: 房间已满。
            ValidationError: 昵称为空或过长。
        """
        name = display_name.strip()
        if not name:
            raise ValidationError("昵称不能为空")
        if len(name) > self.display_name_max_length:
            raise ValidationError(f"昵称不能超过 {self.display_name_max_length} 个字符")

        async with self._lock:
            if len(self._occupants) >= self.capacity:
                raise CapacityError(f"聊天室已满（最多 {self.capacity} 人）")

            participant_id = uuid.uuid4().hex
            self._occupants[participant_id] = Occupant(
                participant_id=participant_id,
                display_name=name,
                joined_at=self._now(),
            )
            result = AdmitResult(
                participant_id=participant_id,
                occupants=tuple(self._occupants.values()),
                messages=tuple(self._messages),
                typing_ids=frozenset(self._typing),
            )
            logger.info(
                "参与者加入 | id=%s | name=%s | 在线: %d",
                participant_id, name, len(self._occupants),
            )

            if on_admitted is not None:
                on_admitted(result)
            self._emit(PresenceChanged(occupants=result.occupants))
            return result

    async def evict(self, participant_id: str) -> bool:
        """移除参与者及其输入标记。幂等：未知 ID 不做任何事。

        Returns:
            是否真的移除了一名参与者。
        """
        async with self._lock:
            occupant = self._occupants.pop(participant_id, None)
            if occupant is None:
                return False

            was_typing = participant_id in self._typing
            self._typing.discard(participant_id)
            logger.info(
                "参与者离开 | id=%s | name=%s | 在线: %d",
                participant_id, occupant.display_name, len(self._occupants),
            )

            self._emit(PresenceChanged(occupants=tuple(self._occupants.values())))
            if was_typing:
                self._emit(TypingChanged(participant_id=None, typing_ids=frozenset(self._typing)))
            return True

    async def post_message(self, participant_id: str, text: str) -> Message:
        """追加一条消息。

        Raises:
            ValidationError: 发送者已不在房间中、文本为空或过长。
        """
        body = text.strip()
        if not body:
            raise ValidationError("消息不能为空")
        if len(body) > self.message_max_length:
            raise ValidationError(f"消息不能超过 {self.message_max_length} 个字符")

        async with self._lock:
            occupant = self._occupants.get(participant_id)
            if occupant is None:
                raise ValidationError("发送者不在聊天室中")

            message = Message(
                id=str(self._next_message_id()),
                participant_id=participant_id,
                display_name=occupant.display_name,
                text=body,
                created_at=self._now(),
            )
            self._messages.append(message)
            logger.debug("新消息 | id=%s | from=%s", message.id, participant_id)

            self._emit(MessagePosted(message=message))
            return message

    async def set_typing(self, participant_id: str, is_typing: bool) -> bool:
        """更新输入标记。对不在房间中的 ID 不做任何事。

        Returns:
            标记是否真的发生了变化（只有变化时才发出通知）。
        """
        async with self._lock:
            if participant_id not in self._occupants:
                return False

            if is_typing == (participant_id in self._typing):
                return False

            if is_typing:
                self._typing.add(participant_id)
            else:
                self._typing.discard(participant_id)

            self._emit(TypingChanged(participant_id=participant_id, typing_ids=frozenset(self._typing)))
            return True

    # ── 内部工具 ──────────────────────────────────────────────────────

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _next_message_id(self) -> int:
        # 以毫秒时间戳为基础，时钟回拨或同一毫秒内多条消息时顺延
        candidate = int(self._clock() * 1000)
        self._last_message_id = max(candidate, self._last_message_id + 1)
        return self._last_message_id
