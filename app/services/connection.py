"""
app.services.connection
~~~~~~~~~~~~~~~~~~~~~~~

单个 WebSocket 连接的网关侧句柄。

每个 ``ParticipantConnection`` 拥有:
  - 自己的发送队列和发送协程，慢连接不会阻塞注册表或其他接收者；
  - 自己的“停止输入”定时器，每次输入事件都会取消并重新计时，断开时取消。
"""
from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable

from fastapi import WebSocket

from app.core.exceptions import TransportFailure
from app.core.logging import get_logger
from app.schemas.chat_events import ServerEvent

logger = get_logger(__name__)

# 被服务端主动关闭的连接使用的关闭码
CLOSE_ROOM_FULL: int = 4003
CLOSE_IDLE_TIMEOUT: int = 4008
CLOSE_SLOW_CONSUMER: int = 4009


class ConnectionState(str, enum.Enum):
    """连接状态机：CONNECTING → ADMITTED → ACTIVE → DISCONNECTED。"""

    CONNECTING = "connecting"
    ADMITTED = "admitted"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ParticipantConnection:
    """一个客户端连接。

    Attributes:
        websocket: 底层 WebSocket。
        state: 当前所处的连接状态。
        participant_id: 加入成功后分配的参与者 ID。
    """

    def __init__(self, websocket: WebSocket, outbox_size: int = 256) -> None:
        self.websocket = websocket
        self.state: ConnectionState = ConnectionState.CONNECTING
        self.participant_id: str | None = None
        self.outbox_size = outbox_size
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._in_flight = False
        self._sender_task: asyncio.Task[None] | None = None
        self._typing_timer: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._failed = False

    # ── 发送 ──────────────────────────────────────────────────────────

    def start(self) -> None:
        """启动发送协程。"""
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(self._send_loop())

    def send(self, event: ServerEvent) -> bool:
        """把一个事件放入发送队列，绝不阻塞。

        只有当积压达到 ``outbox_size`` 且发送协程正卡在一次写入上时，
        才认为客户端长时间不读。此时跳过消息会打乱顺序，所以直接断开该连接。
        发送协程只是还没被调度到时，积压不算超限。

        Returns:
            是否成功入队。
        """
        if self._failed or self.state is ConnectionState.DISCONNECTED:
            return False
        if self._in_flight and self._outbox.qsize() >= self.outbox_size:
            logger.warning("发送队列已满，断开慢连接 | participant=%s", self.participant_id)
            self._fail(CLOSE_SLOW_CONSUMER)
            return False
        self._outbox.put_nowait(event.model_dump_json())
        return True

    @property
    def sending(self) -> bool:
        """发送协程是否正在等待一次写入完成。"""
        return self._in_flight

    async def _send_loop(self) -> None:
        while True:
            payload = await self._outbox.get()
            if payload is None:
                break
            self._in_flight = True
            try:
                await self.websocket.send_text(payload)
            except Exception as e:
                failure = TransportFailure(str(e))
                logger.warning(
                    "发送失败，断开连接 | participant=%s | %s",
                    self.participant_id, failure.detail,
                )
                self._fail(None)
                break
            self._in_flight = False

    def _fail(self, close_code: int | None) -> None:
        """标记连接失败并异步关闭传输层，接收循环随后会结束。"""
        if self._failed:
            return
        self._failed = True
        if self._sender_task is not None and self._sender_task is not asyncio.current_task():
            self._sender_task.cancel()
        self._close_task = asyncio.create_task(self.close(close_code or 1011))

    @property
    def failed(self) -> bool:
        """发送端是否已失败。"""
        return self._failed

    async def drain(self) -> None:
        """等待队列中已有的事件发送完毕，然后结束发送协程。"""
        if self._sender_task is None or self._sender_task.done():
            return
        await self._outbox.put(None)
        try:
            await self._sender_task
        except asyncio.CancelledError:
            pass

    async def close(self, code: int = 1000) -> None:
        """关闭底层 WebSocket。对已关闭的连接是安全的。"""
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            # 对端已经断开时 close 会失败，这里只记录
            logger.debug("关闭连接失败（可能已断开）: %s", e)

    # ── 输入状态定时器 ────────────────────────────────────────────────

    def arm_typing_timer(
        self, timeout: float, on_expire: Callable[[], Awaitable[object]],
    ) -> None:
        """（重新）启动“停止输入”定时器，保证同一时刻最多一个。"""
        self.cancel_typing_timer()
        self._typing_timer = asyncio.create_task(self._typing_countdown(timeout, on_expire))

    def cancel_typing_timer(self) -> None:
        if self._typing_timer is not None and not self._typing_timer.done():
            self._typing_timer.cancel()
        self._typing_timer = None

    @property
    def typing_timer_pending(self) -> bool:
        return self._typing_timer is not None and not self._typing_timer.done()

    async def _typing_countdown(
        self, timeout: float, on_expire: Callable[[], Awaitable[object]],
    ) -> None:
        await asyncio.sleep(timeout)
        self._typing_timer = None
        await on_expire()

    # ── 清理 ──────────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """断开后的资源清理：取消定时器和发送协程。"""
        self.state = ConnectionState.DISCONNECTED
        self.cancel_typing_timer()
        if self._sender_task is not None and not self._sender_task.done():
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
        if self._close_task is not None and not self._close_task.done():
            await self._close_task
