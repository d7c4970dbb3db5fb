"""
tests.test_gateway
~~~~~~~~~~~~~~~~~~

ChatGateway 测试 —— 用假 WebSocket 驱动完整的连接状态机。
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio
from pydantic import ValidationError as PydanticValidationError

from app.core.settings import Settings
from app.services.chat_room import ChatRoom
from app.services.connection import CLOSE_IDLE_TIMEOUT, CLOSE_ROOM_FULL, CLOSE_SLOW_CONSUMER
from app.services.gateway import ChatGateway
from tests.conftest import BlockedWebSocket, FakeWebSocket, wait_until


class FailingWebSocket(FakeWebSocket):
    """第 ``fail_after`` 次之后发送就抛错的客户端。"""

    def __init__(self, fail_after: int) -> None:
        super().__init__()
        self.fail_after = fail_after

    async def send_text(self, data: str) -> None:
        if len(self.sent) >= self.fail_after:
            raise ConnectionResetError("peer reset")
        await super().send_text(data)


class GatewayHarness:
    """在同一个房间里启动多个网关会话。"""

    def __init__(self, room: ChatRoom, settings: Settings) -> None:
        self.room = room
        self.settings = settings
        self.tasks: list[asyncio.Task] = []

    def connect(self, ws: FakeWebSocket | None = None) -> FakeWebSocket:
        ws = ws or FakeWebSocket()
        gateway = ChatGateway(room=self.room, settings=self.settings)
        self.tasks.append(asyncio.create_task(gateway.serve(ws)))
        return ws

    async def join(self, name: str, ws: FakeWebSocket | None = None) -> FakeWebSocket:
        ws = self.connect(ws)
        ws.push({"type": "join", "display_name": name})
        await wait_until(lambda: ws.events("joined") or ws.events("room_full") or ws.events("error"))
        return ws

    async def close(self) -> None:
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)


@pytest_asyncio.fixture()
async def harness(chat_room: ChatRoom, chat_settings: Settings) -> AsyncIterator[GatewayHarness]:
    h = GatewayHarness(chat_room, chat_settings)
    yield h
    await h.close()


def participant_id(ws: FakeWebSocket) -> str:
    return ws.events("joined")[0]["participant_id"]


# ── 加入 ──────────────────────────────────────────────────────────────

class TestAdmission:
    """测试 CONNECTING → ACTIVE 以及房间已满。"""

    @pytest.mark.asyncio
    async def test_joined_replays_state(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        alice.push({"type": "send_message", "text": "hello"})
        await wait_until(lambda: alice.events("message"))

        bob = await harness.join("Bob")

        (joined,) = bob.events("joined")
        assert [o["display_name"] for o in joined["occupants"]] == ["Alice", "Bob"]
        assert [m["text"] for m in joined["messages"]] == ["hello"]
        # joined 总是新连接收到的第一个事件
        assert bob.sent[0]["type"] == "joined"

    @pytest.mark.asyncio
    async def test_presence_broadcast_on_join(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        bob = await harness.join("Bob")

        await wait_until(lambda: len(alice.events("presence")) == 2)
        assert alice.events("presence")[-1]["count"] == 2
        await wait_until(lambda: bob.events("presence"))
        assert bob.events("presence")[-1]["count"] == 2

    @pytest.mark.asyncio
    async def test_third_connection_gets_room_full(self, harness: GatewayHarness) -> None:
        """第三个连接收到 room_full 并被关闭，已有两人不受影响。"""
        alice = await harness.join("Alice")
        bob = await harness.join("Bob")
        await wait_until(lambda: len(alice.events("presence")) == 2)

        carol = await harness.join("Carol")

        assert carol.events("room_full")
        assert carol.events("joined") == []
        await wait_until(lambda: carol.close_code == CLOSE_ROOM_FULL)
        assert [o.display_name for o in harness.room.registry.occupants] == ["Alice", "Bob"]
        assert harness.room.broadcaster.online_count == 2
        assert len(alice.events("presence")) == 2
        assert bob.close_code is None

    @pytest.mark.asyncio
    async def test_events_before_join_are_rejected(self, harness: GatewayHarness) -> None:
        ws = harness.connect()
        ws.push({"type": "send_message", "text": "hi"})
        ws.push("not json at all")
        await wait_until(lambda: len(ws.events("error")) == 2)

        ws.push({"type": "join", "display_name": "Alice"})
        await wait_until(lambda: ws.events("joined"))

        assert harness.room.registry.messages == []

    @pytest.mark.asyncio
    async def test_invalid_name_keeps_connection_open(self, harness: GatewayHarness) -> None:
        ws = harness.connect()
        ws.push({"type": "join", "display_name": "   "})
        await wait_until(lambda: ws.events("error"))

        assert ws.close_code is None
        ws.push({"type": "join", "display_name": "Alice"})
        await wait_until(lambda: ws.events("joined"))

    @pytest.mark.asyncio
    async def test_join_twice_is_rejected(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        alice.push({"type": "join", "display_name": "Alice again"})

        await wait_until(lambda: alice.events("error"))
        assert len(harness.room.registry.occupants) == 1


# ── 消息 ──────────────────────────────────────────────────────────────

class TestMessages:
    """测试消息广播与软拒绝。"""

    @pytest.mark.asyncio
    async def test_message_reaches_both_including_sender(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        bob = await harness.join("Bob")

        alice.push({"type": "send_message", "text": "hi"})

        await wait_until(lambda: alice.events("message") and bob.events("message"))
        for ws in (alice, bob):
            (event,) = ws.events("message")
            assert event["message"]["text"] == "hi"
            assert event["message"]["participant_id"] == participant_id(alice)
        assert len(harness.room.registry.messages) == 1

    @pytest.mark.asyncio
    async def test_empty_message_is_rejected_to_sender_only(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        bob = await harness.join("Bob")

        alice.push({"type": "send_message", "text": "   "})
        await wait_until(lambda: alice.events("error"))

        assert alice.events("error")[0]["code"] == "invalid"
        assert bob.events("error") == []
        assert alice.events("message") == bob.events("message") == []
        assert alice.close_code is None

    @pytest.mark.asyncio
    async def test_malformed_event_keeps_connection_open(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        alice.push({"type": "set_typing", "is_typing": "yes"})
        alice.push({"type": "dance"})
        await wait_until(lambda: len(alice.events("error")) == 2)

        alice.push({"type": "send_message", "text": "still here"})
        await wait_until(lambda: alice.events("message"))

    @pytest.mark.asyncio
    async def test_binary_frame_keeps_connection_open(self, harness: GatewayHarness) -> None:
        """二进制帧只回一个 error，参与者仍在房间里。"""
        alice = await harness.join("Alice")
        bob = await harness.join("Bob")
        await wait_until(lambda: len(alice.events("presence")) == 2)

        bob.push_bytes(b'{"type":"send_message","text":"x"}')
        await wait_until(lambda: bob.events("error"))

        assert bob.events("error")[0]["code"] == "invalid"
        assert bob.close_code is None
        assert len(harness.room.registry.occupants) == 2

        bob.push({"type": "send_message", "text": "text frame"})
        await wait_until(lambda: alice.events("message"))
        assert alice.events("message")[0]["message"]["text"] == "text frame"
        assert [e["count"] for e in alice.events("presence")] == [1, 2]

    @pytest.mark.asyncio
    async def test_rate_limited_message(self, chat_room: ChatRoom) -> None:
        settings = Settings(ENVIRONMENT="test", WS_RATE_LIMIT_INTERVAL=10)
        harness = GatewayHarness(chat_room, settings)
        try:
            alice = await harness.join("Alice")
            alice.push({"type": "send_message", "text": "one"})
            alice.push({"type": "send_message", "text": "two"})

            await wait_until(lambda: alice.events("error"))
            assert alice.events("error")[0]["code"] == "rate_limited"
            assert [m.text for m in chat_room.registry.messages] == ["one"]
        finally:
            await harness.close()


# ── 输入状态 ──────────────────────────────────────────────────────────

class TestTyping:
    """测试“正在输入”扇出。"""

    @pytest.mark.asyncio
    async def test_typing_goes_to_others_only(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        bob = await harness.join("Bob")

        alice.push({"type": "set_typing", "is_typing": True})

        await wait_until(lambda: bob.events("typing"))
        assert bob.events("typing")[0]["others_typing"] is True
        assert alice.events("typing") == []

    @pytest.mark.asyncio
    async def test_typing_auto_clears(self, harness: GatewayHarness) -> None:
        """停止输入一段时间后自动清除。"""
        alice = await harness.join("Alice")
        bob = await harness.join("Bob")

        alice.push({"type": "set_typing", "is_typing": True})

        await wait_until(lambda: len(bob.events("typing")) == 2)
        assert [e["others_typing"] for e in bob.events("typing")] == [True, False]
        assert harness.room.registry.typing_ids == frozenset()

    @pytest.mark.asyncio
    async def test_sending_clears_typing(self, chat_room: ChatRoom) -> None:
        settings = Settings(ENVIRONMENT="test", WS_RATE_LIMIT_INTERVAL=0, TYPING_TIMEOUT_SECONDS=30)
        harness = GatewayHarness(chat_room, settings)
        try:
            alice = await harness.join("Alice")
            bob = await harness.join("Bob")
            alice.push({"type": "set_typing", "is_typing": True})
            await wait_until(lambda: bob.events("typing"))

            alice.push({"type": "send_message", "text": "done"})

            await wait_until(lambda: len(bob.events("typing")) == 2)
            kinds = [e["type"] for e in bob.sent if e["type"] in ("message", "typing")]
            assert kinds == ["typing", "message", "typing"]
            assert bob.events("typing")[-1]["others_typing"] is False
        finally:
            await harness.close()

    @pytest.mark.asyncio
    async def test_joiner_sees_existing_typing(self, chat_room: ChatRoom) -> None:
        """加入时对方已在输入，新加入者紧随 joined 收到 typing。"""
        settings = Settings(ENVIRONMENT="test", WS_RATE_LIMIT_INTERVAL=0, TYPING_TIMEOUT_SECONDS=30)
        harness = GatewayHarness(chat_room, settings)
        try:
            alice = await harness.join("Alice")
            alice.push({"type": "set_typing", "is_typing": True})
            await wait_until(lambda: chat_room.registry.typing_ids)

            bob = await harness.join("Bob")

            await wait_until(lambda: bob.events("typing"))
            assert bob.sent[0]["type"] == "joined"
            assert bob.sent[1] == {"type": "typing", "others_typing": True}
            assert alice.events("typing") == []
        finally:
            await harness.close()


# ── 断开 ──────────────────────────────────────────────────────────────

class TestDisconnect:
    """测试断开后的清理与广播。"""

    @pytest.mark.asyncio
    async def test_disconnect_while_typing(self, chat_room: ChatRoom) -> None:
        """正在输入的人断开：剩下的人看到人数为 1，且不再显示“正在输入”。"""
        settings = Settings(ENVIRONMENT="test", TYPING_TIMEOUT_SECONDS=30)
        harness = GatewayHarness(chat_room, settings)
        try:
            alice = await harness.join("Alice")
            bob = await harness.join("Bob")
            alice.push({"type": "set_typing", "is_typing": True})
            await wait_until(lambda: bob.events("typing"))

            alice.disconnect()

            await wait_until(lambda: bob.events("presence")[-1]["count"] == 1)
            await wait_until(lambda: len(bob.events("typing")) == 2)
            assert bob.events("typing")[-1]["others_typing"] is False
            assert [o.display_name for o in chat_room.registry.occupants] == ["Bob"]
            assert chat_room.registry.typing_ids == frozenset()
            assert chat_room.broadcaster.online_count == 1
        finally:
            await harness.close()

    @pytest.mark.asyncio
    async def test_seat_is_freed_after_disconnect(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        await harness.join("Bob")
        alice.disconnect()
        await wait_until(lambda: len(harness.room.registry.occupants) == 1)

        carol = await harness.join("Carol")

        assert carol.events("joined")

    @pytest.mark.asyncio
    async def test_idle_timeout(self, chat_room: ChatRoom) -> None:
        settings = Settings(ENVIRONMENT="test", IDLE_TIMEOUT_SECONDS=0.05)
        harness = GatewayHarness(chat_room, settings)
        try:
            alice = await harness.join("Alice")

            await wait_until(lambda: alice.close_code == CLOSE_IDLE_TIMEOUT)
            await wait_until(lambda: chat_room.registry.is_empty)
        finally:
            await harness.close()

    def test_zero_idle_timeout_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            Settings(ENVIRONMENT="test", IDLE_TIMEOUT_SECONDS=0)

    @pytest.mark.asyncio
    async def test_receive_after_close_is_not_an_error(
        self, harness: GatewayHarness, caplog: pytest.LogCaptureFixture,
    ) -> None:
        """传输层已关闭后的读取失败只结束会话，不记 ERROR。"""
        alice = await harness.join("Alice")

        with caplog.at_level(logging.DEBUG):
            alice.incoming.put_nowait(
                RuntimeError('Cannot call "receive" once a disconnect message has been received.'),
            )
            await wait_until(lambda: harness.room.registry.is_empty)

        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


# ── 投递隔离 ──────────────────────────────────────────────────────────

class TestDeliveryIsolation:
    """慢连接或坏连接不影响其他人。"""

    @pytest.mark.asyncio
    async def test_stalled_recipient_does_not_block_others(self, chat_room: ChatRoom) -> None:
        settings = Settings(ENVIRONMENT="test", WS_RATE_LIMIT_INTERVAL=0, WS_OUTBOX_SIZE=3)
        harness = GatewayHarness(chat_room, settings)
        try:
            alice = await harness.join("Alice")
            bob = harness.connect(BlockedWebSocket())
            bob.push({"type": "join", "display_name": "Bob"})
            await wait_until(lambda: len(chat_room.registry.occupants) == 2)

            for i in range(6):
                alice.push({"type": "send_message", "text": f"msg-{i}"})

            await wait_until(lambda: len(alice.events("message")) == 6)
            await wait_until(lambda: bob.close_code == CLOSE_SLOW_CONSUMER)
            await wait_until(lambda: alice.events("presence")[-1]["count"] == 1)
            assert [e["message"]["text"] for e in alice.events("message")] == [
                f"msg-{i}" for i in range(6)
            ]
        finally:
            await harness.close()

    @pytest.mark.asyncio
    async def test_send_failure_evicts_only_that_connection(self, harness: GatewayHarness) -> None:
        alice = await harness.join("Alice")
        # joined + presence 之后的下一次发送失败
        bob = await harness.join("Bob", FailingWebSocket(fail_after=2))
        await wait_until(lambda: len(bob.sent) == 2)

        alice.push({"type": "send_message", "text": "hi"})

        await wait_until(lambda: alice.events("message"))
        await wait_until(lambda: [o.display_name for o in harness.room.registry.occupants] == ["Alice"])
        assert alice.close_code is None
