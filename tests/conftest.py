"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 假 WebSocket、测试配置与 FastAPI TestClient，
使网关测试无需真实网络即可快速运行。
"""
from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable, Iterator
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("WS_RATE_LIMIT_INTERVAL", "0")  # 端到端测试不限制发送频率

from fastapi import WebSocketDisconnect  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.rate_limit import limiter  # noqa: E402
from app.core.settings import Settings  # noqa: E402
from app.services.chat_room import ChatRoom  # noqa: E402
from app.services.registry import SessionRegistry  # noqa: E402


class FakeWebSocket:
    """可控的 WebSocket 替身，``receive()`` 返回与 Starlette 相同形状的消息。

    - ``push()``       —— 模拟客户端发来一帧 JSON 文本
    - ``push_bytes()`` —— 模拟客户端发来一帧二进制
    - ``disconnect()`` —— 模拟客户端断开
    - ``sent``         —— 服务端发出的所有事件（已解析为 dict）
    """

    def __init__(self) -> None:
        self.incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[dict] = []
        self.close_code: int | None = None

    async def receive(self) -> dict[str, Any]:
        item = await self.incoming.get()
        if isinstance(item, WebSocketDisconnect):
            return {"type": "websocket.disconnect", "code": item.code}
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, bytes):
            return {"type": "websocket.receive", "bytes": item}
        return {"type": "websocket.receive", "text": item}

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        if self.close_code is None:
            self.close_code = code
            # 服务端关闭后，对端随即确认断开
            self.incoming.put_nowait(WebSocketDisconnect(code))

    def push(self, event: dict | str) -> None:
        self.incoming.put_nowait(event if isinstance(event, str) else json.dumps(event))

    def push_bytes(self, data: bytes) -> None:
        self.incoming.put_nowait(data)

    def disconnect(self, code: int = 1000) -> None:
        self.incoming.put_nowait(WebSocketDisconnect(code))

    def events(self, event_type: str) -> list[dict]:
        return [e for e in self.sent if e["type"] == event_type]


class BlockedWebSocket(FakeWebSocket):
    """一个永远发不出去的客户端（例如对端卡死）。"""

    async def send_text(self, data: str) -> None:
        await asyncio.Event().wait()


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """轮询直到条件成立，超时则断言失败。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("条件未在超时前满足")
        await asyncio.sleep(0.01)


@pytest.fixture()
def chat_settings() -> Settings:
    """测试用配置：关闭消息限流，缩短输入超时。"""
    return Settings(
        ENVIRONMENT="test",
        WS_RATE_LIMIT_INTERVAL=0,
        TYPING_TIMEOUT_SECONDS=0.05,
    )


@pytest.fixture()
def chat_room() -> ChatRoom:
    return ChatRoom(room_id="test", registry=SessionRegistry(capacity=2))


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """运行 lifespan 的 TestClient，每个测试一个全新的聊天系统。"""
    from app.main import app

    limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
