import asyncio
import json

import httpx
from websockets.asyncio.client import connect

BASE_URL = "http://127.0.0.1:8000"
WS_URL = "ws://127.0.0.1:8000/ws/chat"


async def recv_until(websocket, event_type: str, timeout: float = 2.0) -> dict | None:
    """读取消息直到出现指定类型的事件，超时返回 None。"""
    try:
        while True:
            event = json.loads(await asyncio.wait_for(websocket.recv(), timeout=timeout))
            print(f"   <- {event}")
            if event["type"] == event_type:
                return event
    except asyncio.TimeoutError:
        return None


async def check_room_full() -> None:
    print("=" * 50)
    print(" 验证双人上限（期望: 第三个连接收到 room_full）")
    print("=" * 50)

    async with connect(WS_URL) as alice, connect(WS_URL) as bob:
        await alice.send(json.dumps({"type": "join", "display_name": "Alice"}))
        await recv_until(alice, "joined")
        await bob.send(json.dumps({"type": "join", "display_name": "Bob"}))
        await recv_until(bob, "joined")

        async with connect(WS_URL) as carol:
            await carol.send(json.dumps({"type": "join", "display_name": "Carol"}))
            if await recv_until(carol, "room_full"):
                print("✅ 成功: 第三个连接被拒绝")
            else:
                print("❌ 失败: 没有收到 room_full")

        print("\n验证消息广播与输入状态...")
        await alice.send(json.dumps({"type": "set_typing", "is_typing": True}))
        if (await recv_until(bob, "typing") or {}).get("others_typing"):
            print("✅ 成功: Bob 看到 Alice 正在输入")

        await alice.send(json.dumps({"type": "send_message", "text": "hi"}))
        if await recv_until(alice, "message") and await recv_until(bob, "message"):
            print("✅ 成功: 消息广播给了双方")


async def check_room_api() -> None:
    print("\n" + "=" * 50)
    print(" 验证 REST 状态接口")
    print("=" * 50)
    async with httpx.AsyncClient() as client:
        resp = await client.get(f"{BASE_URL}/api/room")
        print(f"状态码: {resp.status_code} | {resp.json()}")


async def main() -> None:
    print("🟢 开始执行聊天室冒烟验证...\n")
    print("要求: 在运行本脚本前，请确保主程序服务已经在 http://127.0.0.1:8000 运行。\n")

    await check_room_full()
    await check_room_api()

    print("\n🏁 验证结束。")


if __name__ == "__main__":
    asyncio.run(main())
