"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

聊天室领域异常。

所有异常都继承 ``ChatError`` 并携带一个机器可读的 ``code``，
网关据此把异常翻译成发给客户端的事件。这里没有任何异常会让进程退出：
最坏情况是关闭单个连接（容量）或丢弃单个事件（校验 / 传输）。
"""
from __future__ import annotations


class ChatError(Exception):
    """聊天室异常基类。

    Attributes:
        code: 发给客户端的错误码。
        detail: 人类可读的错误描述。
    """

    code: str = "error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class CapacityError(ChatError):
    """房间已满。对被拒绝的连接是终止性的，不会自动重试。"""

    code = "room_full"


class ValidationError(ChatError):
    """消息为空、昵称非法或发送者已不在房间中。可恢复，连接保持打开。"""

    code = "invalid"


class RateLimitedError(ChatError):
    """发送过快，本条消息被丢弃。"""

    code = "rate_limited"


class TransportFailure(ChatError):
    """向某个连接发送失败。只影响该连接本身。"""

    code = "transport"
