"""
app.schemas.chat_events
~~~~~~~~~~~~~~~~~~~~~~~

聊天室的 Pydantic 模型：领域对象、WebSocket 事件协议与 REST 响应数据。

所有 WebSocket 帧都是带 ``type`` 字段的 JSON 文本。

客户端 → 服务端:
  - ``join``          —— ``{"type": "join", "display_name": "Alice"}``
  - ``send_message``  —— ``{"type": "send_message", "text": "hi"}``
  - ``set_typing``    —— ``{"type": "set_typing", "is_typing": true}``

服务端 → 客户端:
  - ``joined``    —— 仅发给新加入的连接，附带当前在线列表与消息记录
  - ``room_full`` —— 仅发给被拒绝的连接，随后关闭连接
  - ``message``   —— 广播给房间内所有人（包括发送者）
  - ``presence``  —— 有人加入 / 离开时广播
  - ``typing``    —— 按接收者单独计算，不包含接收者自己
  - ``error``     —— 软拒绝，仅发给触发的连接
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError


# ── 领域对象 ──────────────────────────────────────────────────────────

class Occupant(BaseModel):
    """房间内的一名在线参与者。"""

    model_config = ConfigDict(frozen=True)

    participant_id: str = Field(..., description="参与者 ID（每个连接唯一，不复用）")
    display_name: str = Field(..., description="客户端提供的昵称")
    joined_at: datetime = Field(..., description="加入时间（UTC）")


class Message(BaseModel):
    """一条聊天消息。创建后不可变。"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="消息 ID，基于创建时间的毫秒数，房间内严格递增")
    participant_id: str = Field(..., description="发送者 ID")
    display_name: str = Field(..., description="发送者昵称")
    text: str = Field(..., description="去除首尾空白后的消息文本")
    created_at: datetime = Field(..., description="创建时间（UTC）")


# ── 客户端 → 服务端 ───────────────────────────────────────────────────

class JoinEvent(BaseModel):
    """申请加入房间。"""

    type: Literal["join"]
    display_name: str


class SendMessageEvent(BaseModel):
    """发送一条消息。"""

    type: Literal["send_message"]
    text: str


class SetTypingEvent(BaseModel):
    """更新“正在输入”状态。"""

    type: Literal["set_typing"]
    is_typing: StrictBool


ClientEvent = Annotated[
    Union[JoinEvent, SendMessageEvent, SetTypingEvent],
    Field(discriminator="type"),
]

_client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


def parse_client_event(raw: str) -> JoinEvent | SendMessageEvent | SetTypingEvent:
    """把一帧 JSON 文本解析为客户端事件。

    Raises:
        ValidationError: JSON 格式错误、``type`` 未知或字段类型不对。
    """
    try:
        return _client_event_adapter.validate_json(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"无法识别的事件: {e.errors()[0]['msg']}") from e


# ── 服务端 → 客户端 ───────────────────────────────────────────────────

class JoinedEvent(BaseModel):
    """加入成功，回放当前房间状态。"""

    type: Literal["joined"] = "joined"
    participant_id: str
    occupants: list[Occupant]
    messages: list[Message]


class RoomFullEvent(BaseModel):
    """房间已满。"""

    type: Literal["room_full"] = "room_full"
    detail: str


class MessageEvent(BaseModel):
    """新消息。"""

    type: Literal["message"] = "message"
    message: Message


class PresenceEvent(BaseModel):
    """在线列表变化。"""

    type: Literal["presence"] = "presence"
    occupants: list[Occupant]
    count: int


class TypingEvent(BaseModel):
    """除接收者之外是否有人正在输入。"""

    type: Literal["typing"] = "typing"
    others_typing: bool


class ErrorEvent(BaseModel):
    """软拒绝，连接保持打开。"""

    type: Literal["error"] = "error"
    code: str
    detail: str


ServerEvent = Union[
    JoinedEvent, RoomFullEvent, MessageEvent, PresenceEvent, TypingEvent, ErrorEvent,
]


# ── REST 响应数据 ─────────────────────────────────────────────────────

class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room_id: str = Field(..., description="房间唯一标识")
    capacity: int = Field(..., description="房间容量")
    online_count: int = Field(..., description="当前在线人数")
    occupants: list[Occupant] = Field(..., description="在线参与者")
    message_count: int = Field(..., description="消息总数")


class MessageHistoryData(BaseModel):
    """消息记录分页数据。"""

    room_id: str = Field(..., description="房间 ID")
    messages: list[Message] = Field(..., description="消息列表（按发送顺序）")
    total: int = Field(..., description="本次返回条数")
