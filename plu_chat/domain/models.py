"""统一的聊天数据模型。

本模块定义了对账引擎、消息 Store 与持久化后端之间共享的标准数据结构：

- ChatMessage: 一条聊天消息（user/assistant），可以是临时的或已持久化的。
- WebhookRequest: 每轮对话发给 webhook 的请求体。
- WebhookReply: 解码后的 webhook 响应。
- TurnOutcome: 一轮对话结束后返回给调用方的结果。

持久化后端只负责在各自的存储格式和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional


# 消息角色（只允许 user/assistant 两种）
Role = Literal["user", "assistant"]

# 一轮对话的状态机：sent -> awaiting_server -> reconciled | failed
TurnState = Literal["sent", "awaiting_server", "reconciled", "failed"]

# 本地生成的临时消息 id 前缀，表示尚未持久化
TEMP_ID_PREFIX = "temp-"
# 仅在本地展示、没有持久化副本的消息（例如持久化失败时的错误提示）
LOCAL_ID_PREFIX = "local-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ChatMessage:
    """一条聊天消息。

    - id: 持久化层分配的 id，或带 ``temp-`` 前缀的本地临时 id。
    - message: 文本内容；临时消息在流式期间可追加，持久化后不再修改。
    - metadata: 附加元数据，``reply_to_message_id`` 关联触发本回复的用户消息，
      ``isError`` 标记错误提示消息。
    - is_temporary: 乐观展示、尚未被服务端确认时为 True。
    - is_newly_received: 通过轮询从服务端拿到的新回复，供 UI 播放入场动画，不落库。
    """

    id: str
    role: Role
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    conversation_id: Optional[str] = None
    is_temporary: bool = False
    is_newly_received: bool = False

    @property
    def reply_to_message_id(self) -> Optional[str]:
        return self.metadata.get("reply_to_message_id")

    @property
    def is_error(self) -> bool:
        return bool(self.metadata.get("isError"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "message": self.message,
            "metadata": dict(self.metadata),
            "reply_to_message_id": self.reply_to_message_id,
            "created_at": format_timestamp(self.created_at),
            "isTemporary": self.is_temporary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        """从持久化行构造消息；``reply_to_message_id`` 列会合并进 metadata。"""

        metadata = dict(data.get("metadata") or {})
        reply_to = data.get("reply_to_message_id")
        if reply_to and not metadata.get("reply_to_message_id"):
            metadata["reply_to_message_id"] = reply_to
        return cls(
            id=str(data["id"]),
            role=data["role"],
            message=data.get("message") or "",
            metadata=metadata,
            created_at=parse_timestamp(data.get("created_at")),
            conversation_id=data.get("conversation_id"),
            is_temporary=bool(data.get("isTemporary", False)),
        )


@dataclass
class WebhookRequest:
    """一轮对话发给 webhook 的请求。message_id 即本轮的关联键。"""

    message: str
    document_id: str
    user_id: str
    conversation_id: Optional[str]
    message_id: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
        }


@dataclass
class WebhookReply:
    """解码后的 webhook 响应。

    - text: 累积的完整回复文本，为空表示没有可展示的内容。
    - streamed: 是否按真正的流式（NDJSON/SSE）读取。
    - fallback_used: 非流式响应是否走了 NDJSON 逐行兜底解析。
    - raw: 单个 JSON 响应的原始内容，流式时为 None。
    """

    text: str
    streamed: bool
    status_code: int
    content_type: str = ""
    fallback_used: bool = False
    raw: Optional[Any] = None


@dataclass
class TurnOutcome:
    """一轮对话的最终结果。

    durable 为 False 表示助手回复只保留在本地（finalize 兜底也失败）。
    """

    success: bool
    state: TurnState
    user_message: Optional[ChatMessage] = None
    assistant_message: Optional[ChatMessage] = None
    text: str = ""
    error: Optional[str] = None
    streamed: bool = False
    durable: bool = True
