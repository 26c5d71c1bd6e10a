from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from .models import ChatMessage, Role


@dataclass
class Conversation:
    id: str
    user_id: str
    document_id: str
    is_active: bool
    created_at: datetime
    last_message_at: Optional[datetime] = None


@dataclass
class FinalizeResult:
    assistant_message_id: str
    conversation_turn: int


class ChatPersistence(Protocol):
    """消息持久化协议。

    失败时抛出 PersistenceError / ValidationError，而不是返回 success 标志。
    finalize_turn 必须对同一个 user_message_id 幂等：重复调用只会存在一条助手回复。
    """

    def get_or_create_conversation(self, user_id: str, document_id: str) -> Conversation:
        ...

    def get_active_conversation_id(self, user_id: str, document_id: str) -> Optional[str]:
        ...

    def deactivate_conversation(self, conversation_id: str) -> None:
        ...

    def save_message(
        self,
        conversation_id: str,
        user_id: str,
        document_id: str,
        role: Role,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        ...

    def get_messages(self, conversation_id: str) -> List[ChatMessage]:
        ...

    def finalize_turn(
        self,
        conversation_id: str,
        user_id: str,
        document_id: str,
        user_message_id: str,
        ai_text: str,
    ) -> FinalizeResult:
        ...
