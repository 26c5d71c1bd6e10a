"""当前会话的内存消息视图。

ChatStore 持有一个活跃会话（用户 + 文档）的有序消息列表，供 UI 渲染：
插入顺序即对话顺序。临时消息用于乐观展示，随后被持久化版本替换或删除。

不变量：列表中没有重复 id；每个 reply_to_message_id 至多对应一条助手消息。
"""

from typing import Any, Dict, List, Optional
from uuid import uuid4

from plu_chat.domain.conversation import ChatPersistence
from plu_chat.domain.exceptions import BusinessError, ValidationError
from plu_chat.domain.models import LOCAL_ID_PREFIX, TEMP_ID_PREFIX, ChatMessage, Role
from plu_chat.infrastructure.logging.logger import logger
from plu_chat.locales import t


class ChatStore:
    def __init__(self, persistence: ChatPersistence, user_id: Optional[str] = None):
        self._persistence = persistence
        self.user_id = user_id
        self.messages: List[ChatMessage] = []
        self.current_conversation_id: Optional[str] = None
        self.current_document_id: Optional[str] = None
        self.is_popup_open = False
        self.is_loading = False
        self.is_streaming = False
        self.streaming_preview = ""
        self.error: Optional[str] = None

    @property
    def persistence(self) -> ChatPersistence:
        return self._persistence

    @property
    def has_messages(self) -> bool:
        return bool(self.messages)

    @property
    def has_conversation(self) -> bool:
        return bool(self.current_conversation_id)

    # ---- 会话生命周期 ----

    def initialize_chat(self, document_id: str) -> bool:
        """切换到某个文档的聊天；已有活跃会话时加载其消息并返回 True。"""

        if not self.user_id:
            self.error = t("unauthenticated")
            raise ValidationError(code="UNAUTHENTICATED", message=self.error)
        self.current_document_id = document_id
        self.current_conversation_id = None
        self.messages = []
        conversation_id = self._persistence.get_active_conversation_id(self.user_id, document_id)
        if not conversation_id:
            return False
        self.current_conversation_id = conversation_id
        self.load_messages()
        return True

    def load_messages(self) -> None:
        """用持久化层的数据刷新内存列表（按 id 与 reply 键去重）。

        只存在于本地的消息（``temp-`` / ``local-``）在服务端没有对应版本时保留，
        并放回原来的相对位置。
        """

        if not self.current_conversation_id:
            return
        self.is_loading = True
        try:
            rows = self._persistence.get_messages(self.current_conversation_id)
        except BusinessError as e:
            self.error = e.message
            raise
        finally:
            self.is_loading = False
        seen_ids = set()
        seen_replies = set()
        messages: List[ChatMessage] = []
        for msg in rows:
            reply_to = msg.reply_to_message_id if msg.role == "assistant" else None
            if msg.id in seen_ids or (reply_to and reply_to in seen_replies):
                continue
            seen_ids.add(msg.id)
            if reply_to:
                seen_replies.add(reply_to)
            messages.append(msg)
        self.messages = self._merge_client_only(messages)

    def create_conversation(self) -> str:
        if not self.user_id or not self.current_document_id:
            self.error = t("missing_conversation")
            raise ValidationError(code="MISSING_CONVERSATION_CONTEXT", message=self.error)
        conv = self._persistence.get_or_create_conversation(self.user_id, self.current_document_id)
        self.current_conversation_id = conv.id
        return conv.id

    def clear_chat(self) -> None:
        """停用当前会话并清空本地状态；下一次发送会创建新会话。"""

        if self.current_conversation_id:
            self._persistence.deactivate_conversation(self.current_conversation_id)
        self.messages = []
        self.current_conversation_id = None
        self.is_popup_open = False
        self.error = None

    def reset_chat(self) -> None:
        self.messages = []
        self.current_conversation_id = None
        self.current_document_id = None
        self.is_popup_open = False
        self.is_loading = False
        self.set_streaming(False)
        self.error = None

    # ---- 持久化消息 ----

    def add_message(self, role: Role, content: str, metadata: Optional[Dict[str, Any]] = None) -> ChatMessage:
        """先持久化，成功后再追加到列表；持久化失败时列表不变。"""

        saved = self.save_message_only(role, content, metadata)
        self._insert_unique(saved)
        return saved

    def save_message_only(
        self,
        role: Role,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        if not self.current_conversation_id:
            self.create_conversation()
        try:
            return self._persistence.save_message(
                self.current_conversation_id,
                self.user_id,
                self.current_document_id,
                role,
                content,
                metadata or {},
            )
        except BusinessError as e:
            self.error = e.message
            logger.error("Error saving message", extra={"extra": {"code": e.code, "role": role}})
            raise

    # ---- 临时消息 ----

    def add_temporary_message(self, role: Role, content: str) -> ChatMessage:
        temp = ChatMessage(
            id=f"{TEMP_ID_PREFIX}{uuid4().hex}",
            role=role,
            message=content,
            conversation_id=self.current_conversation_id,
            is_temporary=True,
        )
        self.messages.append(temp)
        return temp

    def add_local_message(self, role: Role, content: str, metadata: Optional[Dict[str, Any]] = None) -> ChatMessage:
        """追加一条只存在于本地的消息（没有持久化副本，也不再被替换）。"""

        local = ChatMessage(
            id=f"{LOCAL_ID_PREFIX}{uuid4().hex}",
            role=role,
            message=content,
            metadata=dict(metadata or {}),
            conversation_id=self.current_conversation_id,
        )
        self.messages.append(local)
        return local

    def update_temporary_message_content(self, temp_id: str, content: str) -> bool:
        msg = self._find_temporary(temp_id)
        if msg is None:
            return False
        msg.message = content
        return True

    def append_to_temporary_message(self, temp_id: str, delta: str) -> bool:
        msg = self._find_temporary(temp_id)
        if msg is None:
            return False
        msg.message = (msg.message or "") + delta
        return True

    def replace_temporary_message(self, temp_id: str, saved: ChatMessage) -> bool:
        """在同一位置用持久化版本替换临时消息。

        若持久化版本已在列表中（例如轮询时已加载），直接移除临时消息。
        """

        index = self._index_of(temp_id)
        if index is None:
            return False
        if self._has_counterpart(saved, exclude_index=index):
            del self.messages[index]
            return True
        self.messages[index] = saved
        return True

    def remove_temporary_message(self, temp_id: str) -> bool:
        index = self._index_of(temp_id)
        if index is None or not self.messages[index].is_temporary:
            return False
        del self.messages[index]
        return True

    def mark_persisted(self, temp_id: str) -> Optional[ChatMessage]:
        """保留临时消息并去掉临时标记（没有持久化副本时的最后兜底）。"""

        msg = self._find_temporary(temp_id)
        if msg is not None:
            msg.is_temporary = False
        return msg

    # ---- 查询 ----

    def find(self, message_id: str) -> Optional[ChatMessage]:
        index = self._index_of(message_id)
        return self.messages[index] if index is not None else None

    def find_reply(self, user_message_id: str) -> Optional[ChatMessage]:
        """查找已持久化的、回复指定用户消息的助手消息。"""

        for msg in self.messages:
            if msg.role == "assistant" and not msg.is_temporary and msg.reply_to_message_id == user_message_id:
                return msg
        return None

    # ---- UI 状态 ----

    def open_popup(self) -> None:
        self.is_popup_open = True

    def close_popup(self) -> None:
        self.is_popup_open = False

    def toggle_popup(self) -> None:
        self.is_popup_open = not self.is_popup_open

    def set_loading(self, loading: bool) -> None:
        self.is_loading = loading

    def set_streaming(self, streaming: bool) -> None:
        self.is_streaming = streaming
        if not streaming:
            self.streaming_preview = ""

    def update_streaming_preview(self, text: str) -> None:
        self.is_streaming = True
        self.streaming_preview = text

    # ---- 内部 ----

    def _index_of(self, message_id: str) -> Optional[int]:
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        return None

    def _find_temporary(self, temp_id: str) -> Optional[ChatMessage]:
        index = self._index_of(temp_id)
        if index is None or not self.messages[index].is_temporary:
            return None
        return self.messages[index]

    @staticmethod
    def _is_client_only(msg: ChatMessage) -> bool:
        return msg.id.startswith((TEMP_ID_PREFIX, LOCAL_ID_PREFIX))

    def _merge_client_only(self, rows: List[ChatMessage]) -> List[ChatMessage]:
        merged = list(rows)
        anchor = -1
        for old in self.messages:
            if not self._is_client_only(old):
                index = next((i for i, m in enumerate(merged) if m.id == old.id), None)
                if index is not None:
                    anchor = index
                continue
            if self._has_counterpart(old, within=merged):
                continue
            anchor += 1
            merged.insert(anchor, old)
        return merged

    def _has_counterpart(
        self,
        msg: ChatMessage,
        exclude_index: Optional[int] = None,
        within: Optional[List[ChatMessage]] = None,
    ) -> bool:
        reply_to = msg.reply_to_message_id if msg.role == "assistant" else None
        for i, other in enumerate(self.messages if within is None else within):
            if i == exclude_index:
                continue
            if other.id == msg.id:
                return True
            if reply_to and other.role == "assistant" and other.reply_to_message_id == reply_to:
                return True
        return False

    def _insert_unique(self, msg: ChatMessage) -> None:
        index = self._index_of(msg.id)
        if index is not None:
            self.messages[index] = msg
        elif not self._has_counterpart(msg):
            self.messages.append(msg)
