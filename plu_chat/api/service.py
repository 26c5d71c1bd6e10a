"""对外 API 服务模块。

ChatService 把配置、持久化、传输、消息 Store 与对账引擎组装在一起，
生命周期显式：open() 打开某个文档的聊天，close() 释放状态。
可以作为上下文管理器使用。
"""

import time
from typing import Any, Callable, Dict, List, Optional

from plu_chat.config.settings import settings
from plu_chat.domain.conversation import ChatPersistence
from plu_chat.domain.models import TurnOutcome
from plu_chat.engine.reconciler import ReconcilerConfig, TurnReconciler
from plu_chat.infrastructure.logging.logger import logger
from plu_chat.infrastructure.storage.json_store import JsonChatPersistence
from plu_chat.infrastructure.storage.supabase_store import SupabaseChatPersistence
from plu_chat.providers import create_transport
from plu_chat.providers.base import WebhookTransport
from plu_chat.stores.chat_store import ChatStore


def create_persistence(cfg=settings) -> ChatPersistence:
    """根据配置创建持久化后端，默认使用本地 json 存储。"""

    backend = (getattr(cfg, "persistence_backend", None) or "json").lower()
    if backend == "supabase":
        return SupabaseChatPersistence(cfg)
    return JsonChatPersistence(root=cfg.storage_root)


class ChatService:
    def __init__(
        self,
        user_id: str,
        cfg=settings,
        persistence: Optional[ChatPersistence] = None,
        transport: Optional[WebhookTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = cfg
        self.store = ChatStore(persistence or create_persistence(cfg), user_id=user_id)
        self.reconciler = TurnReconciler(
            self.store,
            transport or create_transport(cfg),
            config=ReconcilerConfig.from_settings(cfg),
            sleep=sleep,
        )
        self._closed = False

    def __enter__(self) -> "ChatService":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    def open(self, document_id: str) -> bool:
        """打开某个文档的聊天。

        Returns:
            已存在活跃会话时为 True（其历史消息已加载）。
        """
        self._ensure_open()
        return self.store.initialize_chat(document_id)

    def send(self, message: str, document_id: Optional[str] = None) -> TurnOutcome:
        self._ensure_open()
        try:
            return self.reconciler.send_message(message, document_id)
        except Exception as e:
            logger.error(f"Chat send failed: {e}", extra={"extra": {
                "conversation_id": self.store.current_conversation_id,
                "error": str(e),
            }})
            raise

    def messages(self) -> List[Dict[str, Any]]:
        """当前会话的消息列表（可直接序列化为 JSON）。"""

        return [
            {
                "id": m.id,
                "role": m.role,
                "message": m.message,
                "metadata": dict(m.metadata),
                "created_at": m.created_at.isoformat(),
                "isTemporary": m.is_temporary,
                "isNewlyReceived": m.is_newly_received,
            }
            for m in self.store.messages
        ]

    def clear(self) -> None:
        self._ensure_open()
        self.store.clear_chat()

    def close(self) -> None:
        if self._closed:
            return
        self.store.reset_chat()
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("ChatService is closed")


def create_chat_service(user_id: str, cfg=settings, **kwargs: Any) -> ChatService:
    return ChatService(user_id=user_id, cfg=cfg, **kwargs)
