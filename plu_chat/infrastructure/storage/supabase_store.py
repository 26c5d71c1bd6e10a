"""Supabase (PostgREST) 持久化后端。

表结构沿用线上项目：
- chat_conversations(id, user_id, document_id, is_active, created_at, last_message_at)
- chat_messages(id, conversation_id, user_id, document_id, role, message, metadata,
  reply_to_message_id, created_at)
- rpc finalize_chat_turn: 服务端函数，按 user_message_id 幂等写入助手回复。
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from plu_chat.config.settings import settings
from plu_chat.domain.conversation import Conversation, FinalizeResult
from plu_chat.domain.exceptions import PersistenceError, ValidationError
from plu_chat.domain.models import ChatMessage, Role, format_timestamp, parse_timestamp
from plu_chat.infrastructure.logging.logger import logger


CONVERSATIONS_TABLE = "chat_conversations"
MESSAGES_TABLE = "chat_messages"
FINALIZE_RPC = "finalize_chat_turn"


class SupabaseChatPersistence:
    def __init__(self, cfg=settings):
        self._settings = cfg
        if not getattr(cfg, "supabase_url", None) or not getattr(cfg, "supabase_key", None):
            raise ValidationError(code="MISSING_SUPABASE_CONFIG", message="SUPABASE_URL / SUPABASE_KEY not set")
        self._base = cfg.supabase_url.rstrip("/") + "/rest/v1"

    def get_or_create_conversation(self, user_id: str, document_id: str) -> Conversation:
        if not user_id or not document_id:
            raise ValidationError(code="MISSING_IDS", message="User ID and document ID are required")
        rows = self._request(
            "GET",
            f"/{CONVERSATIONS_TABLE}",
            params={
                "select": "*",
                "user_id": f"eq.{user_id}",
                "document_id": f"eq.{document_id}",
                "is_active": "eq.true",
                "order": "created_at.desc",
                "limit": "1",
            },
        )
        if rows:
            return self._to_conversation(rows[0])
        created = self._request(
            "POST",
            f"/{CONVERSATIONS_TABLE}",
            json={"user_id": user_id, "document_id": document_id, "is_active": True},
        )
        return self._to_conversation(self._single(created))

    def get_active_conversation_id(self, user_id: str, document_id: str) -> Optional[str]:
        if not user_id or not document_id:
            return None
        rows = self._request(
            "GET",
            f"/{CONVERSATIONS_TABLE}",
            params={
                "select": "id",
                "user_id": f"eq.{user_id}",
                "document_id": f"eq.{document_id}",
                "is_active": "eq.true",
                "limit": "1",
            },
        )
        return str(rows[0]["id"]) if rows else None

    def deactivate_conversation(self, conversation_id: str) -> None:
        if not conversation_id:
            raise ValidationError(code="MISSING_IDS", message="Conversation ID is required")
        self._request(
            "PATCH",
            f"/{CONVERSATIONS_TABLE}",
            params={"id": f"eq.{conversation_id}"},
            json={"is_active": False},
        )

    def save_message(
        self,
        conversation_id: str,
        user_id: str,
        document_id: str,
        role: Role,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChatMessage:
        if not conversation_id or not user_id or not document_id or not role or not (message or "").strip():
            raise ValidationError(
                code="INVALID_MESSAGE",
                message="Conversation ID, user ID, document ID, role, and message are required",
            )
        if role not in ("user", "assistant"):
            raise ValidationError(code="INVALID_ROLE", message='Role must be either "user" or "assistant"')
        metadata = dict(metadata or {})
        created = self._request(
            "POST",
            f"/{MESSAGES_TABLE}",
            json={
                "conversation_id": conversation_id,
                "user_id": user_id,
                "document_id": document_id,
                "role": role,
                "message": message.strip(),
                "metadata": metadata,
                "reply_to_message_id": metadata.get("reply_to_message_id"),
            },
        )
        saved = ChatMessage.from_dict(self._single(created))
        # 消息已写入，last_message_at 更新失败不影响本次保存
        try:
            self._request(
                "PATCH",
                f"/{CONVERSATIONS_TABLE}",
                params={"id": f"eq.{conversation_id}"},
                json={"last_message_at": format_timestamp(datetime.now(timezone.utc))},
            )
        except PersistenceError as e:
            logger.warning(
                "Failed to update conversation last_message_at",
                extra={"extra": {"conversation_id": conversation_id, "code": e.code}},
            )
        return saved

    def get_messages(self, conversation_id: str) -> List[ChatMessage]:
        if not conversation_id:
            raise ValidationError(code="MISSING_IDS", message="Conversation ID is required")
        rows = self._request(
            "GET",
            f"/{MESSAGES_TABLE}",
            params={
                "select": "*",
                "conversation_id": f"eq.{conversation_id}",
                "order": "created_at.asc",
            },
        )
        return [ChatMessage.from_dict(row) for row in rows or []]

    def finalize_turn(
        self,
        conversation_id: str,
        user_id: str,
        document_id: str,
        user_message_id: str,
        ai_text: str,
    ) -> FinalizeResult:
        data = self._request(
            "POST",
            f"/rpc/{FINALIZE_RPC}",
            json={
                "p_conversation_id": conversation_id,
                "p_user_id": user_id,
                "p_document_id": document_id,
                "p_user_message_id": user_message_id,
                "p_ai_text": ai_text,
            },
        )
        row = self._single(data)
        return FinalizeResult(
            assistant_message_id=str(row["assistant_message_id"]),
            conversation_turn=int(row.get("conversation_turn") or 0),
        )

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        key = self._settings.supabase_key
        return {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Any] = None,
    ) -> Any:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.request(method, f"{self._base}{path}", params=params, json=json, headers=self._headers())
        except httpx.RequestError as e:
            raise PersistenceError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        if resp.status_code >= 400:
            logger.warning(
                "Supabase request failed",
                extra={"extra": {"path": path, "status": resp.status_code}},
            )
            raise PersistenceError(code="SUPABASE_ERROR", message=resp.text, http_status=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _single(data: Any) -> Dict[str, Any]:
        if isinstance(data, list):
            if not data:
                raise PersistenceError(code="EMPTY_RESULT", message="No row returned")
            data = data[0]
        if not isinstance(data, dict):
            raise PersistenceError(code="UNEXPECTED_RESULT", message=repr(data)[:200])
        return data

    @staticmethod
    def _to_conversation(row: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=row.get("user_id") or "",
            document_id=row.get("document_id") or "",
            is_active=bool(row.get("is_active", True)),
            created_at=parse_timestamp(row.get("created_at")),
            last_message_at=parse_timestamp(row["last_message_at"]) if row.get("last_message_at") else None,
        )
