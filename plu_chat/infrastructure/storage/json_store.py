import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from plu_chat.config.settings import settings
from plu_chat.domain.conversation import Conversation, FinalizeResult
from plu_chat.domain.exceptions import BusinessError, PersistenceError, ValidationError
from plu_chat.domain.models import ChatMessage, Role, format_timestamp, parse_timestamp


class JsonChatPersistence:
    """本地文件持久化：每个会话一个目录，meta.json + messages.jsonl。

    finalize_turn 在进程内加锁，保证同一 user_message_id 只写入一条助手回复。
    """

    _lock = threading.RLock()

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    # ---- 会话 ----

    def get_or_create_conversation(self, user_id: str, document_id: str) -> Conversation:
        if not user_id or not document_id:
            raise ValidationError(code="MISSING_IDS", message="User ID and document ID are required")
        with self._lock:
            existing = self._find_active(user_id, document_id)
            if existing:
                return existing
            cid = f"c-{uuid4().hex}"
            cdir = self._conv_root / cid
            cdir.mkdir(parents=True, exist_ok=True)
            conv = Conversation(
                id=cid,
                user_id=user_id,
                document_id=document_id,
                is_active=True,
                created_at=datetime.now(timezone.utc),
            )
            self._write_meta(cdir, conv)
            return conv

    def get_active_conversation_id(self, user_id: str, document_id: str) -> Optional[str]:
        if not user_id or not document_id:
            return None
        conv = self._find_active(user_id, document_id)
        return conv.id if conv else None

    def get_conversation(self, conversation_id: str) -> Conversation:
        meta_path = self._conv_root / conversation_id / "meta.json"
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e))
        return self._to_conversation(data)

    def deactivate_conversation(self, conversation_id: str) -> None:
        if not conversation_id:
            raise ValidationError(code="MISSING_IDS", message="Conversation ID is required")
        with self._lock:
            conv = self.get_conversation(conversation_id)
            conv.is_active = False
            self._write_meta(self._conv_root / conversation_id, conv)

    # ---- 消息 ----

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
        with self._lock:
            return self._append_message(conversation_id, role, message.strip(), dict(metadata or {}))

    def get_messages(self, conversation_id: str) -> List[ChatMessage]:
        if not conversation_id:
            raise ValidationError(code="MISSING_IDS", message="Conversation ID is required")
        msgs_path = self._conv_root / conversation_id / "messages.jsonl"
        items: List[ChatMessage] = []
        if not msgs_path.exists():
            return items
        for line in msgs_path.read_text(encoding="utf-8").splitlines():
            try:
                items.append(ChatMessage.from_dict(json.loads(line)))
            except (ValueError, KeyError):
                continue
        items.sort(key=lambda m: m.created_at)
        return items

    def finalize_turn(
        self,
        conversation_id: str,
        user_id: str,
        document_id: str,
        user_message_id: str,
        ai_text: str,
    ) -> FinalizeResult:
        """幂等地为某条用户消息写入助手回复。"""

        if not (ai_text or "").strip():
            raise ValidationError(code="EMPTY_REPLY", message="Assistant text is required")
        with self._lock:
            messages = self.get_messages(conversation_id)
            user_turns = [m for m in messages if m.role == "user"]
            turn = next((i + 1 for i, m in enumerate(user_turns) if m.id == user_message_id), None)
            if turn is None:
                raise PersistenceError(code="USER_MESSAGE_NOT_FOUND", message=user_message_id)
            existing = next(
                (m for m in messages if m.role == "assistant" and m.reply_to_message_id == user_message_id),
                None,
            )
            if existing:
                return FinalizeResult(assistant_message_id=existing.id, conversation_turn=turn)
            saved = self._append_message(
                conversation_id,
                "assistant",
                ai_text.strip(),
                {"reply_to_message_id": user_message_id, "finalized": True},
            )
            return FinalizeResult(assistant_message_id=saved.id, conversation_turn=turn)

    # ---- 内部 ----

    def _append_message(
        self,
        conversation_id: str,
        role: Role,
        message: str,
        metadata: Dict[str, Any],
    ) -> ChatMessage:
        cdir = self._conv_root / conversation_id
        conv = self.get_conversation(conversation_id)
        record = ChatMessage(
            id=f"m-{uuid4().hex}",
            role=role,
            message=message,
            metadata=metadata,
            conversation_id=conversation_id,
        )
        try:
            payload = record.to_dict()
            payload.pop("isTemporary", None)
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False) + "\n")
            conv.last_message_at = record.created_at
            self._write_meta(cdir, conv)
        except BusinessError:
            raise
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))
        return record

    def _find_active(self, user_id: str, document_id: str) -> Optional[Conversation]:
        matches: List[Conversation] = []
        for cdir in self._conv_root.glob("*/"):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                conv = self._to_conversation(json.loads(meta_path.read_text(encoding="utf-8")))
            except (ValueError, KeyError):
                continue
            if conv.is_active and conv.user_id == user_id and conv.document_id == document_id:
                matches.append(conv)
        if not matches:
            return None
        return max(matches, key=lambda c: c.created_at)

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": conv.id,
            "user_id": conv.user_id,
            "document_id": conv.document_id,
            "is_active": conv.is_active,
            "created_at": format_timestamp(conv.created_at),
            "last_message_at": format_timestamp(conv.last_message_at) if conv.last_message_at else None,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            user_id=data["user_id"],
            document_id=data["document_id"],
            is_active=bool(data.get("is_active", True)),
            created_at=parse_timestamp(data["created_at"]),
            last_message_at=parse_timestamp(data["last_message_at"]) if data.get("last_message_at") else None,
        )
