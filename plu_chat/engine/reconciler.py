"""对话轮次对账引擎。

一轮对话 = 一条用户消息 + 它触发的唯一一条助手回复。流程：

1. sent: 先持久化用户消息，其 id 作为本轮关联键 message_id 发给 webhook。
2. webhook 调用失败（非 2xx / 网络异常）-> failed，持久化一条 isError 助手消息。
3. 解码后文本为空 -> 直接结束，不追加助手消息。
4. awaiting_server: 先轮询会话，看 webhook 后端是否已自行写入
   reply_to_message_id == message_id 的助手回复；找到则直接展示，不创建临时消息。
5. 轮询窗口耗尽：插入临时消息，调用幂等的 finalize_turn，再用持久化版本替换临时消息；
   仍然失败时保留临时消息并去掉临时标记。

成功路径上从不直接 save 助手消息，所以 finalize 重试不会产生第二条持久化回复。
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from plu_chat.domain.exceptions import (
    BusinessError,
    ReconciliationTimeout,
    ValidationError,
    format_error_message,
)
from plu_chat.domain.models import LOCAL_ID_PREFIX, ChatMessage, TurnOutcome, WebhookReply, WebhookRequest
from plu_chat.engine.retry import RetryPolicy
from plu_chat.engine.trace import TurnTrace
from plu_chat.infrastructure.logging.logger import log_event
from plu_chat.locales import t
from plu_chat.providers.base import WebhookTransport
from plu_chat.stores.chat_store import ChatStore


@dataclass
class ReconcilerConfig:
    poll_window_ms: int = 3000
    poll_interval_ms: int = 350
    poll_backoff: float = 1.0
    trace_dir: Optional[str] = None
    locale: Optional[str] = None

    @classmethod
    def from_settings(cls, cfg) -> "ReconcilerConfig":
        return cls(
            poll_window_ms=cfg.poll_window_ms,
            poll_interval_ms=cfg.poll_interval_ms,
            poll_backoff=getattr(cfg, "poll_backoff", 1.0),
            trace_dir=getattr(cfg, "trace_dir", None),
            locale=getattr(cfg, "locale", None),
        )


class TurnReconciler:
    """串行执行对话轮次：同一时刻只有一轮在进行，后来的调用会等待。"""

    def __init__(
        self,
        store: ChatStore,
        transport: WebhookTransport,
        config: Optional[ReconcilerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._transport = transport
        self._config = config or ReconcilerConfig()
        self._policy = RetryPolicy(
            window_ms=self._config.poll_window_ms,
            interval_ms=self._config.poll_interval_ms,
            backoff=self._config.poll_backoff,
        )
        self._sleep = sleep
        self._lock = threading.Lock()
        self._busy = False

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def send_message(self, message: str, document_id: Optional[str] = None) -> TurnOutcome:
        """发送一条用户消息并完成整轮对账。

        Raises:
            ValidationError: 消息为空、缺少文档或用户时，在任何网络调用之前抛出。
        """

        text = (message or "").strip()
        document_id = document_id or self._store.current_document_id
        self._validate(text, document_id)

        with self._lock:
            self._busy = True
            try:
                return self._run_turn(text, document_id)
            finally:
                self._busy = False

    def _validate(self, text: str, document_id: Optional[str]) -> None:
        if not text:
            key, code = "empty_message", "EMPTY_MESSAGE"
        elif not document_id:
            key, code = "missing_document", "MISSING_DOCUMENT"
        elif not self._store.user_id:
            key, code = "unauthenticated", "UNAUTHENTICATED"
        else:
            return
        self._store.error = t(key, self._config.locale)
        raise ValidationError(code=code, message=self._store.error)

    def _run_turn(self, text: str, document_id: str) -> TurnOutcome:
        store = self._store
        trace = TurnTrace(self._config.trace_dir, store.current_conversation_id, document_id)
        log_ctx: Dict[str, Any] = {"trace_id": trace.trace_id, "document_id": document_id}
        store.set_loading(True)
        store.error = None
        try:
            try:
                if store.current_document_id != document_id:
                    store.initialize_chat(document_id)
                user_msg = store.add_message("user", text)
            except BusinessError as e:
                return self._fail(trace, log_ctx, e, user_message=None)

            trace.bind(user_msg.id, store.current_conversation_id)
            trace.transition("sent")
            log_ctx.update(turn_id=user_msg.id, conversation_id=store.current_conversation_id)
            log_event(logging.INFO, "Stored user message", log_ctx)
            store.open_popup()

            request = WebhookRequest(
                message=text,
                document_id=document_id,
                user_id=store.user_id,
                conversation_id=store.current_conversation_id,
                message_id=user_msg.id,
            )
            try:
                reply = self._transport.send(request, on_delta=self._on_delta)
            except BusinessError as e:
                return self._fail(trace, log_ctx, e, user_message=user_msg)
            finally:
                store.set_streaming(False)

            log_event(
                logging.INFO,
                "Webhook reply decoded",
                log_ctx,
                streamed=reply.streamed,
                fallback_used=reply.fallback_used,
                text_length=len(reply.text),
            )
            if not reply.text:
                trace.transition("reconciled", empty=True)
                log_event(logging.WARNING, "Webhook returned no displayable text", log_ctx)
                return TurnOutcome(success=True, state="reconciled", user_message=user_msg, streamed=reply.streamed)

            trace.transition("awaiting_server")
            assistant, durable = self._reconcile(user_msg, reply, log_ctx)
            trace.transition("reconciled", durable=durable, assistant_message_id=assistant.id)
            log_event(
                logging.INFO,
                "Turn reconciled",
                log_ctx,
                assistant_message_id=assistant.id,
                durable=durable,
            )
            return TurnOutcome(
                success=True,
                state="reconciled",
                user_message=user_msg,
                assistant_message=assistant,
                text=reply.text,
                streamed=reply.streamed,
                durable=durable,
            )
        finally:
            store.set_loading(False)
            trace.finalize()

    def _on_delta(self, delta: str, full_text: str) -> None:
        self._store.update_streaming_preview(full_text)

    # ---- 对账 ----

    def _reconcile(self, user_msg: ChatMessage, reply: WebhookReply, log_ctx: Dict[str, Any]):
        store = self._store
        found = self._poll_for_reply(user_msg.id, log_ctx)
        if found is not None:
            found.is_newly_received = True
            return found, True

        timeout = ReconciliationTimeout(
            code="RECONCILIATION_TIMEOUT",
            message="Assistant reply not persisted within polling window",
            window_ms=self._policy.window_ms,
        )
        log_event(logging.WARNING, timeout.message, log_ctx, **timeout.extra)

        temp = store.add_temporary_message("assistant", reply.text)
        temp.metadata["reply_to_message_id"] = user_msg.id
        try:
            result = store.persistence.finalize_turn(
                store.current_conversation_id,
                store.user_id,
                store.current_document_id,
                user_msg.id,
                reply.text,
            )
        except BusinessError as e:
            log_event(logging.ERROR, "Finalize turn failed", log_ctx, code=e.code, error=e.message)
            return store.mark_persisted(temp.id) or temp, False

        durable = self._fetch_reply(user_msg.id, result.assistant_message_id, log_ctx)
        if durable is None:
            return store.mark_persisted(temp.id) or temp, False
        store.replace_temporary_message(temp.id, durable)
        log_event(
            logging.INFO,
            "Finalize turn confirmed",
            log_ctx,
            assistant_message_id=result.assistant_message_id,
            conversation_turn=result.conversation_turn,
        )
        return store.find(durable.id) or durable, True

    def _poll_for_reply(self, user_message_id: str, log_ctx: Dict[str, Any]) -> Optional[ChatMessage]:
        for attempt, delay in enumerate(self._policy.delays(), start=1):
            if delay:
                self._sleep(delay)
            try:
                self._store.load_messages()
            except BusinessError as e:
                log_event(logging.WARNING, "Reload failed while polling", log_ctx, attempt=attempt, error=e.message)
                continue
            found = self._store.find_reply(user_message_id)
            if found is not None:
                log_event(logging.INFO, "Server reply observed", log_ctx, attempt=attempt)
                return found
        return None

    def _fetch_reply(
        self,
        user_message_id: str,
        assistant_message_id: str,
        log_ctx: Dict[str, Any],
    ) -> Optional[ChatMessage]:
        try:
            rows = self._store.persistence.get_messages(self._store.current_conversation_id)
        except BusinessError as e:
            log_event(logging.WARNING, "Reload after finalize failed", log_ctx, error=e.message)
            return None
        for msg in rows:
            if msg.id == assistant_message_id:
                return msg
        for msg in rows:
            if msg.role == "assistant" and msg.reply_to_message_id == user_message_id:
                return msg
        return None

    # ---- 失败 ----

    def _fail(
        self,
        trace: TurnTrace,
        log_ctx: Dict[str, Any],
        error: BusinessError,
        user_message: Optional[ChatMessage],
    ) -> TurnOutcome:
        store = self._store
        error_text = format_error_message(error, t("send_failed", self._config.locale))
        store.error = error_text
        log_event(logging.ERROR, "Turn failed", log_ctx, code=error.code, error=error_text)

        content = t("error_reply", self._config.locale, error=error_text)
        metadata: Dict[str, Any] = {"isError": True}
        if user_message is not None:
            metadata["reply_to_message_id"] = user_message.id
        try:
            error_msg = store.add_message("assistant", content, metadata)
        except BusinessError as e:
            log_event(logging.ERROR, "Could not persist error reply", log_ctx, code=e.code)
            error_msg = store.add_local_message("assistant", content, metadata)
        trace.transition("failed", code=error.code)
        return TurnOutcome(
            success=False,
            state="failed",
            user_message=user_message,
            assistant_message=error_msg,
            error=error_text,
            durable=not error_msg.id.startswith(LOCAL_ID_PREFIX),
        )
