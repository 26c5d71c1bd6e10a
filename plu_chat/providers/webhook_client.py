"""聊天 webhook 适配器。

每轮对话只发出一次 POST，失败不重试：
- URL: settings.webhook_url
- 认证: 可选的 Authorization: Bearer <webhook_api_key>

响应按 content-type 分流：``text/event-stream`` / ``application/x-ndjson`` 按字节流增量解码，
其他 2xx 响应整体读取后先按单个 JSON 解析，失败再按 NDJSON 逐行解析。
"""

import json
from typing import Dict, Optional

import httpx

from plu_chat.config.settings import settings
from plu_chat.domain.exceptions import ApiError, NetworkError, ValidationError
from plu_chat.domain.models import WebhookReply, WebhookRequest
from plu_chat.infrastructure.logging.logger import logger
from plu_chat.locales import t
from plu_chat.streaming.ndjson import DeltaCallback, NdjsonStreamDecoder, decode_body


STREAM_CONTENT_TYPES = ("text/event-stream", "application/x-ndjson")


class WebhookClient:
    """聊天 webhook 客户端实现。"""

    name = "webhook"

    def __init__(self, cfg=settings):
        self._settings = cfg

    def send(self, req: WebhookRequest, on_delta: Optional[DeltaCallback] = None) -> WebhookReply:
        url = getattr(self._settings, "webhook_url", None)
        if not url:
            raise ValidationError(code="MISSING_WEBHOOK_URL", message="WEBHOOK_URL not set")
        logger.info(
            "Sending webhook request",
            extra={"extra": {"message_id": req.message_id, "conversation_id": req.conversation_id}},
        )
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream("POST", url, json=req.to_payload(), headers=self._headers()) as resp:
                    if not 200 <= resp.status_code < 300:
                        raise ApiError(
                            code="WEBHOOK_HTTP_ERROR",
                            message=self._error_text(resp),
                            http_status=resp.status_code,
                        )
                    content_type = (resp.headers.get("content-type") or "").lower()
                    if self._is_stream(content_type):
                        return self._read_stream(resp, content_type, on_delta)
                    return self._read_buffered(resp, content_type, on_delta)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = getattr(self._settings, "webhook_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def _is_stream(content_type: str) -> bool:
        return any(ct in content_type for ct in STREAM_CONTENT_TYPES)

    def _read_stream(self, resp, content_type: str, on_delta: Optional[DeltaCallback]) -> WebhookReply:
        decoder = NdjsonStreamDecoder(on_delta=on_delta)
        for chunk in resp.iter_bytes():
            decoder.feed(chunk)
        decoder.close()
        logger.info(
            "Streaming completed",
            extra={"extra": {"text_length": len(decoder.text), "skipped_lines": decoder.skipped_lines}},
        )
        return WebhookReply(
            text=decoder.text,
            streamed=True,
            status_code=resp.status_code,
            content_type=content_type,
        )

    def _read_buffered(self, resp, content_type: str, on_delta: Optional[DeltaCallback]) -> WebhookReply:
        resp.read()
        decoded = decode_body(resp.text, on_delta)
        return WebhookReply(
            text=decoded.text,
            streamed=False,
            status_code=resp.status_code,
            content_type=content_type,
            fallback_used=decoded.fallback_used,
            raw=decoded.raw,
        )

    @staticmethod
    def _error_text(resp) -> str:
        """从非 2xx 响应中提取可读错误：JSON 的 message 字段，否则原始文本。"""

        try:
            resp.read()
            content_type = (resp.headers.get("content-type") or "").lower()
            if "application/json" in content_type:
                body = resp.json()
                text = body.get("message") if isinstance(body, dict) else None
                text = text or json.dumps(body, ensure_ascii=False)
            else:
                text = resp.text
        except (ValueError, httpx.HTTPError):
            text = t("server_error")
        return text or f"HTTP {resp.status_code}"
