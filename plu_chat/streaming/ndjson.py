"""NDJSON 响应解码。

webhook 可能以三种形态返回助手回复：

- 单个 JSON：``{"response": "..."}`` 或 ``{"message": "..."}``；
- 真正的流式 NDJSON（或 SSE）：每行一个 ``{"type": "begin"|"item"|"end", "content": ...}``；
- 内容是 NDJSON、但 content-type 被错误标成 ``application/json``。

本模块把每一行归一成 StreamEvent，并提取文本增量。
内容字段优先级固定为 ``item.content`` > ``response`` > ``message``。
"""

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from plu_chat.domain.exceptions import DecodeError
from plu_chat.infrastructure.logging.logger import logger


EventType = Literal["begin", "item", "end", "response", "message", "unknown"]

# 回调参数：(本次增量, 目前累积的全文)
DeltaCallback = Callable[[str, str], None]


@dataclass
class StreamEvent:
    type: EventType
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_content(self) -> bool:
        return bool(self.content)


@dataclass
class DecodedBody:
    text: str
    raw: Optional[Any] = None
    fallback_used: bool = False


def parse_event(obj: Any) -> Optional[StreamEvent]:
    """把一个已解析的 JSON 值归类为 StreamEvent；非对象返回 None。"""

    if not isinstance(obj, dict):
        return None
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    kind = obj.get("type")
    if kind == "item" and obj.get("content"):
        return StreamEvent(type="item", content=str(obj["content"]), metadata=metadata)
    if obj.get("response"):
        return StreamEvent(type="response", content=str(obj["response"]), metadata=metadata)
    if obj.get("message"):
        return StreamEvent(type="message", content=str(obj["message"]), metadata=metadata)
    if kind in ("begin", "item", "end"):
        return StreamEvent(type=kind, metadata=metadata)
    return StreamEvent(type="unknown", metadata=metadata)


def parse_line(line: str) -> Optional[StreamEvent]:
    """解析一行文本。空行、SSE 结束标记返回 None，非法 JSON 抛 DecodeError。"""

    data_str = line.strip()
    if data_str.startswith("data:"):
        data_str = data_str[5:].strip()
    if not data_str or data_str == "[DONE]":
        return None
    try:
        obj = json.loads(data_str)
    except json.JSONDecodeError as e:
        raise DecodeError(code="MALFORMED_LINE", message=str(e), line=data_str[:200])
    return parse_event(obj)


class NdjsonStreamDecoder:
    """增量 NDJSON 解码器。

    feed() 接收原始字节（或已解码文本），按 ``\\n`` 切行，缓存不完整的尾行；
    close() 刷新解码器并处理最后一行未换行的数据。

    item_only=True 时只累积 ``type == "item"`` 的内容（真正的流式路径），
    False 时三种形态的内容都会被拼接（缓冲兜底路径）。
    """

    def __init__(self, on_delta: Optional[DeltaCallback] = None, item_only: bool = True):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: List[str] = []
        self._on_delta = on_delta
        self._item_only = item_only
        self.event_count = 0
        self.skipped_lines = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if isinstance(chunk, bytes):
            self._buffer += self._decoder.decode(chunk)
        else:
            self._buffer += chunk
        deltas: List[str] = []
        while True:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            delta = self._consume_line(line)
            if delta:
                deltas.append(delta)
        return deltas

    def close(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        delta = self._consume_line(rest)
        return [delta] if delta else []

    def _consume_line(self, line: str) -> Optional[str]:
        if not line.strip():
            return None
        try:
            event = parse_line(line)
        except DecodeError as e:
            self.skipped_lines += 1
            logger.debug("Skipped malformed stream line", extra={"extra": {"error": e.message}})
            return None
        if event is None:
            return None
        self.event_count += 1
        if not event.has_content:
            return None
        if self._item_only and event.type != "item":
            return None
        self._parts.append(event.content)
        if self._on_delta:
            self._on_delta(event.content, self.text)
        return event.content


def decode_ndjson_text(text: str, on_delta: Optional[DeltaCallback] = None) -> str:
    """缓冲兜底：整段文本按行解析，拼接每行中的内容。"""

    decoder = NdjsonStreamDecoder(on_delta=on_delta, item_only=False)
    decoder.feed(text)
    decoder.close()
    return decoder.text


def decode_body(text: str, on_delta: Optional[DeltaCallback] = None) -> DecodedBody:
    """解析非流式响应体：先按单个 JSON，失败再按 NDJSON 逐行解析。"""

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.info("Body is not a single JSON document, falling back to NDJSON")
        return DecodedBody(text=decode_ndjson_text(text, on_delta), raw=None, fallback_used=True)

    event = parse_event(data)
    content = event.content if event else ""
    if content and on_delta:
        on_delta(content, content)
    return DecodedBody(text=content, raw=data, fallback_used=False)
