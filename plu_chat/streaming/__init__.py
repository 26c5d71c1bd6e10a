"""响应解码与逐字展示。

- ndjson: webhook 响应（单 JSON / 流式 NDJSON / 错标的 NDJSON）解码。
- text_stream: 打字机 / 淡入效果的渐进式文本展示。
"""

from plu_chat.streaming.ndjson import (
    DecodedBody,
    NdjsonStreamDecoder,
    StreamEvent,
    decode_body,
    decode_ndjson_text,
    parse_event,
)
from plu_chat.streaming.text_stream import TextStream

__all__ = [
    "DecodedBody",
    "NdjsonStreamDecoder",
    "StreamEvent",
    "TextStream",
    "decode_body",
    "decode_ndjson_text",
    "parse_event",
]
