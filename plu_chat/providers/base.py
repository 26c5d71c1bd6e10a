"""Webhook 传输抽象接口。

对账引擎不直接依赖 HTTP 库，而是依赖此协议：

- 每种传输方式实现一个 WebhookTransport（如 WebhookClient）。
- 负责：把 WebhookRequest 发出去，并把响应解码为 WebhookReply。

这样测试或其他部署形态可以替换传输实现，而不改对账代码。
"""

from typing import Optional, Protocol

from plu_chat.domain.models import WebhookReply, WebhookRequest
from plu_chat.streaming.ndjson import DeltaCallback


class WebhookTransport(Protocol):
    """Webhook 传输协议。

    实现者需要提供：
    - name: 传输名称，用于日志。
    - send(req, on_delta): 每轮只发一次请求；失败抛 TransportError，不重试。
    """

    name: str

    def send(self, req: WebhookRequest, on_delta: Optional[DeltaCallback] = None) -> WebhookReply:
        ...
