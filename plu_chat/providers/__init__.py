"""Webhook 传输集成层。

该包下的模块负责：
- 定义传输抽象接口 (base)。
- 提供具体实现 (webhook_client)。
"""

from typing import Optional

from plu_chat.config.settings import settings
from plu_chat.providers.base import WebhookTransport
from plu_chat.providers.webhook_client import WebhookClient


def create_transport(cfg=None, name: Optional[str] = None) -> WebhookTransport:
    """根据名称创建传输实例，目前只有 webhook 一种。"""

    transport_name = (name or "webhook").lower()
    if transport_name != "webhook":
        raise KeyError(f"Unknown transport: {name!r}")
    return WebhookClient(cfg or settings)


__all__ = ["WebhookClient", "WebhookTransport", "create_transport"]
