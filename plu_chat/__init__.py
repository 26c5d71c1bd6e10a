"""PLU Chat 顶层包。

该包提供城市规划（PLU）文档聊天助手的核心实现，
包括配置加载、领域模型、webhook 传输、响应解码、
消息 Store、对话轮次对账与持久化后端等能力。
"""

from plu_chat.api.service import ChatService, create_chat_service

__all__ = ["ChatService", "create_chat_service"]
