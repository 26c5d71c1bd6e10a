"""领域层模型与协议。

包含：
- models: ChatMessage / WebhookRequest / WebhookReply / TurnOutcome 模型。
- conversation: 会话模型及 ChatPersistence 持久化协议。
- exceptions: 业务异常类型定义。
"""
