"""领域层模型。

包含：
- models: 补全请求/响应模型 ChatMessage / ChatRequest / ChatResult。
- conversation: 会话、消息以及内存中的 ConversationStore。
- exceptions: 业务异常类型定义。
"""
