"""Chat Core 顶层包。

该包提供浏览器聊天客户端的核心实现：配置加载、会话/消息存储、
流式响应解码与按帧合并、单轮对话编排以及本地持久化。
"""

from chat_core.engine import ChatSession, Turn, TurnState

__all__ = ["ChatSession", "Turn", "TurnState"]
