"""对话编排：单轮状态机 (turn) 与会话上下文 (session)。"""

from chat_core.engine.session import ChatSession
from chat_core.engine.turn import Turn, TurnConfig, TurnState

__all__ = ["ChatSession", "Turn", "TurnConfig", "TurnState"]
