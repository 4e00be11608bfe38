"""对外 API 服务模块。

提供简化的函数接口供界面层调用，内部维护一个默认的 ChatSession（单例），
其状态自动持久化到 settings.storage_root。
"""

from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, Message
from chat_core.domain.exceptions import ConversationNotFoundError, SessionBusyError
from chat_core.engine.session import ChatSession
from chat_core.infrastructure.storage.json_store import JsonFileStorage
from chat_core.infrastructure.storage.state_repository import ChatStateRepository, StoreAutosaver
from chat_core.providers.base import ProviderClient
from chat_core.providers.chatanywhere_client import ChatAnywhereClient


_session: Optional[ChatSession] = None
_autosaver: Optional[StoreAutosaver] = None


def get_default_session() -> ChatSession:
    """获取默认的 ChatSession 实例（单例），首次调用时从存储恢复状态。"""
    global _session, _autosaver
    if _session is None:
        _session, _autosaver = open_session(settings.storage_root)
    return _session


def open_session(
    storage_root: str,
    provider: Optional[ProviderClient] = None,
    cfg=settings,
) -> tuple[ChatSession, StoreAutosaver]:
    """从 storage_root 恢复会话状态，并挂上自动保存。"""

    repository = ChatStateRepository(JsonFileStorage(root=storage_root), default_model=cfg.default_model)
    store = repository.load_store(title_max_length=cfg.title_max_length)
    autosaver = repository.attach(store)
    session = ChatSession(store, provider or ChatAnywhereClient(cfg), cfg=cfg)
    return session, autosaver


def close_default_session() -> None:
    global _session, _autosaver
    if _autosaver is not None:
        _autosaver.close()
    _session = None
    _autosaver = None


async def send_message(text: str) -> Dict[str, Any]:
    """发送消息并等待回复结束。

    Returns:
        包含会话ID、本轮状态以及用户/助手消息的字典

    Raises:
        SessionBusyError: 已有一轮对话正在进行
    """
    session = get_default_session()
    if session.loading:
        raise SessionBusyError(code="SESSION_BUSY", message="A response is still streaming", http_status=409)
    turn = await session.send_message(text)
    if turn is None:
        return {"conversation_id": session.store.active_id, "state": None}
    conv = session.store.get(turn.conversation_id)
    messages = conv.messages if conv else []
    return {
        "conversation_id": turn.conversation_id,
        "state": turn.state.value,
        "user_message": _message_dict(_find(messages, turn.user_message_id)),
        "assistant_message": _message_dict(messages[-1] if messages else None),
    }


def abort() -> bool:
    return get_default_session().abort()


def new_conversation() -> Dict[str, Any]:
    return _conversation_dict(get_default_session().new_conversation())


def select_conversation(conversation_id: str) -> bool:
    return get_default_session().select_conversation(conversation_id)


def delete_conversation(conversation_id: str) -> bool:
    return get_default_session().delete_conversation(conversation_id)


def list_conversations() -> List[Dict[str, Any]]:
    """列出所有会话（最近优先）。"""
    session = get_default_session()
    return [
        dict(_conversation_dict(c), active=(c.id == session.store.active_id))
        for c in session.store.conversations
    ]


def get_conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
    conv = get_default_session().store.get(conversation_id)
    if conv is None:
        raise ConversationNotFoundError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
    return [_message_dict(m) for m in conv.messages]


def list_models() -> List[Dict[str, Any]]:
    session = get_default_session()
    return [
        {"id": m.id, "name": m.name, "description": m.description, "selected": m.id == session.model}
        for m in session.available_models()
    ]


def set_model(model: str) -> None:
    get_default_session().set_model(model)


def _find(messages: List[Message], message_id: Optional[str]) -> Optional[Message]:
    for m in messages:
        if m.id == message_id:
            return m
    return None


def _message_dict(message: Optional[Message]) -> Optional[Dict[str, Any]]:
    return message.to_dict() if message else None


def _conversation_dict(conv: Conversation) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "model": conv.model,
        "message_count": len(conv.messages),
        "created_at": conv.created_at.isoformat(),
        "updated_at": conv.updated_at.isoformat(),
    }
