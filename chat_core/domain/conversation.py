"""会话与消息的内存存储。

ConversationStore 是整个客户端唯一的可变共享状态：

- 会话列表按“最近优先”排序，新会话插入到最前面。
- 当前激活会话只通过一个可空的 active_id 引用，不挂在会话对象上。
- 所有修改都是同步的单步操作，并在完成后同步通知订阅者（例如持久化）。

流式回复期间，助手占位消息处于“打开”状态，只能追加内容；
调用 complete_assistant_message 或被错误消息替换后即不可再修改。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Set, Tuple
from uuid import uuid4

from chat_core.domain.exceptions import ConversationNotFoundError, ValidationError
from chat_core.domain.models import ROLES, Role
from chat_core.infrastructure.logging.logger import logger


DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _from_iso(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


@dataclass
class Message:
    id: str
    role: Role
    content: str
    timestamp: datetime
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": _to_iso(self.timestamp),
        }
        if self.model:
            data["model"] = self.model
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = data["role"]
        if role not in ROLES:
            raise ValidationError(code="INVALID_ROLE", message=f"Unknown role: {role!r}")
        return cls(
            id=str(data["id"]),
            role=role,
            content=data.get("content") or "",
            timestamp=_from_iso(data["timestamp"]),
            model=data.get("model"),
        )


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    model: str
    messages: List[Message] = field(default_factory=list)

    def find_message(self, message_id: str) -> Optional[Message]:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "created_at": _to_iso(self.created_at),
            "updated_at": _to_iso(self.updated_at),
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or DEFAULT_TITLE,
            created_at=_from_iso(data["created_at"]),
            updated_at=_from_iso(data["updated_at"]),
            model=data.get("model") or "",
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
        )


EventKind = Literal[
    "created",
    "selected",
    "deleted",
    "model_changed",
    "message_appended",
    "message_grown",
    "message_completed",
    "message_replaced",
]


@dataclass(frozen=True)
class StoreEvent:
    """一次 store 修改的通知。"""

    kind: EventKind
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


StoreListener = Callable[[StoreEvent], None]


class ConversationStore:
    def __init__(
        self,
        model: str,
        conversations: Optional[Iterable[Conversation]] = None,
        active_id: Optional[str] = None,
        title_max_length: int = TITLE_MAX_LENGTH,
    ):
        self._model = model
        self._conversations: List[Conversation] = list(conversations or [])
        self._title_max_length = title_max_length
        self._active_id: Optional[str] = active_id if self.get(active_id) else None
        # (conversation_id, message_id) of assistant messages still streaming
        self._open_messages: Set[Tuple[str, str]] = set()
        self._listeners: List[StoreListener] = []

    @classmethod
    def restore(
        cls,
        conversations: Iterable[Conversation],
        model: str,
        active_id: Optional[str],
        title_max_length: int = TITLE_MAX_LENGTH,
    ) -> "ConversationStore":
        """从持久化状态恢复：保存的 active_id 失效时退回到第一条会话。"""

        store = cls(model, conversations, active_id, title_max_length=title_max_length)
        if store._active_id is None and store._conversations:
            store._active_id = store._conversations[0].id
        return store

    # ---- 查询 ----

    @property
    def model(self) -> str:
        return self._model

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active(self) -> Optional[Conversation]:
        return self.get(self._active_id)

    @property
    def conversations(self) -> List[Conversation]:
        return list(self._conversations)

    def get(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        if conversation_id is None:
            return None
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def require(self, conversation_id: str) -> Conversation:
        conv = self.get(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(
                code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404
            )
        return conv

    def is_streaming(self, conversation_id: str, message_id: str) -> bool:
        return (conversation_id, message_id) in self._open_messages

    # ---- 订阅 ----

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """注册修改监听器，返回取消订阅函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: EventKind, conversation_id: Optional[str] = None, message_id: Optional[str] = None) -> None:
        event = StoreEvent(kind=kind, conversation_id=conversation_id, message_id=message_id)
        for listener in list(self._listeners):
            listener(event)

    # ---- 会话级修改 ----

    def create(self) -> Conversation:
        """创建一个空会话并放到列表最前面；是否激活由调用方决定。"""

        now = _utcnow()
        conv = Conversation(
            id=f"c-{uuid4().hex}",
            title=DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
            model=self._model,
        )
        self._conversations.insert(0, conv)
        self._emit("created", conv.id)
        return conv

    def select(self, conversation_id: str) -> bool:
        if self.get(conversation_id) is None:
            logger.debug("Ignoring select of unknown conversation", extra={"extra": {"conversation_id": conversation_id}})
            return False
        self._active_id = conversation_id
        self._emit("selected", conversation_id)
        return True

    def delete(self, conversation_id: str) -> bool:
        """删除会话；若删除的是当前会话，则激活剩余列表的第一条（或置空）。"""

        conv = self.get(conversation_id)
        if conv is None:
            return False
        self._conversations.remove(conv)
        self._open_messages = {key for key in self._open_messages if key[0] != conversation_id}
        if self._active_id == conversation_id:
            self._active_id = self._conversations[0].id if self._conversations else None
        self._emit("deleted", conversation_id)
        return True

    def set_model(self, model: str) -> None:
        self._model = model
        self._emit("model_changed")

    # ---- 消息级修改 ----

    def append_user_message(self, conversation_id: str, text: str) -> Message:
        conv = self.require(conversation_id)
        msg = Message(id=f"m-{uuid4().hex}", role="user", content=text, timestamp=_utcnow())
        if not conv.messages:
            conv.title = text.strip()[: self._title_max_length] or DEFAULT_TITLE
        conv.messages.append(msg)
        self._touch(conv)
        self._emit("message_appended", conv.id, msg.id)
        return msg

    def append_assistant_placeholder(self, conversation_id: str, model: Optional[str] = None) -> str:
        conv = self.require(conversation_id)
        msg = Message(
            id=f"m-{uuid4().hex}",
            role="assistant",
            content="",
            timestamp=_utcnow(),
            model=model or self._model,
        )
        conv.messages.append(msg)
        self._open_messages.add((conv.id, msg.id))
        self._touch(conv)
        self._emit("message_appended", conv.id, msg.id)
        return msg.id

    def grow_assistant_message(self, conversation_id: str, message_id: str, delta_text: str) -> bool:
        """把增量追加到占位消息末尾。

        目标会话/消息已不存在或已结束时静默忽略，返回 False。
        """

        if not delta_text:
            return False
        if (conversation_id, message_id) not in self._open_messages:
            return False
        conv = self.get(conversation_id)
        msg = conv.find_message(message_id) if conv else None
        if conv is None or msg is None:
            self._open_messages.discard((conversation_id, message_id))
            return False
        msg.content += delta_text
        self._touch(conv)
        self._emit("message_grown", conv.id, msg.id)
        return True

    def complete_assistant_message(self, conversation_id: str, message_id: str) -> bool:
        """结束占位消息的流式状态，之后内容不可再变。"""

        key = (conversation_id, message_id)
        if key not in self._open_messages:
            return False
        self._open_messages.discard(key)
        if self.get(conversation_id) is None:
            return False
        self._emit("message_completed", conversation_id, message_id)
        return True

    def replace_last_message_with_error(
        self, conversation_id: str, error_text: str, model: Optional[str] = None
    ) -> Optional[str]:
        """用一条助手错误消息替换最后一条助手消息（进行中的占位消息）。

        之前的消息全部保留；会话已被删除时返回 None。
        """

        conv = self.get(conversation_id)
        if conv is None:
            return None
        if conv.messages and conv.messages[-1].role == "assistant":
            removed = conv.messages.pop()
            self._open_messages.discard((conv.id, removed.id))
        msg = Message(
            id=f"m-{uuid4().hex}",
            role="assistant",
            content=error_text,
            timestamp=_utcnow(),
            model=model or self._model,
        )
        conv.messages.append(msg)
        self._touch(conv)
        self._emit("message_replaced", conv.id, msg.id)
        return msg.id

    @staticmethod
    def _touch(conv: Conversation) -> None:
        # updated_at 单调不减
        conv.updated_at = max(_utcnow(), conv.updated_at)
