"""聊天状态持久化。

持久化内容是数据模型的 JSON 镜像，分三个 key 保存：
会话列表、选中的模型、当前会话 id。

空会话（还没有任何消息）不会被写入；删除会话后总是立即保存，
即使列表已经为空，防止被删除的会话在重启后“复活”。
"""

from typing import Any, Callable, List, Optional, Tuple

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore, StoreEvent
from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import KeyValueStorage

CONVERSATIONS_KEY = "conversations"
MODEL_KEY = "selected_model"
ACTIVE_ID_KEY = "active_conversation_id"


class ChatStateRepository:
    def __init__(self, storage: KeyValueStorage, default_model: Optional[str] = None):
        self._storage = storage
        self._default_model = default_model or settings.default_model

    def load(self) -> Tuple[List[Conversation], str, Optional[str]]:
        """读取 (会话列表, 模型, 当前会话 id)。

        损坏的会话记录直接跳过；某个 key 整体读取失败时记录日志并使用默认值。
        """

        raw_conversations = self._read(CONVERSATIONS_KEY) or []
        conversations: List[Conversation] = []
        if isinstance(raw_conversations, list):
            for item in raw_conversations:
                try:
                    conversations.append(Conversation.from_dict(item))
                except (BusinessError, KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed conversation record", extra={"extra": {"error": str(e)}})
        model = self._read(MODEL_KEY)
        if not isinstance(model, str) or not model:
            model = self._default_model
        active_id = self._read(ACTIVE_ID_KEY)
        if not isinstance(active_id, str):
            active_id = None
        return conversations, model, active_id

    def load_store(self, title_max_length: Optional[int] = None) -> ConversationStore:
        conversations, model, active_id = self.load()
        return ConversationStore.restore(
            conversations,
            model,
            active_id,
            title_max_length=title_max_length or settings.title_max_length,
        )

    def _read(self, key: str) -> Any:
        try:
            return self._storage.get(key)
        except BusinessError as e:
            logger.error(
                "Failed to load chat state, using defaults",
                extra={"extra": {"key": key, "code": e.code, "error": e.message}},
            )
        except Exception:
            logger.exception("Failed to load chat state, using defaults", extra={"extra": {"key": key}})
        return None

    def save_conversations(self, conversations: List[Conversation]) -> None:
        self._storage.set(CONVERSATIONS_KEY, [c.to_dict() for c in conversations if c.messages])

    def save_model(self, model: str) -> None:
        self._storage.set(MODEL_KEY, model)

    def save_active_id(self, active_id: Optional[str]) -> None:
        self._storage.set(ACTIVE_ID_KEY, active_id)

    def attach(self, store: ConversationStore) -> "StoreAutosaver":
        return StoreAutosaver(store, self)


class StoreAutosaver:
    """订阅 store 修改并写入持久化存储。

    流式增长只标记 dirty，等占位消息结束（或任意其他修改）时再落盘；
    写入失败只记录日志，不影响内存中的对话流程。
    """

    def __init__(self, store: ConversationStore, repository: ChatStateRepository):
        self._store = store
        self._repository = repository
        self.dirty = False
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_event)

    def flush(self) -> None:
        if self.dirty:
            self._save(self._save_conversations)

    def close(self) -> None:
        self.flush()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_event(self, event: StoreEvent) -> None:
        if event.kind == "message_grown":
            self.dirty = True
        elif event.kind == "model_changed":
            self._save(lambda: self._repository.save_model(self._store.model))
        elif event.kind == "selected":
            self._save(lambda: self._repository.save_active_id(self._store.active_id))
        elif event.kind == "deleted":
            self._save(self._save_conversations)
            self._save(lambda: self._repository.save_active_id(self._store.active_id))
        elif event.kind != "created":
            self._save(self._save_conversations)

    def _save_conversations(self) -> None:
        self._repository.save_conversations(self._store.conversations)
        self.dirty = False

    @staticmethod
    def _save(action: Callable[[], None]) -> None:
        try:
            action()
        except BusinessError as e:
            logger.error(
                "Failed to persist chat state",
                extra={"extra": {"code": e.code, "error": e.message}},
            )
        except Exception:
            # 外部存储实现可能抛出任意异常，同样只记录日志
            logger.exception("Failed to persist chat state")
