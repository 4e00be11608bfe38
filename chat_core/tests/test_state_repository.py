import json
import tempfile
from pathlib import Path

import pytest

from chat_core.api import service
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.storage.json_store import JsonFileStorage
from chat_core.infrastructure.storage.state_repository import (
    ACTIVE_ID_KEY,
    CONVERSATIONS_KEY,
    MODEL_KEY,
    ChatStateRepository,
)


class MemoryStorage:
    def __init__(self):
        self.data = {}
        self.writes = []

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.writes.append(key)
        self.data[key] = json.loads(json.dumps(value))


class BrokenStorage(MemoryStorage):
    def set(self, key, value):
        raise BusinessError(code="STORE_WRITE_ERROR", message="disk full")


class ReadOnlyStorage(MemoryStorage):
    """外部存储实现，写入时抛出非业务异常。"""

    def set(self, key, value):
        raise PermissionError("read-only medium")


class UnreadableStorage(MemoryStorage):
    def get(self, key):
        raise OSError("device not ready")


class SettingsStub:
    default_model = "gpt-4o-mini"
    title_max_length = 50


def test_json_storage_roundtrip_and_atomic_write():
    with tempfile.TemporaryDirectory() as d:
        storage = JsonFileStorage(root=Path(d) / ".storage")
        assert storage.get("missing") is None
        storage.set("selected_model", "deepseek-r1")
        assert storage.get("selected_model") == "deepseek-r1"
        assert [p.name for p in storage.root.iterdir()] == ["selected_model.json"]
        with pytest.raises(BusinessError):
            storage.set("../escape", 1)


def test_json_storage_corrupt_file_raises_read_error():
    with tempfile.TemporaryDirectory() as d:
        storage = JsonFileStorage(root=d)
        (Path(d) / "conversations.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(BusinessError) as exc:
            storage.get("conversations")
        assert exc.value.code == "STORE_READ_ERROR"


def test_load_defaults_when_empty():
    repo = ChatStateRepository(MemoryStorage(), default_model="gpt-3.5-turbo")
    assert repo.load() == ([], "gpt-3.5-turbo", None)


def test_empty_conversations_are_not_persisted():
    storage = MemoryStorage()
    repo = ChatStateRepository(storage, default_model="gpt-3.5-turbo")
    store = ConversationStore(model="gpt-3.5-turbo")
    empty = store.create()
    used = store.create()
    store.append_user_message(used.id, "hi")
    repo.save_conversations(store.conversations)
    saved_ids = [c["id"] for c in storage.data[CONVERSATIONS_KEY]]
    assert saved_ids == [used.id]
    assert empty.id not in saved_ids


def test_load_skips_malformed_records():
    storage = MemoryStorage()
    store = ConversationStore(model="gpt-3.5-turbo")
    conv = store.create()
    store.append_user_message(conv.id, "hi")
    storage.data[CONVERSATIONS_KEY] = [{"id": "broken"}, conv.to_dict()]
    storage.data[MODEL_KEY] = "gpt-4o-mini"
    storage.data[ACTIVE_ID_KEY] = conv.id
    conversations, model, active_id = ChatStateRepository(storage).load()
    assert [c.id for c in conversations] == [conv.id]
    assert model == "gpt-4o-mini"
    assert active_id == conv.id


def test_autosaver_defers_growth_until_message_completes():
    storage = MemoryStorage()
    repo = ChatStateRepository(storage, default_model="gpt-3.5-turbo")
    store = ConversationStore(model="gpt-3.5-turbo")
    autosaver = repo.attach(store)
    conv = store.create()
    store.select(conv.id)
    store.append_user_message(conv.id, "hi")
    mid = store.append_assistant_placeholder(conv.id)
    writes_before = len(storage.writes)
    store.grow_assistant_message(conv.id, mid, "a")
    store.grow_assistant_message(conv.id, mid, "b")
    assert len(storage.writes) == writes_before
    assert autosaver.dirty
    store.complete_assistant_message(conv.id, mid)
    assert not autosaver.dirty
    saved = storage.data[CONVERSATIONS_KEY][0]
    assert saved["messages"][-1]["content"] == "ab"
    assert storage.data[ACTIVE_ID_KEY] == conv.id


def test_autosaver_saves_empty_list_after_delete():
    storage = MemoryStorage()
    repo = ChatStateRepository(storage)
    store = ConversationStore(model="gpt-3.5-turbo")
    repo.attach(store)
    conv = store.create()
    store.select(conv.id)
    store.append_user_message(conv.id, "hi")
    assert len(storage.data[CONVERSATIONS_KEY]) == 1
    store.delete(conv.id)
    assert storage.data[CONVERSATIONS_KEY] == []
    assert storage.data[ACTIVE_ID_KEY] is None


def test_autosaver_write_failure_does_not_break_store():
    repo = ChatStateRepository(BrokenStorage())
    store = ConversationStore(model="gpt-3.5-turbo")
    repo.attach(store)
    conv = store.create()
    store.select(conv.id)
    store.append_user_message(conv.id, "still works")
    store.set_model("deepseek-v3")
    assert conv.messages[0].content == "still works"
    assert store.model == "deepseek-v3"


def test_autosaver_close_flushes_and_unsubscribes():
    storage = MemoryStorage()
    store = ConversationStore(model="gpt-3.5-turbo")
    autosaver = ChatStateRepository(storage).attach(store)
    conv = store.create()
    store.append_user_message(conv.id, "hi")
    mid = store.append_assistant_placeholder(conv.id)
    store.grow_assistant_message(conv.id, mid, "partial")
    autosaver.close()
    assert storage.data[CONVERSATIONS_KEY][0]["messages"][-1]["content"] == "partial"
    writes = len(storage.writes)
    store.set_model("gpt-4o-mini")
    assert len(storage.writes) == writes


def test_autosaver_tolerates_non_business_storage_errors():
    repo = ChatStateRepository(ReadOnlyStorage())
    store = ConversationStore(model="gpt-3.5-turbo")
    autosaver = repo.attach(store)
    conv = store.create()
    store.select(conv.id)
    store.append_user_message(conv.id, "still works")
    mid = store.append_assistant_placeholder(conv.id)
    store.grow_assistant_message(conv.id, mid, "answer")
    store.complete_assistant_message(conv.id, mid)
    store.delete(conv.id)
    autosaver.close()
    assert store.conversations == []


def test_load_falls_back_to_defaults_when_storage_raises():
    repo = ChatStateRepository(UnreadableStorage(), default_model="gpt-3.5-turbo")
    assert repo.load() == ([], "gpt-3.5-turbo", None)


@pytest.mark.parametrize("key", [CONVERSATIONS_KEY, MODEL_KEY, ACTIVE_ID_KEY])
def test_open_session_with_corrupt_file_starts_empty(key):
    with tempfile.TemporaryDirectory() as d:
        (Path(d) / f"{key}.json").write_text("{not json", encoding="utf-8")
        session, autosaver = service.open_session(d, provider=object(), cfg=SettingsStub())
        autosaver.close()
        assert session.store.conversations == []
        assert session.store.active_id is None
        assert session.model == "gpt-4o-mini"
