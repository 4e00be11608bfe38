import asyncio
import json
import tempfile
from contextlib import asynccontextmanager

import pytest

from chat_core.api import service
from chat_core.domain.exceptions import ConversationNotFoundError, SessionBusyError


class SettingsStub:
    default_model = "gpt-4o-mini"
    title_max_length = 50
    stream_responses = True
    frame_interval = 0.005
    max_context_messages = None
    system_prompt = None


class EchoProvider:
    name = "echo"

    def __init__(self):
        self.requests = []

    async def chat(self, req):
        raise AssertionError("chat should not be called in stream mode")

    @asynccontextmanager
    async def open_stream(self, req):
        self.requests.append(req)
        yield self._body(req.messages[-1].content)

    async def _body(self, text):
        record = {"choices": [{"delta": {"content": f"echo: {text}"}}]}
        yield f"data: {json.dumps(record)}\n\ndata: [DONE]\n\n".encode()


@pytest.fixture
def storage_root(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        session, autosaver = service.open_session(d, provider=EchoProvider(), cfg=SettingsStub())
        monkeypatch.setattr(service, "_session", session)
        monkeypatch.setattr(service, "_autosaver", autosaver)
        yield d
        service.close_default_session()


@pytest.mark.asyncio
async def test_send_and_reload(storage_root):
    result = await service.send_message("hello")
    assert result["state"] == "completed"
    assert result["user_message"]["content"] == "hello"
    assert result["assistant_message"]["content"] == "echo: hello"
    assert result["assistant_message"]["model"] == "gpt-4o-mini"

    convs = service.list_conversations()
    assert len(convs) == 1
    assert convs[0]["title"] == "hello"
    assert convs[0]["active"] is True

    service.new_conversation()
    reopened, autosaver = service.open_session(storage_root, provider=EchoProvider(), cfg=SettingsStub())
    autosaver.close()
    # 空会话不落盘，重启后回到已有消息的会话
    assert [c.id for c in reopened.store.conversations] == [result["conversation_id"]]
    assert reopened.store.active_id == result["conversation_id"]
    assert reopened.store.active.messages[-1].content == "echo: hello"


@pytest.mark.asyncio
async def test_models_and_delete(storage_root):
    service.set_model("deepseek-v3")
    selected = [m["id"] for m in service.list_models() if m["selected"]]
    assert selected == ["deepseek-v3"]

    result = await service.send_message("hi")
    conv_id = result["conversation_id"]
    assert [m["role"] for m in service.get_conversation_messages(conv_id)] == ["user", "assistant"]
    assert service.delete_conversation(conv_id)
    assert service.list_conversations() == []
    with pytest.raises(ConversationNotFoundError):
        service.get_conversation_messages(conv_id)

    reopened, autosaver = service.open_session(storage_root, provider=EchoProvider(), cfg=SettingsStub())
    autosaver.close()
    assert reopened.store.conversations == []
    assert reopened.model == "deepseek-v3"


class HeldProvider(EchoProvider):
    """先发出一段内容，然后一直等待 release 才结束。"""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def _body(self, text):
        self.started.set()
        record = {"choices": [{"delta": {"content": "partial"}}]}
        yield f"data: {json.dumps(record)}\n\n".encode()
        await self.release.wait()
        yield b"data: [DONE]\n\n"


@pytest.mark.asyncio
async def test_send_while_busy_raises(monkeypatch):
    provider = HeldProvider()
    with tempfile.TemporaryDirectory() as d:
        session, autosaver = service.open_session(d, provider=provider, cfg=SettingsStub())
        monkeypatch.setattr(service, "_session", session)
        monkeypatch.setattr(service, "_autosaver", autosaver)
        try:
            first = asyncio.ensure_future(service.send_message("first"))
            await provider.started.wait()
            with pytest.raises(SessionBusyError) as exc:
                await service.send_message("second")
            assert exc.value.code == "SESSION_BUSY"
            provider.release.set()
            result = await first
            assert result["state"] == "completed"
            assert result["assistant_message"]["content"] == "partial"
            assert [m["content"] for m in service.get_conversation_messages(result["conversation_id"])] == [
                "first",
                "partial",
            ]
        finally:
            service.close_default_session()
