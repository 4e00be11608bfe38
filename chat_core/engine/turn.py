"""单轮对话编排。

一轮对话的状态机：

    IDLE → USER_APPENDED → PLACEHOLDER_CREATED → STREAMING → COMPLETED
                                                          ↘ FAILED

- 没有激活会话时先创建并激活一个新会话，再追加用户消息。
- 追加空的助手占位消息，记下它的 id。
- 以占位消息之前的完整历史作为上下文打开响应流。
- 解码出的增量经 UpdateCoalescer 按帧合并后写入占位消息。
- 任何错误（网络、致命解码错误、主动取消）都会把占位消息替换为错误消息。

Turn.run 不会把异常抛出自身边界（外部任务被取消时除外）。
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import ChatMessage, ChatRequest
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderClient
from chat_core.streaming.coalescer import FrameScheduler, UpdateCoalescer
from chat_core.streaming.decoder import StreamDecoder

ABORTED_MESSAGE = "Request aborted"
FALLBACK_ERROR_MESSAGE = "Failed to get response from AI"


def format_error(message: str) -> str:
    return f"Error: {message}. Please try again."


class TurnState(str, Enum):
    IDLE = "idle"
    USER_APPENDED = "user_appended"
    PLACEHOLDER_CREATED = "placeholder_created"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.FAILED)


@dataclass
class TurnConfig:
    model: str
    stream: bool = True
    frame_interval: float = 1 / 60
    max_context_messages: Optional[int] = None
    system_prompt: Optional[str] = None


class Turn:
    def __init__(
        self,
        store: ConversationStore,
        provider: ProviderClient,
        config: TurnConfig,
        scheduler: Optional[FrameScheduler] = None,
    ):
        self.id = f"t-{uuid4().hex}"
        self.state = TurnState.IDLE
        self.conversation_id: Optional[str] = None
        self.user_message_id: Optional[str] = None
        self.assistant_message_id: Optional[str] = None
        self.error: Optional[BaseException] = None
        self.full_text = ""
        self._store = store
        self._provider = provider
        self._config = config
        self._scheduler = scheduler
        self._coalescer: Optional[UpdateCoalescer] = None
        self._decoder: Optional[StreamDecoder] = None
        self._task: Optional[asyncio.Task] = None
        self._aborted = False
        self._log_ctx: Dict[str, Any] = {"turn_id": self.id, "model": config.model}

    @property
    def flush_count(self) -> int:
        return self._coalescer.flush_count if self._coalescer else 0

    def cancel(self) -> bool:
        """中止正在进行的请求；已写入的内容随后被错误消息替换。"""

        if self.state.terminal or self._aborted:
            return False
        if self._task is not None and self._task.done():
            return False
        self._aborted = True
        if self._task is not None:
            self._task.cancel()
        if self._coalescer is not None:
            self._coalescer.cancel()
        return True

    async def run(self, text: str) -> TurnState:
        if self.state is not TurnState.IDLE:
            raise RuntimeError("Turn can only run once")
        start_time = time.time()

        try:
            conv_id = self._ensure_conversation()
            self.user_message_id = self._store.append_user_message(conv_id, text).id
        except BusinessError as e:
            self.error = e
            self.state = TurnState.FAILED
            self._log(logging.WARNING, "Turn failed before user message", code=e.code, error=e.message)
            return self.state
        self.state = TurnState.USER_APPENDED

        self.assistant_message_id = self._store.append_assistant_placeholder(conv_id, self._config.model)
        self.state = TurnState.PLACEHOLDER_CREATED
        request = self._build_request(conv_id)

        self.state = TurnState.STREAMING
        self._log(logging.INFO, "Turn started", message_count=len(request.messages))
        message_id = self.assistant_message_id
        self._coalescer = UpdateCoalescer(
            on_flush=lambda batch: self._store.grow_assistant_message(conv_id, message_id, batch),
            interval=self._config.frame_interval,
            scheduler=self._scheduler,
        )
        if self._aborted:
            self._fail(ABORTED_MESSAGE, asyncio.CancelledError())
            return self.state

        self._task = asyncio.ensure_future(self._pump(request, self._coalescer))
        try:
            await self._task
        except asyncio.CancelledError as e:
            self._coalescer.cancel()
            self._fail(ABORTED_MESSAGE, e)
            if not self._aborted:
                # 外部任务被取消：清理完成后继续向上传播
                raise
        except BusinessError as e:
            self._coalescer.cancel()
            self._fail(e.message, e)
        except Exception as e:
            self._coalescer.cancel()
            logger.exception("Unexpected error while streaming", extra={"extra": dict(self._log_ctx)})
            self._fail(str(e) or FALLBACK_ERROR_MESSAGE, e)
        else:
            self._coalescer.complete()
            self._store.complete_assistant_message(conv_id, message_id)
            self.state = TurnState.COMPLETED
            self._log(
                logging.INFO,
                "Turn completed",
                elapsed_seconds=round(time.time() - start_time, 2),
                chars=len(self.full_text),
                flushes=self.flush_count,
            )
        return self.state

    async def _pump(self, request: ChatRequest, coalescer: UpdateCoalescer) -> None:
        if not request.stream:
            result = await self._provider.chat(request)
            self.full_text = result.content
            coalescer.push(result.content)
            return
        self._decoder = StreamDecoder()
        try:
            async with self._provider.open_stream(request) as chunks:
                async for delta in self._decoder.decode(chunks):
                    coalescer.push(delta)
        finally:
            self.full_text = self._decoder.full_text
        if self._decoder.skipped_records:
            self._log(logging.INFO, "Skipped malformed stream records", skipped=self._decoder.skipped_records)

    def _ensure_conversation(self) -> str:
        conv = self._store.active
        if conv is None:
            conv = self._store.create()
            self._store.select(conv.id)
        self.conversation_id = conv.id
        self._log_ctx["conversation_id"] = conv.id
        return conv.id

    def _build_request(self, conversation_id: str) -> ChatRequest:
        conv = self._store.require(conversation_id)
        history = [m for m in conv.messages if m.id != self.assistant_message_id]
        limit = self._config.max_context_messages
        if limit and len(history) > limit:
            self._log(logging.INFO, "Truncated context", max_context=limit, trimmed=len(history) - limit)
            history = history[-limit:]
        messages: List[ChatMessage] = []
        if self._config.system_prompt:
            messages.append(ChatMessage(role="system", content=self._config.system_prompt))
        messages.extend(ChatMessage(role=m.role, content=m.content) for m in history)
        return ChatRequest(model=self._config.model, messages=messages, stream=self._config.stream)

    def _fail(self, message: str, error: BaseException) -> None:
        self.error = error
        self.state = TurnState.FAILED
        if self.conversation_id is not None:
            self._store.replace_last_message_with_error(
                self.conversation_id, format_error(message), self._config.model
            )
        code = error.code if isinstance(error, BusinessError) else type(error).__name__
        self._log(logging.WARNING, "Turn failed", code=code, error=message)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload = dict(self._log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
