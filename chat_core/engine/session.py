"""聊天会话上下文。

ChatSession 显式持有原本散落在界面里的全局状态：

- store: 会话/消息存储（包含当前会话 id 与选中的模型）。
- loading: 全局忙碌标记；为 True 时拒绝新的发送，同一时间最多只有一轮对话。
- current_turn: 正在进行的 Turn，用于中止。
"""

from typing import List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import Conversation, ConversationStore
from chat_core.domain.exceptions import ValidationError
from chat_core.engine.turn import Turn, TurnConfig
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ProviderClient
from chat_core.providers.registry import ModelConfig, get_model_config, list_models
from chat_core.streaming.coalescer import FrameScheduler


class ChatSession:
    def __init__(
        self,
        store: ConversationStore,
        provider: ProviderClient,
        cfg=settings,
        scheduler: Optional[FrameScheduler] = None,
    ):
        self.store = store
        self.provider = provider
        self.loading = False
        self.current_turn: Optional[Turn] = None
        self._settings = cfg
        self._scheduler = scheduler

    # ---- 查询 ----

    @property
    def model(self) -> str:
        return self.store.model

    @property
    def active_conversation(self) -> Optional[Conversation]:
        return self.store.active

    @staticmethod
    def available_models() -> List[ModelConfig]:
        return list_models()

    # ---- 会话管理 ----

    def new_conversation(self) -> Conversation:
        conv = self.store.create()
        self.store.select(conv.id)
        return conv

    def select_conversation(self, conversation_id: str) -> bool:
        return self.store.select(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        """删除会话；若正在为该会话生成回复，先中止这一轮。"""

        turn = self.current_turn
        if turn is not None and turn.conversation_id == conversation_id:
            turn.cancel()
        return self.store.delete(conversation_id)

    def set_model(self, model: str) -> None:
        try:
            get_model_config(model)
        except KeyError:
            raise ValidationError(code="UNKNOWN_MODEL", message=f"Unknown model: {model}")
        self.store.set_model(model)

    # ---- 对话 ----

    async def send_message(self, text: str) -> Optional[Turn]:
        """发送一条用户消息并等待本轮结束。

        空消息或已有一轮进行中时不发送，返回 None。
        """

        if not text or not text.strip():
            return None
        if self.loading:
            logger.warning(
                "Refusing send while another turn is in flight",
                extra={"extra": {"turn_id": self.current_turn.id if self.current_turn else None}},
            )
            return None

        turn = Turn(self.store, self.provider, self._turn_config(), scheduler=self._scheduler)
        self.loading = True
        self.current_turn = turn
        try:
            await turn.run(text)
        finally:
            self.loading = False
            self.current_turn = None
        return turn

    def abort(self) -> bool:
        turn = self.current_turn
        return turn.cancel() if turn is not None else False

    def _turn_config(self) -> TurnConfig:
        cfg = self._settings
        return TurnConfig(
            model=self.store.model,
            stream=getattr(cfg, "stream_responses", True),
            frame_interval=getattr(cfg, "frame_interval", 1 / 60),
            max_context_messages=getattr(cfg, "max_context_messages", None),
            system_prompt=getattr(cfg, "system_prompt", None),
        )
