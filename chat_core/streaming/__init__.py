"""流式回复管线：字节流 → StreamDecoder → UpdateCoalescer → ConversationStore。"""

from chat_core.streaming.coalescer import UpdateCoalescer, loop_frame_scheduler
from chat_core.streaming.decoder import DONE_SENTINEL, EVENT_PREFIX, StreamDecoder

__all__ = [
    "DONE_SENTINEL",
    "EVENT_PREFIX",
    "StreamDecoder",
    "UpdateCoalescer",
    "loop_frame_scheduler",
]
