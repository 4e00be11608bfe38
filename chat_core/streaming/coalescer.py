"""增量合并器。

网络增量的到达频率远高于界面刷新频率，这里把同一帧内到达的增量
合并成一次写入：

- push(delta): 追加到待刷新缓冲；当前没有排期时，预约下一帧刷新。
- 帧回调触发时，一次性输出全部缓冲并清空。
- complete(): 取消排期，同步刷新剩余内容（最后一个字符不必等一帧）。
- cancel(): 取消排期并丢弃未刷新的内容；已刷新的内容不回滚。

每个输入字符恰好出现在一次输出中，顺序不变。
"""

import asyncio
from typing import Callable, List, Optional, Protocol


class FrameHandle(Protocol):
    def cancel(self) -> None:
        ...


FrameScheduler = Callable[[Callable[[], None]], FrameHandle]


def loop_frame_scheduler(interval: float) -> FrameScheduler:
    """基于事件循环 call_later 的帧调度器，interval 为帧间隔（秒）。"""

    def schedule(callback: Callable[[], None]) -> FrameHandle:
        return asyncio.get_running_loop().call_later(interval, callback)

    return schedule


class UpdateCoalescer:
    def __init__(
        self,
        on_flush: Callable[[str], None],
        interval: float = 1 / 60,
        scheduler: Optional[FrameScheduler] = None,
    ):
        self._on_flush = on_flush
        self._schedule = scheduler or loop_frame_scheduler(interval)
        self._pending: List[str] = []
        self._handle: Optional[FrameHandle] = None
        self.closed = False
        self.flush_count = 0

    @property
    def pending(self) -> str:
        return "".join(self._pending)

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    def push(self, delta: str) -> None:
        if self.closed:
            raise RuntimeError("UpdateCoalescer is closed")
        if not delta:
            return
        self._pending.append(delta)
        if self._handle is None:
            self._handle = self._schedule(self._on_frame)

    def complete(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._cancel_handle()
        self._flush()

    def cancel(self) -> str:
        """丢弃未刷新的内容并返回它。"""

        if self.closed:
            return ""
        self.closed = True
        self._cancel_handle()
        dropped = "".join(self._pending)
        self._pending.clear()
        return dropped

    def _on_frame(self) -> None:
        self._handle = None
        self._flush()

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _flush(self) -> None:
        if not self._pending:
            return
        batch = "".join(self._pending)
        self._pending.clear()
        self.flush_count += 1
        self._on_flush(batch)
