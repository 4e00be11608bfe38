import asyncio

import pytest

from chat_core.streaming.coalescer import UpdateCoalescer


class FakeHandle:
    def __init__(self, frames, callback):
        self._frames = frames
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True
        if self in self._frames.pending:
            self._frames.pending.remove(self)


class FakeFrames:
    """手动驱动的帧调度器。"""

    def __init__(self):
        self.pending = []
        self.frames = 0

    def schedule(self, callback):
        handle = FakeHandle(self, callback)
        self.pending.append(handle)
        return handle

    def tick(self):
        self.frames += 1
        due, self.pending = self.pending, []
        for handle in due:
            handle.callback()


def test_coalescer_batches_per_frame():
    frames = FakeFrames()
    batches = []
    co = UpdateCoalescer(batches.append, scheduler=frames.schedule)
    for ch in "hello":
        co.push(ch)
    assert batches == []
    assert len(frames.pending) == 1
    frames.tick()
    assert batches == ["hello"]
    assert not co.scheduled


def test_coalescer_conserves_content_and_bounds_flushes():
    frames = FakeFrames()
    batches = []
    co = UpdateCoalescer(batches.append, scheduler=frames.schedule)
    inputs = [f"<{i}>" for i in range(100)]
    for i, piece in enumerate(inputs):
        co.push(piece)
        if i % 7 == 3:
            frames.tick()
    co.complete()
    assert "".join(batches) == "".join(inputs)
    assert len(batches) <= frames.frames + 1
    assert all(batches)


def test_coalescer_complete_flushes_synchronously():
    frames = FakeFrames()
    batches = []
    co = UpdateCoalescer(batches.append, scheduler=frames.schedule)
    co.push("abc")
    handle = frames.pending[0]
    co.complete()
    assert batches == ["abc"]
    assert handle.cancelled
    assert frames.pending == []
    co.complete()
    assert batches == ["abc"]


def test_coalescer_cancel_drops_only_pending():
    frames = FakeFrames()
    batches = []
    co = UpdateCoalescer(batches.append, scheduler=frames.schedule)
    co.push("kept")
    frames.tick()
    co.push("dropped")
    assert co.cancel() == "dropped"
    frames.tick()
    assert batches == ["kept"]
    with pytest.raises(RuntimeError):
        co.push("x")


def test_coalescer_ignores_empty_delta():
    frames = FakeFrames()
    co = UpdateCoalescer(lambda batch: None, scheduler=frames.schedule)
    co.push("")
    assert frames.pending == []


@pytest.mark.asyncio
async def test_coalescer_on_event_loop():
    batches = []
    co = UpdateCoalescer(batches.append, interval=0.01)
    for ch in "stream":
        co.push(ch)
    await asyncio.sleep(0.05)
    assert batches == ["stream"]
    co.push("!")
    co.complete()
    assert batches == ["stream", "!"]
    assert co.flush_count == 2
