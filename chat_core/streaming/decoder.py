"""流式响应解码器。

把分块到达的响应体还原为按序的文本增量（delta）：

1. 网络块可能切断 UTF-8 多字节字符：使用增量解码器缓存尾部残余字节。
2. 网络块可能切断一行记录：只处理完整的行，残余部分留到下一块拼接。
3. 每条记录形如 ``data: {...}``，JSON 中 ``choices[0].delta.content`` 为增量；
   ``data: [DONE]`` 为终止哨兵，之后的内容全部忽略。
4. 单条 JSON 损坏只跳过该行，不中断整条流；非法 UTF-8 属于致命错误。
"""

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, List, Optional

from chat_core.domain.exceptions import StreamDecodeError
from chat_core.infrastructure.logging.logger import logger


EVENT_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def extract_delta(record: Any) -> Optional[str]:
    """取出 choices[0].delta.content，字段缺失或为空时返回 None。"""

    if not isinstance(record, dict):
        return None
    choices = record.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


class StreamDecoder:
    """单条流的解码状态机，一个实例只服务一条响应流。

    - feed(chunk): 送入一块原始字节，返回本块解出的增量列表。
    - finish(): 数据源结束时调用，处理末尾未以换行结束的记录。
    - full_text: 已产出增量的拼接结果。
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._line_buffer = ""
        self._pieces: List[str] = []
        self.done = False  # 是否收到 [DONE]
        self.finished = False
        self.skipped_records = 0

    @property
    def full_text(self) -> str:
        return "".join(self._pieces)

    def feed(self, chunk: bytes) -> List[str]:
        if self.finished:
            return []
        text = self._decode(chunk, final=False)
        if "\n" not in text:
            self._line_buffer += text
            return []
        *lines, self._line_buffer = (self._line_buffer + text).split("\n")
        return self._process_lines(lines)

    def finish(self) -> List[str]:
        if self.finished:
            return []
        rest = self._line_buffer + self._decode(b"", final=True)
        self._line_buffer = ""
        deltas = self._process_lines(rest.split("\n")) if rest else []
        self.finished = True
        return deltas

    async def decode(self, source: AsyncIterable[bytes]) -> AsyncIterator[str]:
        """逐块读取 source 并产出增量；遇到哨兵立即结束，不再读取。"""

        async for chunk in source:
            for delta in self.feed(chunk):
                yield delta
            if self.finished:
                return
        for delta in self.finish():
            yield delta

    def _decode(self, data: bytes, final: bool) -> str:
        try:
            return self._utf8.decode(data, final=final)
        except UnicodeDecodeError as e:
            self.finished = True
            raise StreamDecodeError(
                code="STREAM_DECODE_ERROR",
                message=f"Invalid UTF-8 in response stream ({e.reason})",
            )

    def _process_lines(self, lines: List[str]) -> List[str]:
        deltas: List[str] = []
        for line in lines:
            delta = self._process_line(line)
            if self.done:
                self.finished = True
                break
            if delta:
                self._pieces.append(delta)
                deltas.append(delta)
        return deltas

    def _process_line(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        # 空行、注释行（": keep-alive"）以及其他字段都直接忽略
        if not line.startswith(EVENT_PREFIX):
            return None
        data_str = line[len(EVENT_PREFIX):].strip()
        if data_str == DONE_SENTINEL:
            self.done = True
            return None
        if not data_str:
            return None
        try:
            record = json.loads(data_str)
        except json.JSONDecodeError:
            self.skipped_records += 1
            logger.debug("Skipping malformed stream record", extra={"extra": {"record": data_str[:200]}})
            return None
        return extract_delta(record)
