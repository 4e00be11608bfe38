"""Provider 抽象接口。

会话编排层不直接依赖具体的 HTTP 客户端，而是依赖此协议：

- chat(req): 非流式调用，返回统一的 ChatResult。
- open_stream(req): 打开流式响应，产出原始字节块；退出上下文即关闭连接。

字节块由 StreamDecoder 解码，这样解码逻辑与传输层互不耦合。
"""

from typing import AsyncContextManager, AsyncIterator, Protocol

from chat_core.domain.models import ChatRequest, ChatResult


class ProviderClient(Protocol):
    """补全服务客户端协议。"""

    name: str

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...

    def open_stream(self, req: ChatRequest) -> AsyncContextManager[AsyncIterator[bytes]]:
        ...
