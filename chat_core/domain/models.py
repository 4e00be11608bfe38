"""补全服务的请求/响应数据模型。

本模块定义了与补全服务交互时使用的标准数据结构：

- ChatMessage: 发送给服务的一条上下文消息（system/user/assistant）。
- ChatRequest: 一次完整的补全请求。
- ChatResult: 非流式调用解析后的统一结果。

Provider 适配器只依赖这些模型，并负责与服务 JSON 之间的转换。
"""

from dataclasses import dataclass
from typing import List, Literal, Optional


# 消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]

ROLES = ("system", "user", "assistant")


@dataclass
class ChatMessage:
    """一条上下文消息，只包含服务需要的 role/content。"""

    role: Role
    content: str

    def to_payload(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """一次完整的补全请求。

    Provider 适配层负责把本结构转换成 {model, messages, stream} 请求体。
    """

    model: str
    messages: List[ChatMessage]
    stream: bool = True


@dataclass
class ChatUsage:
    """服务返回的 token 统计信息。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatResult:
    """一次非流式调用的结果。

    - content: choices[0].message.content，缺失时为兜底文案。
    - finish_reason: 服务给出的结束原因（可能为空）。
    - raw: 原始响应 JSON，用于调试。
    """

    model: str
    content: str
    finish_reason: Optional[str] = None
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None
