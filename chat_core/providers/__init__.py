"""补全服务集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护服务与可选模型配置 (registry)。
- 提供具体实现 (chatanywhere_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import ProviderClient
from chat_core.providers.chatanywhere_client import ChatAnywhereClient


def create_provider(name: Optional[str] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，目前只有 chatanywhere。"""

    provider_name = (name or "chatanywhere").lower()
    if provider_name != "chatanywhere":
        raise KeyError(f"Unknown provider: {name!r}")
    return ChatAnywhereClient(settings)


__all__ = ["ChatAnywhereClient", "ProviderClient", "create_provider"]
