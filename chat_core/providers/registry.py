"""补全服务与可选模型配置。

模型 ID 即服务端的模型名，直接写入请求体；name/description 用于模型选择界面。
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping


@dataclass
class ModelConfig:
    """单个可选模型的配置。"""

    id: str
    name: str
    description: str


@dataclass
class ProviderConfig:
    """某个补全服务的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]


CHATANYWHERE_CONFIG = ProviderConfig(
    name="chatanywhere",
    base_url="https://api.chatanywhere.tech/v1",
    models={
        "gpt-3.5-turbo": ModelConfig(
            id="gpt-3.5-turbo",
            name="GPT-3.5 Turbo",
            description="Fast and efficient for most tasks",
        ),
        "gpt-4o-mini": ModelConfig(
            id="gpt-4o-mini",
            name="GPT-4o Mini",
            description="Balanced performance and capability",
        ),
        "deepseek-v3": ModelConfig(
            id="deepseek-v3",
            name="DeepSeek V3",
            description="Advanced reasoning and analysis",
        ),
        "deepseek-r1": ModelConfig(
            id="deepseek-r1",
            name="DeepSeek R1",
            description="Specialized research model",
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "chatanywhere": CHATANYWHERE_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def get_model_config(model_id: str, provider: str = "chatanywhere") -> ModelConfig:
    models = get_provider_config(provider).models
    if model_id not in models:
        raise KeyError(f"Unknown model: {model_id!r}")
    return models[model_id]


def list_models(provider: str = "chatanywhere") -> List[ModelConfig]:
    return list(get_provider_config(provider).models.values())
