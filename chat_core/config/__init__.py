"""配置加载（.env / config.yaml / 环境变量）。"""

from chat_core.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
