"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级：
构造参数 > 环境变量 > .env > config.yaml。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """聊天客户端配置。"""

    # ---- 补全服务 ----
    chat_api_key: Optional[str] = Field(
        default=None,
        description="Bearer 凭证；为空时仍然发起请求，由服务端决定是否拒绝",
    )
    chat_base_url: str = Field(
        default="https://api.chatanywhere.tech/v1",
        description="补全服务基础 URL，请求发往 {base}/chat/completions",
    )
    default_model: str = Field(default="gpt-3.5-turbo", description="首次启动时选中的模型")
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_responses: bool = Field(default=True, description="是否使用流式补全；关闭时整段写入回复")

    # ---- 流式渲染 ----
    frame_interval: float = Field(
        default=1 / 60,
        gt=0,
        description="合并刷新的帧间隔（秒），每帧最多向会话写入一次增量",
    )

    # ---- 会话 ----
    title_max_length: int = Field(default=50, ge=1, description="会话标题最大长度")
    max_context_messages: Optional[int] = Field(
        default=None,
        ge=1,
        description="请求上下文最多携带的历史消息数，None 表示全部",
    )
    system_prompt: Optional[str] = Field(default=None, description="可选的 system 提示词")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("chat_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
