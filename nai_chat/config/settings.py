"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
不在导入时创建全局配置对象：调用方通过 load_settings() 显式加载，
再传给 create_transport / create_conversation。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from nai_chat.domain.models import GenerationSettings
from nai_chat.providers.registry import DEFAULT_COMPLETIONS_URL, get_think_policy


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("NAI_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.append(Path.cwd() / "config.yaml")

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


class NaiSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 凭证与端点 ----
    nai_api_key: Optional[str] = Field(default=None, description="NovelAI API token（环境变量 NAI_API_KEY）")
    completions_url: str = Field(
        default=DEFAULT_COMPLETIONS_URL,
        description="OpenAI 兼容 completions 端点",
    )

    # ---- HTTP ----
    http_timeout: float = Field(default=120.0, ge=1.0, description="HTTP 超时时间（秒）")
    http_retries: int = Field(default=3, ge=0, le=10, description="传输层失败后的重试次数")
    http_retry_delay: float = Field(default=3.0, ge=0.0, description="两次重试之间的等待（秒）")

    # ---- 默认生成参数 ----
    default_model: str = Field(default="glm-4-6", description="默认模型")
    default_max_tokens: int = Field(default=2048, ge=1, description="单次生成的最大 token 数")
    default_temperature: float = Field(default=1.0, ge=0.0, le=2.0, description="生成温度")
    thinking: bool = Field(default=False, description="是否开启深度思考（<think> 块）")
    think_format: Literal["glm46", "glm47", "none"] = Field(
        default="glm46",
        description="关闭思考时使用的提示词约定",
    )

    # ---- 日志 ----
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

    @field_validator("nai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
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

    def generation_defaults(self) -> GenerationSettings:
        """按配置构造默认生成参数。"""

        return GenerationSettings(
            model=self.default_model,
            max_tokens=self.default_max_tokens,
            temperature=self.default_temperature,
            thinking=self.thinking,
            think_policy=get_think_policy(self.think_format),
        )


def load_settings(**overrides: Any) -> NaiSettings:
    """读取环境变量 / .env / config.yaml 构造配置，overrides 优先级最高。"""

    return NaiSettings(**overrides)
