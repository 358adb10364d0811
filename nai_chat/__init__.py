"""nai_chat 顶层包。

面向 NovelAI OpenAI 兼容 completions 端点（单字符串 prompt）的多轮对话客户端，
包括 prompt 格式化、带重试与取消的 HTTP 传输、SSE 流式解码，以及
max_tokens 截断后的自动续写与消息合并。
"""

from typing import Optional

from nai_chat.agents.conversation import Conversation
from nai_chat.config.settings import NaiSettings, load_settings
from nai_chat.domain.cancellation import CancelToken
from nai_chat.domain.exceptions import (
    BusinessError,
    CancellationError,
    ConfigError,
    ProtocolError,
    RateLimitError,
    TransportError,
)
from nai_chat.domain.models import (
    GenerationSettings,
    Message,
    THINK_GLM46,
    THINK_GLM47,
    THINK_NONE,
    ThinkModePolicy,
    TurnResult,
    Usage,
)
from nai_chat.providers import create_transport


def create_conversation(
    system: str,
    config: Optional[NaiSettings] = None,
    api_key: Optional[str] = None,
) -> Conversation:
    """按配置创建 Conversation。

    config 为空时调用 load_settings() 读取环境变量 / .env / config.yaml；
    api_key 为空时依次查找配置、~/.naitoken、./.naitoken。
    """

    cfg = config if config is not None else load_settings()
    return Conversation(
        system,
        transport=create_transport(cfg, api_key=api_key),
        settings=cfg.generation_defaults(),
    )


__all__ = [
    "BusinessError",
    "CancelToken",
    "CancellationError",
    "ConfigError",
    "Conversation",
    "GenerationSettings",
    "Message",
    "NaiSettings",
    "ProtocolError",
    "RateLimitError",
    "THINK_GLM46",
    "THINK_GLM47",
    "THINK_NONE",
    "ThinkModePolicy",
    "TransportError",
    "TurnResult",
    "Usage",
    "create_conversation",
    "load_settings",
]
