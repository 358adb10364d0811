"""completions Provider 集成层。

该包下的模块负责：
- 定义 Transport 抽象接口 (base)。
- 维护 prompt 模板、模型与思考策略配置 (registry)。
- 拼装 prompt (prompt_format)、重试 (retry)、SSE 解码 (sse)。
- 提供 NovelAI 的具体实现 (novelai_client)。
"""

from typing import Any, Optional

from nai_chat.config.credentials import discover_api_token
from nai_chat.providers.base import CompletionTransport
from nai_chat.providers.novelai_client import NovelAITransport


def create_transport(config: Any, api_key: Optional[str] = None) -> CompletionTransport:
    """根据配置（NaiSettings）创建 Transport；api_key 为空时按 discover_api_token 的顺序查找。"""

    return NovelAITransport.from_settings(config, api_key=discover_api_token(api_key, config))
