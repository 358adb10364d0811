"""Prompt 格式化。

completions 端点只接收一个字符串 prompt，这里把 system prompt + 有序消息历史
按模型家族的特殊 token 拼成一个字符串。纯函数，不做任何 I/O。
"""

from typing import Iterable, List

from nai_chat.domain.models import Message, ThinkModePolicy
from nai_chat.providers.registry import GLM4_TEMPLATE, PromptTemplate


def format_prompt(
    system: str,
    messages: Iterable[Message],
    policy: ThinkModePolicy,
    thinking: bool,
    template: PromptTemplate = GLM4_TEMPLATE,
) -> str:
    """拼出 prompt 字符串。

    顺序：前缀 -> system 块（有 system prompt 时）-> 每条历史消息 -> 结尾 assistant 分隔符。
    每个分隔符后、每条内容后各有一个换行；历史中的 system 消息逐条重新加分隔符。

    thinking=False 时：
    - policy.user_suffix 只追加到"整个历史最后一条且是 user"的消息后面；
      续写场景（最后一条是 assistant）不会重复追加。
    - 结尾 assistant 分隔符之后写入 policy.assistant_prefix，预填充回复。
    thinking=True 时两者都不输出。
    """

    msgs = list(messages)
    delimiters = {
        "system": template.system,
        "user": template.user,
        "assistant": template.assistant,
    }
    parts: List[str] = [template.prefix]

    if system:
        parts.extend([template.system, "\n", system, "\n"])

    last_index = len(msgs) - 1
    for i, msg in enumerate(msgs):
        delimiter = delimiters.get(msg.role)
        if delimiter is None:
            continue
        parts.extend([delimiter, "\n", msg.content])
        if msg.role == "user" and i == last_index and not thinking:
            parts.append(policy.user_suffix)
        parts.append("\n")

    parts.extend([template.assistant, "\n"])
    if not thinking:
        parts.append(policy.assistant_prefix)
    return "".join(parts)
