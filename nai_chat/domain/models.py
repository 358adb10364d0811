"""统一的对话与生成数据模型。

本模块定义了会话内部使用的标准数据结构：

- Message: 一条对话消息（system/user/assistant）。
- ThinkModePolicy: 关闭模型"深度思考"阶段时使用的提示词框架约定。
- GenerationSettings: 生成参数（模型、采样、惩罚项、停止序列、思考开关）。
- Usage: 会话累计的 token 统计。
- CompletionResponse / StreamResult / TurnResult: Transport 与编排层之间传递的结果。

Provider 的 JSON 与这些模型之间的转换由 providers 包负责。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from nai_chat.domain.exceptions import ProtocolError


# 消息角色（completions 接口没有结构化消息数组，角色只在拼 prompt 时使用）
Role = Literal["system", "user", "assistant"]

ROLES = ("system", "user", "assistant")


@dataclass
class Message:
    """一条对话消息。追加到历史之后只允许被续写合并修改。"""

    role: Role
    content: str


@dataclass(frozen=True)
class ThinkModePolicy:
    """关闭深度思考的提示词约定。

    - user_suffix: 追加在最后一条 user 消息末尾的文本（仅在拼 prompt 时追加，不写回历史）。
    - assistant_prefix: 写在最后一个 assistant 分隔符之后，用于预填充回复、跳过思考阶段。
    """

    name: str
    user_suffix: str
    assistant_prefix: str


# GLM-4.6：/nothink + 空 think 块
THINK_GLM46 = ThinkModePolicy(name="glm46", user_suffix="/nothink", assistant_prefix="<think></think>\n")
# GLM-4.7：/nothink + 闭合 think 标签；标签后不换行，回复紧接在 </think> 之后
THINK_GLM47 = ThinkModePolicy(name="glm47", user_suffix="/nothink", assistant_prefix="</think>")
# 不支持思考模式的模型
THINK_NONE = ThinkModePolicy(name="none", user_suffix="", assistant_prefix="")

DEFAULT_THINK_POLICY = THINK_GLM46


@dataclass
class GenerationSettings:
    """生成参数。

    数值字段取 0 表示"使用服务端默认值"，序列化时会被省略。
    think_policy 为空时由 registry.resolve_think_policy 解析为默认策略。
    """

    model: str = "glm-4-6"
    max_tokens: int = 2048
    temperature: float = 1.0
    top_p: float = 0.0
    top_k: int = 0
    min_p: float = 0.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    repetition_penalty: float = 0.0
    stop_sequences: List[str] = field(default_factory=lambda: ["<|user|>", "<|system|>"])
    # 开启后不追加 user_suffix / assistant_prefix
    thinking: bool = False
    think_policy: Optional[ThinkModePolicy] = None


@dataclass
class CompletionRequest:
    """一次 completions 调用：已格式化的 prompt + 生成参数。

    endpoint 为空时使用 Transport 配置的默认端点。
    """

    prompt: str
    settings: GenerationSettings
    endpoint: Optional[str] = None


@dataclass
class Usage:
    """会话累计 token 消耗，只由编排层（Conversation）累加。"""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class CompletionChoice:
    index: int
    text: str
    finish_reason: str = ""


@dataclass
class CompletionUsage:
    """Provider 返回的 token 统计（OpenAI 兼容格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, raw: Optional[Dict[str, Any]]) -> Optional["CompletionUsage"]:
        if not raw or not isinstance(raw, dict):
            return None
        return cls(
            prompt_tokens=_token_count(raw, "prompt_tokens"),
            completion_tokens=_token_count(raw, "completion_tokens"),
            total_tokens=_token_count(raw, "total_tokens"),
        )


def _token_count(raw: Dict[str, Any], key: str) -> int:
    value = raw.get(key)
    if value is None:
        return 0
    # bool 是 int 的子类，需要单独排除
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(code="INVALID_RESPONSE", message=f"usage.{key} is not an integer: {value!r}")
    return value


def _optional_str(raw: Dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ProtocolError(code="INVALID_RESPONSE", message=f"choice.{key} is not a string: {value!r}")
    return value


@dataclass
class CompletionResponse:
    """非流式 completions 响应。

    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    id: str
    model: str
    choices: List[CompletionChoice]
    usage: Optional[CompletionUsage] = None
    object: str = ""
    created: int = 0
    raw: Optional[dict] = None

    @classmethod
    def from_payload(cls, data: Any) -> "CompletionResponse":
        if not isinstance(data, dict):
            raise ProtocolError(code="INVALID_RESPONSE", message="response body is not a JSON object")
        raw_choices = data.get("choices") or []
        if not isinstance(raw_choices, list):
            raise ProtocolError(code="INVALID_RESPONSE", message="choices is not a JSON array")
        choices = []
        for i, ch in enumerate(raw_choices):
            if not isinstance(ch, dict):
                raise ProtocolError(code="INVALID_RESPONSE", message=f"choice {i} is not a JSON object")
            index = ch.get("index", i)
            choices.append(
                CompletionChoice(
                    index=index if isinstance(index, int) else i,
                    text=_optional_str(ch, "text"),
                    finish_reason=_optional_str(ch, "finish_reason"),
                )
            )
        return cls(
            id=data.get("id") or "",
            model=data.get("model") or "",
            choices=choices,
            usage=CompletionUsage.from_payload(data.get("usage")),
            object=data.get("object") or "",
            created=data.get("created") or 0,
            raw=data,
        )


@dataclass
class StreamResult:
    """SSE 解码结束后的汇总结果。stop_reason 为 Provider 原始值（未归一化），可能为空。"""

    text: str
    stop_reason: str = ""
    usage: Optional[CompletionUsage] = None
    done: bool = False


@dataclass
class TurnResult:
    """一次 send / send_streaming / send_until_done 的返回值。

    stop_reason 已归一化（end_turn / max_tokens / tool_use / 原样透传）。
    流式调用中 output_tokens 可能是估算值，见 estimated。
    """

    reply: str
    stop_reason: str
    input_tokens: int = 0
    output_tokens: int = 0
    estimated: bool = False


STOP_REASON_MAP: Dict[str, str] = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
}


def normalize_stop_reason(reason: str) -> str:
    """把 OpenAI 风格的 finish_reason 转成通用格式，未知值（含空串）原样返回。"""

    return STOP_REASON_MAP.get(reason, reason)
