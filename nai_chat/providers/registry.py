"""Prompt 模板、模型与思考策略配置。

本模块把"拼 prompt 用的特殊 token"从格式化逻辑里拆出来集中配置：

- PromptTemplate：某个模型家族的前缀、角色分隔符。写错不会报错，只会让模型输出变差，
  所以这些常量只在这里维护一份。
- ModelConfig：模型 ID -> 模板 + 默认思考策略。
- THINK_POLICIES：按名称选择思考策略（配置文件里用名称引用）。
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from nai_chat.domain.models import (
    DEFAULT_THINK_POLICY,
    GenerationSettings,
    THINK_GLM46,
    THINK_GLM47,
    THINK_NONE,
    ThinkModePolicy,
)


# NovelAI 的 OpenAI 兼容 completions 端点
DEFAULT_COMPLETIONS_URL = "https://text.novelai.net/oa/v1/completions"


@dataclass(frozen=True)
class PromptTemplate:
    """单个模型家族的 prompt 分隔符。"""

    name: str
    prefix: str
    system: str
    user: str
    assistant: str


# GLM-4 特殊 token：[gMASK]<sop><|system|>...<|user|>...<|assistant|>
GLM4_TEMPLATE = PromptTemplate(
    name="glm4",
    prefix="[gMASK]<sop>",
    system="<|system|>",
    user="<|user|>",
    assistant="<|assistant|>",
)


@dataclass(frozen=True)
class ModelConfig:
    """单个模型的提示词配置。"""

    model: str
    template: PromptTemplate
    think_policy: ThinkModePolicy


MODEL_REGISTRY: Mapping[str, ModelConfig] = {
    "glm-4-6": ModelConfig(model="glm-4-6", template=GLM4_TEMPLATE, think_policy=THINK_GLM46),
}

THINK_POLICIES: Dict[str, ThinkModePolicy] = {
    THINK_GLM46.name: THINK_GLM46,
    THINK_GLM47.name: THINK_GLM47,
    THINK_NONE.name: THINK_NONE,
}


def get_model_config(model: str) -> ModelConfig:
    """未登记的模型按 GLM-4 模板 + 默认思考策略处理。"""

    cfg = MODEL_REGISTRY.get(model)
    if cfg is not None:
        return cfg
    return ModelConfig(model=model, template=GLM4_TEMPLATE, think_policy=DEFAULT_THINK_POLICY)


def get_think_policy(name: str) -> ThinkModePolicy:
    """根据名称获取思考策略，名称不区分大小写。"""

    key = name.lower()
    if key not in THINK_POLICIES:
        raise KeyError(f"Unknown think policy: {name!r}")
    return THINK_POLICIES[key]


def resolve_think_policy(
    settings: GenerationSettings,
    override: Optional[ThinkModePolicy] = None,
) -> ThinkModePolicy:
    """解析本次调用生效的思考策略。

    优先级：显式 override > settings.think_policy > 模型登记的策略。
    结果永远不为空，格式化时不会悄悄漏掉关闭思考的约定。
    """

    if override is not None:
        return override
    if settings.think_policy is not None:
        return settings.think_policy
    return get_model_config(settings.model).think_policy
