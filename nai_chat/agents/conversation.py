"""会话编排核心模块。

Conversation 组合 消息历史 -> prompt 格式化 -> Transport ->（SSE 解码）-> 历史/用量更新，
对外提供 send / send_streaming / send_until_done 三类操作。

注意：
- 历史只在调用成功后追加 assistant 回复；但调用前追加的 user 消息在失败后仍然保留，
  重试时应传空字符串继续，避免重复追加同一条 user 消息。
- 同一个 Conversation 不支持多线程并发使用。
"""

import logging
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional
from uuid import uuid4

from nai_chat.domain.cancellation import CancelToken, raise_if_cancelled
from nai_chat.domain.conversation import ConversationHistory, LLMConversation, StreamCallback
from nai_chat.domain.exceptions import BusinessError, CancellationError, ConfigError, ProtocolError
from nai_chat.domain.models import (
    CompletionRequest,
    GenerationSettings,
    Message,
    Role,
    ThinkModePolicy,
    TurnResult,
    Usage,
    normalize_stop_reason,
)
from nai_chat.infrastructure.logging.logger import log_event
from nai_chat.providers.base import CompletionTransport
from nai_chat.providers.prompt_format import format_prompt
from nai_chat.providers.registry import get_model_config, resolve_think_policy
from nai_chat.providers.sse import SSEStreamDecoder

# 流式响应通常不带 usage，此时按 4 字符 ≈ 1 token 粗略估算（不是精确值）
CHARS_PER_TOKEN = 4


def estimate_output_tokens(text: str) -> int:
    """估算输出 token 数：字符数 // 4，非空文本至少记 1。"""

    tokens = len(text) // CHARS_PER_TOKEN
    if tokens == 0 and text:
        tokens = 1
    return tokens


class Conversation(LLMConversation):
    """与 completions 端点的一次多轮会话。

    Attributes:
        settings: 当前生成参数（可直接修改，下次调用生效）。
        transport: 执行 HTTP 交换的 CompletionTransport。
        cancel: 默认取消信号，单次调用可以另外传入。
    """

    def __init__(
        self,
        system: str,
        transport: CompletionTransport,
        settings: Optional[GenerationSettings] = None,
        cancel: Optional[CancelToken] = None,
        endpoint: Optional[str] = None,
    ):
        self._system = system
        self._history = ConversationHistory()
        self._usage = Usage()
        self.settings = replace(settings) if settings is not None else GenerationSettings()
        self.transport = transport
        self.cancel = cancel
        self._endpoint = endpoint or None

    # ---- 只读状态 ----

    @property
    def system(self) -> str:
        return self._system

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def messages(self) -> List[Message]:
        return self._history.messages

    @property
    def usage(self) -> Usage:
        return replace(self._usage)

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint

    @property
    def think_policy(self) -> ThinkModePolicy:
        """本会话当前生效的思考策略（未设置时为模型默认策略）。"""

        return resolve_think_policy(self.settings)

    def get_messages(self) -> List[Message]:
        return self.messages

    def get_usage(self) -> Usage:
        return self.usage

    def get_system(self) -> str:
        return self._system

    # ---- 修改配置 ----

    def add_message(self, role: Role, content: str) -> None:
        """手动追加一条消息（例如恢复历史记录）。"""

        self._history.append_turn(role, content)

    def clear(self) -> None:
        """清空历史和用量，保留 system prompt 与生成参数。"""

        self._history.clear()
        self._usage = Usage()

    def set_model(self, model: str) -> None:
        self.settings.model = model

    def set_think_policy(self, policy: Optional[ThinkModePolicy]) -> None:
        """设置思考策略；传 None 恢复为模型默认策略。"""

        self.settings.think_policy = policy

    def set_endpoint(self, endpoint: str) -> None:
        """覆盖 completions 端点；传空串恢复为 Transport 的默认端点。"""

        self._endpoint = endpoint or None

    def set_cancel_token(self, cancel: Optional[CancelToken]) -> None:
        self.cancel = cancel

    # ---- 单次调用 ----

    def send(self, text: str, cancel: Optional[CancelToken] = None) -> TurnResult:
        """发送一条 user 消息并返回 assistant 回复（非流式）。

        text 为空时不追加新消息：最后一条是 user 则回复它，最后一条是 assistant
        则从该消息继续生成（用于 max_tokens 续写）。
        """

        cancel = cancel or self.cancel
        log_ctx = self._new_log_ctx(stream=False)
        start_time = time.time()
        try:
            request = self._prepare(text, cancel)
            resp = self.transport.execute(request, stream=False, cancel=cancel)
        except CancellationError:
            log_event(logging.INFO, "Send cancelled", log_ctx)
            raise

        if not resp.choices:
            raise ProtocolError(code="NO_CHOICES", message="no choices in response")
        choice = resp.choices[0]
        reply = choice.text
        stop_reason = normalize_stop_reason(choice.finish_reason)
        input_tokens = resp.usage.prompt_tokens if resp.usage else 0
        output_tokens = resp.usage.completion_tokens if resp.usage else 0

        # 解码全部成功后才修改历史与用量
        self._history.append_turn("assistant", reply)
        self._usage.input_tokens += input_tokens
        self._usage.output_tokens += output_tokens

        log_event(
            logging.INFO,
            "Completed send",
            log_ctx,
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return TurnResult(
            reply=reply,
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def send_streaming(
        self,
        text: str,
        on_token: Optional[StreamCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TurnResult:
        """与 send 相同，但通过 SSE 流式接收；on_token(text, done) 在读取线程上同步回调。

        Provider 没有返回 completion_tokens 时，output_tokens 为估算值（estimated=True）。
        """

        cancel = cancel or self.cancel
        log_ctx = self._new_log_ctx(stream=True)
        start_time = time.time()
        try:
            request = self._prepare(text, cancel)
            handle = self.transport.execute(request, stream=True, cancel=cancel)
            with handle:
                result = SSEStreamDecoder(on_token).decode(handle.iter_lines())
        except CancellationError as e:
            log_event(logging.INFO, "Streaming send cancelled", log_ctx, partial_chars=len(e.partial_reply))
            raise

        reply = result.text
        stop_reason = normalize_stop_reason(result.stop_reason)

        input_tokens = result.usage.prompt_tokens if result.usage else 0
        if result.usage and result.usage.completion_tokens:
            output_tokens = result.usage.completion_tokens
            estimated = False
        else:
            output_tokens = estimate_output_tokens(reply)
            estimated = True
        self._history.append_turn("assistant", reply)
        self._usage.input_tokens += input_tokens
        self._usage.output_tokens += output_tokens

        log_event(
            logging.INFO,
            "Completed streaming send",
            log_ctx,
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated=estimated,
            elapsed_seconds=round(time.time() - start_time, 2),
        )
        return TurnResult(
            reply=reply,
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated=estimated,
        )

    # ---- 自动续写 ----

    def send_until_done(
        self,
        text: str,
        stream: bool = False,
        on_token: Optional[StreamCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TurnResult:
        """反复调用 send（或 send_streaming）直到停止原因不是 max_tokens。

        第一次传入 text，之后都传空串从截断处继续；每次之后合并末尾的 assistant 消息。
        返回各段回复的直接拼接与累计 token 数。
        出错时抛出第一个异常，已经累计的文本放在 exc.partial_reply 中。
        """

        log_ctx = self._new_log_ctx(stream=stream)
        parts: List[str] = []
        input_tokens = 0
        output_tokens = 0
        estimated = False
        next_input = text
        iteration = 0

        while True:
            iteration += 1
            try:
                if stream:
                    part = self.send_streaming(next_input, on_token, cancel)
                else:
                    part = self.send(next_input, cancel)
            except BusinessError as e:
                e.extra["partial_reply"] = "".join(parts) + e.partial_reply
                raise

            parts.append(part.reply)
            input_tokens += part.input_tokens
            output_tokens += part.output_tokens
            estimated = estimated or part.estimated
            self._history.merge_trailing_assistant_pair()

            if part.stop_reason != "max_tokens":
                break
            log_event(logging.INFO, "Reply truncated, continuing", log_ctx, iteration=iteration)
            next_input = ""

        return TurnResult(
            reply="".join(parts),
            stop_reason=part.stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated=estimated,
        )

    def send_streaming_until_done(
        self,
        text: str,
        on_token: Optional[StreamCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> TurnResult:
        return self.send_until_done(text, stream=True, on_token=on_token, cancel=cancel)

    # ---- 辅助方法 ----

    def _prepare(self, text: str, cancel: Optional[CancelToken]) -> CompletionRequest:
        # 已取消时不做任何修改，也不发起网络请求
        raise_if_cancelled(cancel)
        if text:
            self._history.append_turn("user", text)
        elif len(self._history) == 0:
            raise ConfigError(code="EMPTY_HISTORY", message="cannot generate: no messages in conversation")

        prompt = format_prompt(
            self._system,
            self._history,
            self.think_policy,
            self.settings.thinking,
            template=get_model_config(self.settings.model).template,
        )
        return CompletionRequest(prompt=prompt, settings=self.settings, endpoint=self._endpoint)

    def _new_log_ctx(self, stream: bool) -> Dict[str, Any]:
        return {
            "trace_id": f"tr-{uuid4().hex}",
            "transport": getattr(self.transport, "name", "unknown"),
            "model": self.settings.model,
            "stream": stream,
        }
