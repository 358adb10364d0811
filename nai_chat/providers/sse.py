"""Server-Sent-Events 流解码。

每行的处理规则：

- 不以 ``data:`` 开头的行（注释、空行保活）直接忽略。
- ``data: [DONE]``：回调 on_token("", True) 后停止读取。
- 其余 data 负载按 completions 流式 chunk 解析：
  - 没有 choices 的 chunk 跳过；
  - choice.text 非空时累加并回调 on_token(text, False)；
  - choice.finish_reason 非空时记为待定停止原因（后写覆盖先写）；
  - chunk 里带 usage 时记录下来（一般只在最后一个 chunk 出现）。
- 单行 JSON 损坏，或 choices / text / finish_reason / usage 类型不对，只跳过这一行，不影响整条流。
- 底层读取出错时结束解码，抛 TransportError，已累计文本放在 partial_reply 中。
"""

import json
import logging
from typing import Iterable, List, Optional

import httpx

from nai_chat.domain.conversation import StreamCallback
from nai_chat.domain.exceptions import CancellationError, ProtocolError, TransportError
from nai_chat.domain.models import CompletionUsage, StreamResult
from nai_chat.infrastructure.logging.logger import log_event

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEStreamDecoder:
    """增量解码 completions SSE 流。一个实例只解码一条流。"""

    def __init__(self, on_token: Optional[StreamCallback] = None):
        self._on_token = on_token
        self._parts: List[str] = []
        self.stop_reason = ""
        self.usage: Optional[CompletionUsage] = None
        self.done = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed_line(self, line: str) -> bool:
        """处理一行，返回 True 表示遇到结束标记、不应再继续读取。"""

        if not line.startswith(DATA_PREFIX):
            return False
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            self.done = True
            if self._on_token is not None:
                self._on_token("", True)
            return True

        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            log_event(logging.DEBUG, "Skipped malformed SSE line", line=line[:200])
            return False
        if not isinstance(chunk, dict):
            return False

        # 先校验整个 chunk，类型不对就整行跳过，不修改任何状态
        try:
            usage = CompletionUsage.from_payload(chunk.get("usage"))
        except ProtocolError:
            log_event(logging.DEBUG, "Skipped SSE chunk with malformed usage", line=line[:200])
            return False

        choices = chunk.get("choices") or []
        if not isinstance(choices, list):
            log_event(logging.DEBUG, "Skipped SSE chunk with malformed choices", line=line[:200])
            return False
        choice = choices[0] if choices else {}
        if not isinstance(choice, dict):
            log_event(logging.DEBUG, "Skipped SSE chunk with malformed choices", line=line[:200])
            return False
        text = choice.get("text") or ""
        finish_reason = choice.get("finish_reason") or ""
        if not isinstance(text, str) or not isinstance(finish_reason, str):
            log_event(logging.DEBUG, "Skipped SSE chunk with malformed choice", line=line[:200])
            return False

        if usage is not None:
            self.usage = usage
        if text:
            self._parts.append(text)
            if self._on_token is not None:
                self._on_token(text, False)

        if finish_reason:
            self.stop_reason = finish_reason
        return False

    def decode(self, lines: Iterable[str]) -> StreamResult:
        try:
            for line in lines:
                if self.feed_line(line):
                    break
        except CancellationError as e:
            e.extra.setdefault("partial_reply", self.text)
            raise
        except (httpx.TransportError, httpx.StreamError, OSError) as e:
            raise TransportError(
                code="STREAM_READ_ERROR",
                message=f"error reading stream: {e}",
                partial_reply=self.text,
            ) from e
        return self.result()

    def result(self) -> StreamResult:
        return StreamResult(text=self.text, stop_reason=self.stop_reason, usage=self.usage, done=self.done)


def decode_sse_stream(lines: Iterable[str], on_token: Optional[StreamCallback] = None) -> StreamResult:
    return SSEStreamDecoder(on_token).decode(lines)
