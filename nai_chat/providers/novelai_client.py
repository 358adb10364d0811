"""NovelAI completions Transport。

使用 OpenAI 兼容的 completions 端点（单个字符串 prompt，而不是 messages 数组）：
- URL: https://text.novelai.net/oa/v1/completions（可按会话覆盖）
- 认证: Authorization: Bearer <api_key>

本模块负责：

1. 把 CompletionRequest 序列化成请求 JSON（数值为 0 的字段不发送，保留服务端默认值）。
2. 发送请求；连接失败、超时等传输层错误按 RetryPolicy 重试，每次重试重新构造请求。
3. 非 2xx 状态不重试，直接抛 TransportError（带状态码和原始响应体）。
4. 非流式：读完整个响应并解析 JSON；流式：返回打开的 HttpStream 给 SSE 解码器。
"""

import logging
from contextlib import ExitStack
from typing import Any, Dict, Iterator, Optional, Union

import httpx

from nai_chat.domain.cancellation import CancelToken, raise_if_cancelled
from nai_chat.domain.exceptions import (
    ConfigError,
    ProtocolError,
    RateLimitError,
    TransportError,
)
from nai_chat.domain.models import CompletionRequest, CompletionResponse
from nai_chat.infrastructure.logging.logger import log_event
from nai_chat.providers.base import CompletionTransport
from nai_chat.providers.registry import DEFAULT_COMPLETIONS_URL
from nai_chat.providers.retry import RetryPolicy, call_with_retry


def build_payload(request: CompletionRequest, stream: bool) -> Dict[str, Any]:
    """构造请求体。

    数值字段取 0 时省略（稀疏编码），stop 去重并保持顺序，空列表不发送。
    """

    s = request.settings
    payload: Dict[str, Any] = {"model": s.model, "prompt": request.prompt}
    numeric = {
        "max_tokens": s.max_tokens,
        "temperature": s.temperature,
        "top_p": s.top_p,
        "top_k": s.top_k,
        "min_p": s.min_p,
        "frequency_penalty": s.frequency_penalty,
        "presence_penalty": s.presence_penalty,
        "repetition_penalty": s.repetition_penalty,
    }
    payload.update({k: v for k, v in numeric.items() if v})
    if stream:
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
    stop = list(dict.fromkeys(s.stop_sequences or []))
    if stop:
        payload["stop"] = stop
    return payload


def _is_retryable(exc: BaseException) -> bool:
    # 超时、连接失败、DNS 等；HTTP 状态错误不在其中
    return isinstance(exc, httpx.TransportError)


class HttpStream:
    """打开中的流式响应。iter_lines 在每行之间检查取消信号。"""

    def __init__(self, response: httpx.Response, stack: ExitStack, cancel: Optional[CancelToken] = None):
        self._response = response
        self._stack = stack
        self._cancel = cancel

    @property
    def status_code(self) -> int:
        return self._response.status_code

    def iter_lines(self) -> Iterator[str]:
        raise_if_cancelled(self._cancel)
        for line in self._response.iter_lines():
            raise_if_cancelled(self._cancel)
            yield line

    def read_body(self) -> str:
        self._response.read()
        return self._response.text

    def close(self) -> None:
        self._stack.close()

    def __enter__(self) -> "HttpStream":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class NovelAITransport(CompletionTransport):
    """NovelAI completions 端点的 httpx 实现。"""

    name = "novelai"

    def __init__(
        self,
        api_key: Optional[str],
        endpoint: str = DEFAULT_COMPLETIONS_URL,
        timeout: float = 120.0,
        retry: RetryPolicy = RetryPolicy(),
    ):
        self._api_key = api_key
        self._endpoint = endpoint
        self._timeout = timeout
        self._retry = retry

    @classmethod
    def from_settings(cls, cfg, api_key: Optional[str] = None) -> "NovelAITransport":
        return cls(
            api_key=api_key or getattr(cfg, "nai_api_key", None),
            endpoint=getattr(cfg, "completions_url", None) or DEFAULT_COMPLETIONS_URL,
            timeout=cfg.http_timeout,
            retry=RetryPolicy(max_retries=cfg.http_retries, delay=cfg.http_retry_delay),
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def execute(
        self,
        request: CompletionRequest,
        stream: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> Union[CompletionResponse, HttpStream]:
        if stream:
            return self.open_stream(request, cancel)
        return self.complete(request, cancel)

    # ---- 非流式 ----

    def complete(self, request: CompletionRequest, cancel: Optional[CancelToken] = None) -> CompletionResponse:
        self._require_api_key()
        url = request.endpoint or self._endpoint
        log_ctx = {"transport": self.name, "model": request.settings.model, "stream": False}

        def attempt() -> httpx.Response:
            payload = build_payload(request, stream=False)
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                return client.post(url, json=payload, headers=self._headers(stream=False))

        try:
            resp = call_with_retry(attempt, self._retry, _is_retryable, cancel, log_ctx)
        except httpx.TransportError as e:
            raise TransportError(
                code="NETWORK_ERROR",
                message=f"HTTP error after {self._retry.max_retries} retries: {e}",
            ) from e
        # 请求本身不可中断，返回后再检查一次
        raise_if_cancelled(cancel)
        self._raise_for_status(resp.status_code, resp.text, log_ctx)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError(
                code="INVALID_RESPONSE",
                message=f"error parsing response: {e}",
                body=resp.text,
            ) from e
        return CompletionResponse.from_payload(data)

    # ---- 流式 ----

    def open_stream(self, request: CompletionRequest, cancel: Optional[CancelToken] = None) -> HttpStream:
        self._require_api_key()
        url = request.endpoint or self._endpoint
        log_ctx = {"transport": self.name, "model": request.settings.model, "stream": True}

        def attempt() -> HttpStream:
            payload = build_payload(request, stream=True)
            stack = ExitStack()
            try:
                # 流式读取不设读超时
                client = stack.enter_context(
                    httpx.Client(timeout=httpx.Timeout(self._timeout, read=None), trust_env=False)
                )
                resp = stack.enter_context(
                    client.stream("POST", url, json=payload, headers=self._headers(stream=True))
                )
            except BaseException:
                stack.close()
                raise
            return HttpStream(resp, stack, cancel)

        try:
            handle = call_with_retry(attempt, self._retry, _is_retryable, cancel, log_ctx)
        except httpx.TransportError as e:
            raise TransportError(
                code="NETWORK_ERROR",
                message=f"HTTP error after {self._retry.max_retries} retries: {e}",
            ) from e
        try:
            raise_if_cancelled(cancel)
            if not 200 <= handle.status_code < 300:
                try:
                    body = handle.read_body()
                except (httpx.TransportError, httpx.StreamError) as e:
                    # 读不到错误体时仍按状态码报错（body 为空），读错误保留在 __context__
                    log_event(logging.WARNING, "Failed to read error body", log_ctx, error=str(e))
                    self._raise_for_status(handle.status_code, "", log_ctx)
                self._raise_for_status(handle.status_code, body, log_ctx)
        except BaseException:
            handle.close()
            raise
        return handle

    # ---- 辅助方法 ----

    def _require_api_key(self) -> None:
        if not self._api_key:
            # 缺凭证不重试
            raise ConfigError(code="MISSING_API_KEY", message="API token not set")

    def _headers(self, stream: bool) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    @staticmethod
    def _raise_for_status(status_code: int, body: str, log_ctx: Dict[str, Any]) -> None:
        if 200 <= status_code < 300:
            return
        log_event(logging.WARNING, "API returned error status", log_ctx, status_code=status_code)
        if status_code == 429:
            raise RateLimitError(
                code="RATE_LIMIT",
                message=f"rate limited (status 429): {body}",
                status_code=status_code,
                body=body,
            )
        raise TransportError(
            code="API_ERROR",
            message=f"API error (status {status_code}): {body}",
            status_code=status_code,
            body=body,
        )
