"""统一业务异常模型。

所有对外抛出的错误都继承自 BusinessError，调用方可以统一捕获。
分类：

- ConfigError: 缺少凭证、空历史上继续生成等配置/前置条件错误。
- TransportError: 网络失败（重试耗尽）或 HTTP 非 2xx。
- ProtocolError: 响应体无法解析，或 choices 为空。
- CancellationError: 调用方通过 CancelToken 中止了本次操作。

流式调用或自动续写中途失败时，已经生成的文本通过 ``partial_reply`` 带出。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "MISSING_API_KEY"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 partial_reply、trace_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)

    @property
    def partial_reply(self) -> str:
        """失败前已经累计的回复文本（没有则为空串）。"""

        return self.extra.get("partial_reply", "")


class ConfigError(BusinessError):
    """配置或前置条件错误：未设置 API token、历史为空时继续生成等。"""


class TransportError(BusinessError):
    """传输层错误。

    - status_code 为 None：没有拿到响应（连接失败、超时、读流中断），
      且已用尽重试次数。
    - status_code 不为 None：服务端返回了非 2xx，body 为原始响应体，
      这种情况不会重试。
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
        **extra,
    ):
        super().__init__(code, message, http_status=status_code or 502, **extra)
        self.status_code = status_code
        self.body = body


class RateLimitError(TransportError):
    """Provider 限流（HTTP 429），由上层负责退避策略。"""


class ProtocolError(BusinessError):
    """响应体解码失败或未返回任何 choice。"""


class CancellationError(BusinessError):
    """操作被调用方的取消信号中止。取消是终态，不会被重试。"""
