"""有界重试组合子。

Transport 把"构造并发送一次请求"写成一个无参函数交给 call_with_retry，
每次尝试都会重新调用它（请求体每次重新生成，不复用一次性的流）。
重试策略因此可以脱离 HTTP 单独测试。
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from nai_chat.domain.cancellation import CancelToken, raise_if_cancelled
from nai_chat.domain.exceptions import CancellationError
from nai_chat.infrastructure.logging.logger import log_event

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """max_retries 为首次失败之后的额外尝试次数，两次尝试之间固定等待 delay 秒。"""

    max_retries: int = 3
    delay: float = 3.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    cancel: Optional[CancelToken] = None,
    log_ctx: Optional[dict] = None,
) -> T:
    """执行 fn，遇到 is_retryable 的异常时按 policy 重试。

    - 每次尝试前检查取消信号；已取消直接抛 CancellationError，不再发起请求。
    - 不可重试的异常、或重试耗尽后的最后一个异常原样抛出。
    - 等待期间被取消也会立刻抛 CancellationError。
    """

    attempt = 1
    while True:
        raise_if_cancelled(cancel)
        try:
            return fn()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if cancel is not None and cancel.cancelled:
                raise CancellationError(code="CANCELLED", message=cancel.reason()) from exc
            if attempt >= policy.max_attempts:
                raise
            log_event(
                logging.WARNING,
                "Request failed, retrying",
                log_ctx,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error=str(exc),
            )
            attempt += 1
            if cancel is not None:
                if cancel.wait(policy.delay):
                    raise CancellationError(code="CANCELLED", message=cancel.reason()) from exc
            elif policy.delay > 0:
                time.sleep(policy.delay)
