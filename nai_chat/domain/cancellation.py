"""协作式取消信号。

CancelToken 可以挂在 Conversation 上，也可以按调用传入。Transport 在发起请求前、
重试等待期间以及读取流式响应的每一行之间检查它；已经取消的 token 不会触发任何网络 I/O。
"""

import threading
import time
from typing import Optional

from nai_chat.domain.exceptions import CancellationError


class CancelToken:
    """基于 threading.Event 的取消信号，可选截止时间。

    截止时间到达后视同已取消（对应 "deadline exceeded"）。
    """

    def __init__(self, deadline: Optional[float] = None):
        self._event = threading.Event()
        # time.monotonic() 基准的截止时间
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    def reason(self) -> str:
        if self._event.is_set():
            return "operation cancelled"
        if self.expired:
            return "deadline exceeded"
        return ""

    def wait(self, timeout: float) -> bool:
        """最多等待 timeout 秒；期间被取消（或到达截止时间）则返回 True。"""

        if self._deadline is not None:
            remaining = self._deadline - time.monotonic()
            if remaining <= timeout:
                self._event.wait(max(remaining, 0.0))
                return True
        return self._event.wait(timeout)

    def raise_if_cancelled(self, **extra) -> None:
        if self.cancelled:
            raise CancellationError(code="CANCELLED", message=self.reason(), **extra)


def raise_if_cancelled(token: Optional[CancelToken], **extra) -> None:
    """token 为空时什么也不做。"""

    if token is not None:
        token.raise_if_cancelled(**extra)
