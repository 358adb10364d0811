"""Transport 抽象接口。

编排层（Conversation）不直接依赖 httpx，而是依赖此协议：

- execute(request, stream=False)：一次非流式调用，返回解析后的 CompletionResponse。
- execute(request, stream=True)：返回已打开的 StreamHandle，交给 SSE 解码器逐行读取。

测试里可以用一个记录调用次数的假 Transport 替换真实实现。
"""

from typing import Iterator, Optional, Protocol, Union

from nai_chat.domain.cancellation import CancelToken
from nai_chat.domain.models import CompletionRequest, CompletionResponse


class StreamHandle(Protocol):
    """一个已打开的流式响应，用完必须 close（支持 with 语句）。"""

    def iter_lines(self) -> Iterator[str]:
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> "StreamHandle":
        ...

    def __exit__(self, *exc_info) -> None:
        ...


class CompletionTransport(Protocol):
    """completions 端点的传输层协议。

    实现者需要提供：
    - name: Transport 名称，用于日志。
    - execute: 执行一次 HTTP 交换（含有界重试与取消检查）。
    """

    name: str

    def execute(
        self,
        request: CompletionRequest,
        stream: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> Union[CompletionResponse, StreamHandle]:
        ...
