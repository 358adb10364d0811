from typing import Callable, List, Optional, Protocol

from nai_chat.domain.models import Message, Role, ROLES, TurnResult, Usage


# on_token(text, done)：done=True 时 text 为空串
StreamCallback = Callable[[str, bool], None]

# rstrip 的字符集合
_TRAILING_WS = " \t\n\r"


class ConversationHistory:
    """有序消息历史。

    只有两种修改：append_turn（纯追加）和 merge_trailing_assistant_pair（续写合并）。
    不加锁，同一个实例不能被多个线程并发使用。
    """

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = list(messages or [])

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    @property
    def messages(self) -> List[Message]:
        return [Message(role=m.role, content=m.content) for m in self._messages]

    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def append_turn(self, role: Role, content: str) -> Message:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        msg = Message(role=role, content=content)
        self._messages.append(msg)
        return msg

    def merge_trailing_assistant_pair(self) -> bool:
        """最后两条都是 assistant 时合并为一条，返回是否发生了合并。

        前一条去掉尾部空白，后一条去掉首尾空白，直接拼接（不插入分隔符），
        然后丢弃后一条。末尾有连续多条 assistant 时会一直合并到只剩一条，
        因此多次调用幂等。
        """

        merged = False
        while len(self._messages) >= 2:
            earlier, later = self._messages[-2], self._messages[-1]
            if earlier.role != "assistant" or later.role != "assistant":
                break
            earlier.content = earlier.content.rstrip(_TRAILING_WS) + later.content.strip()
            self._messages.pop()
            merged = True
        return merged

    def clear(self) -> None:
        self._messages = []


class LLMConversation(Protocol):
    """多轮会话的统一接口，agents.conversation.Conversation 显式实现它。"""

    def send(self, text: str) -> TurnResult:
        ...

    def send_streaming(self, text: str, on_token: Optional[StreamCallback] = None) -> TurnResult:
        ...

    def send_until_done(self, text: str) -> TurnResult:
        ...

    def add_message(self, role: Role, content: str) -> None:
        ...

    def get_messages(self) -> List[Message]:
        ...

    def get_usage(self) -> Usage:
        ...

    def get_system(self) -> str:
        ...

    def clear(self) -> None:
        ...
