import time

import pytest

from nai_chat.domain.cancellation import CancelToken, raise_if_cancelled
from nai_chat.domain.exceptions import CancellationError


def test_cancel_token_cancel():
    token = CancelToken()
    assert token.cancelled is False
    token.cancel()
    assert token.cancelled is True
    assert token.reason() == "operation cancelled"
    with pytest.raises(CancellationError) as exc_info:
        token.raise_if_cancelled()
    assert exc_info.value.code == "CANCELLED"


def test_cancel_token_deadline():
    token = CancelToken.with_timeout(0.01)
    time.sleep(0.02)
    assert token.cancelled is True
    assert token.reason() == "deadline exceeded"


def test_wait_returns_when_cancelled():
    token = CancelToken()
    assert token.wait(0) is False
    token.cancel()
    assert token.wait(10) is True


def test_wait_until_deadline():
    token = CancelToken.with_timeout(0.01)
    assert token.wait(10) is True


def test_raise_if_cancelled_ignores_missing_token():
    raise_if_cancelled(None)
