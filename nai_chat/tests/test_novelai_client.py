import httpx
import pytest

from nai_chat.domain.cancellation import CancelToken
from nai_chat.domain.exceptions import (
    CancellationError,
    ConfigError,
    ProtocolError,
    RateLimitError,
    TransportError,
)
from nai_chat.domain.models import CompletionRequest, GenerationSettings
from nai_chat.providers import create_transport
from nai_chat.providers.novelai_client import NovelAITransport, build_payload
from nai_chat.providers.registry import DEFAULT_COMPLETIONS_URL
from nai_chat.providers.retry import RetryPolicy
from nai_chat.providers.sse import decode_sse_stream


NO_DELAY = RetryPolicy(max_retries=3, delay=0)


def _request(**settings):
    return CompletionRequest(prompt="[gMASK]<sop><|user|>\nhi\n<|assistant|>\n", settings=GenerationSettings(**settings))


class Resp:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("Expecting value")
        return self._data


OK_BODY = {
    "id": "cmpl-123",
    "object": "text_completion",
    "created": 1677652288,
    "model": "glm-4-6",
    "choices": [{"index": 0, "text": " Hello! How can I help you?", "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 10, "completion_tokens": 8, "total_tokens": 18},
}


def _fake_client(captured, post=None, stream=None):
    class Client:
        def __init__(self, *a, **kw):
            captured.setdefault("client_kwargs", []).append(kw)

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None):
            captured.setdefault("posts", []).append({"url": url, "json": json, "headers": headers})
            return post()

        def stream(self, method, url, json=None, headers=None):
            captured.setdefault("streams", []).append({"method": method, "url": url, "json": json, "headers": headers})
            return stream()

    return Client


class FakeStreamResponse:
    def __init__(self, lines, status_code=200, body=""):
        self._lines = list(lines)
        self.status_code = status_code
        self.text = body
        self.closed = False

    def iter_lines(self):
        for line in self._lines:
            yield line

    def read(self):
        return self.text.encode("utf-8")


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        self._response.closed = True
        return False


def test_build_payload_omits_zero_fields():
    payload = build_payload(_request(), stream=False)
    assert payload == {
        "model": "glm-4-6",
        "prompt": "[gMASK]<sop><|user|>\nhi\n<|assistant|>\n",
        "max_tokens": 2048,
        "temperature": 1.0,
        "stop": ["<|user|>", "<|system|>"],
    }


def test_build_payload_streaming_and_all_fields():
    req = _request(
        max_tokens=100,
        temperature=0.7,
        top_p=0.9,
        top_k=40,
        min_p=0.05,
        frequency_penalty=0.1,
        presence_penalty=0.2,
        repetition_penalty=1.1,
        stop_sequences=["###", "###", "<|user|>"],
    )
    payload = build_payload(req, stream=True)
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["top_k"] == 40
    assert payload["repetition_penalty"] == 1.1
    assert payload["stop"] == ["###", "<|user|>"]


def test_build_payload_without_stop_sequences():
    payload = build_payload(_request(stop_sequences=[], temperature=0.0), stream=False)
    assert "stop" not in payload
    assert "temperature" not in payload
    assert "stream" not in payload


def test_complete_success(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=lambda: Resp(data=OK_BODY)))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    resp = transport.execute(_request(), stream=False)

    assert resp.choices[0].text == " Hello! How can I help you?"
    assert resp.usage.prompt_tokens == 10
    post = captured["posts"][0]
    assert post["url"] == DEFAULT_COMPLETIONS_URL
    assert post["headers"]["Authorization"] == "Bearer test-token-123"
    assert post["headers"]["Content-Type"] == "application/json"
    assert post["json"]["prompt"].startswith("[gMASK]<sop>")


def test_complete_uses_request_endpoint(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=lambda: Resp(data=OK_BODY)))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)
    req = _request()
    req.endpoint = "https://custom.api.example.com/v1/completions"

    transport.complete(req)

    assert captured["posts"][0]["url"] == "https://custom.api.example.com/v1/completions"


def test_missing_api_key_fails_without_request(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=lambda: Resp(data=OK_BODY)))
    transport = NovelAITransport(api_key="", retry=NO_DELAY)

    with pytest.raises(ConfigError) as exc_info:
        transport.complete(_request())
    assert exc_info.value.code == "MISSING_API_KEY"
    assert "posts" not in captured


def test_network_errors_are_retried_then_succeed(monkeypatch):
    captured = {}
    attempts = {"n": 0}

    def post():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise httpx.ConnectError("connection refused")
        return Resp(data=OK_BODY)

    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=post))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    resp = transport.complete(_request())

    assert resp.choices[0].finish_reason == "stop"
    assert attempts["n"] == 3
    # 每次重试都重新构造请求
    assert len(captured["posts"]) == 3
    assert captured["posts"][0]["json"] == captured["posts"][2]["json"]
    assert captured["posts"][0]["json"] is not captured["posts"][2]["json"]


def test_network_errors_exhaust_retries(monkeypatch):
    captured = {}

    def post():
        raise httpx.ConnectTimeout("timed out")

    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=post))
    transport = NovelAITransport(api_key="test-token-123", retry=RetryPolicy(max_retries=2, delay=0))

    with pytest.raises(TransportError) as exc_info:
        transport.complete(_request())
    assert exc_info.value.code == "NETWORK_ERROR"
    assert exc_info.value.status_code is None
    assert len(captured["posts"]) == 3


def test_http_error_status_is_not_retried(monkeypatch):
    captured = {}
    monkeypatch.setattr(
        "httpx.Client",
        _fake_client(captured, post=lambda: Resp(status_code=500, text='{"error":"boom"}')),
    )
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    with pytest.raises(TransportError) as exc_info:
        transport.complete(_request())
    assert exc_info.value.status_code == 500
    assert exc_info.value.body == '{"error":"boom"}'
    assert len(captured["posts"]) == 1


def test_rate_limit_status(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=lambda: Resp(status_code=429, text="slow down")))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    with pytest.raises(RateLimitError) as exc_info:
        transport.complete(_request())
    assert isinstance(exc_info.value, TransportError)
    assert exc_info.value.status_code == 429


def test_invalid_json_is_protocol_error(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=lambda: Resp(data=None, text="<html>")))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    with pytest.raises(ProtocolError) as exc_info:
        transport.complete(_request())
    assert exc_info.value.code == "INVALID_RESPONSE"


def test_precancelled_token_makes_no_request(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, post=lambda: Resp(data=OK_BODY)))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)
    token = CancelToken()
    token.cancel()

    with pytest.raises(CancellationError):
        transport.complete(_request(), cancel=token)
    with pytest.raises(CancellationError):
        transport.open_stream(_request(), cancel=token)
    assert "posts" not in captured
    assert "streams" not in captured


def test_open_stream_success(monkeypatch):
    captured = {}
    response = FakeStreamResponse(
        [
            'data: {"choices":[{"text":"Hel"}]}',
            'data: {"choices":[{"text":"lo","finish_reason":"stop"}]}',
            "data: [DONE]",
        ]
    )
    monkeypatch.setattr("httpx.Client", _fake_client(captured, stream=lambda: StreamContext(response)))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    with transport.execute(_request(), stream=True) as handle:
        result = decode_sse_stream(handle.iter_lines())

    assert result.text == "Hello"
    assert response.closed is True
    call = captured["streams"][0]
    assert call["method"] == "POST"
    assert call["headers"]["Accept"] == "text/event-stream"
    assert call["json"]["stream"] is True


def test_open_stream_error_status(monkeypatch):
    captured = {}
    response = FakeStreamResponse([], status_code=401, body="unauthorized")
    monkeypatch.setattr("httpx.Client", _fake_client(captured, stream=lambda: StreamContext(response)))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    with pytest.raises(TransportError) as exc_info:
        transport.open_stream(_request())
    assert exc_info.value.status_code == 401
    assert exc_info.value.body == "unauthorized"
    assert response.closed is True
    assert len(captured["streams"]) == 1


def test_stream_cancelled_between_lines(monkeypatch):
    captured = {}
    token = CancelToken()
    response = FakeStreamResponse(
        [
            'data: {"choices":[{"text":"a"}]}',
            'data: {"choices":[{"text":"b"}]}',
            "data: [DONE]",
        ]
    )
    monkeypatch.setattr("httpx.Client", _fake_client(captured, stream=lambda: StreamContext(response)))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    received = []

    def on_token(text, done):
        received.append(text)
        token.cancel()

    with pytest.raises(CancellationError) as exc_info:
        with transport.open_stream(_request(), cancel=token) as handle:
            decode_sse_stream(handle.iter_lines(), on_token)
    assert received == ["a"]
    assert exc_info.value.partial_reply == "a"
    assert response.closed is True


def test_create_transport_from_settings():
    class SettingsStub:
        nai_api_key = "cfg-token-123"
        completions_url = "https://example.com/v1/completions"
        http_timeout = 5.0
        http_retries = 1
        http_retry_delay = 0.0

    transport = create_transport(SettingsStub())
    assert isinstance(transport, NovelAITransport)
    assert transport.endpoint == "https://example.com/v1/completions"

    explicit = create_transport(SettingsStub(), api_key="explicit-token")
    assert explicit._api_key == "explicit-token"


class UnreadableStreamResponse(FakeStreamResponse):
    def read(self):
        raise httpx.ReadError("connection reset")


@pytest.mark.parametrize("status_code, error_type", [(503, TransportError), (429, RateLimitError)])
def test_open_stream_error_status_with_unreadable_body(monkeypatch, status_code, error_type):
    captured = {}
    response = UnreadableStreamResponse([], status_code=status_code)
    monkeypatch.setattr("httpx.Client", _fake_client(captured, stream=lambda: StreamContext(response)))
    transport = NovelAITransport(api_key="test-token-123", retry=NO_DELAY)

    with pytest.raises(error_type) as exc_info:
        transport.open_stream(_request())
    assert exc_info.value.status_code == status_code
    assert exc_info.value.body == ""
    assert isinstance(exc_info.value.__context__, httpx.ReadError)
    assert response.closed is True
    assert len(captured["streams"]) == 1
