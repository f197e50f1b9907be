"""
Tests for the DeepSeek backend and the retry wrapper.
The upstream is simulated with httpx.MockTransport, no network needed.
"""

import asyncio
import json

import httpx
import pytest

from conftest import FakeBackend
from moodrelay.backends import make_backend
from moodrelay.backends.deepseek import DeepSeekBackend, _delta_from_chunk
from moodrelay.backends.retry_wrapper import RetryingBackend
from moodrelay.errors import (
    ConfigurationError,
    UpstreamConnectionError,
    UpstreamFormatError,
    UpstreamHTTPError,
    UpstreamTimeoutError,
)

MESSAGES = [{"role": "system", "content": "be kind"}, {"role": "user", "content": "hi"}]


def _backend(handler, api_key="sk-test", **kwargs):
    return DeepSeekBackend(
        url="https://upstream.test/v1",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _completion(content):
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _sse_body(*events):
    return "".join(f"data: {e}\n\n" for e in events).encode()


def _chunk(content):
    return json.dumps({"choices": [{"delta": {"content": content}}]})


# ---------------------------------------------------------------------------
# Buffered completion
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_complete_returns_content_and_sends_request():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("Take a breath."))

    backend = _backend(handler)
    reply = await backend.complete(MESSAGES, temperature=0.3, max_tokens=300)

    assert reply == "Take a breath."
    assert seen["url"] == "https://upstream.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert body["model"] == "deepseek-chat"
    assert body["messages"] == MESSAGES
    assert body["temperature"] == 0.3
    assert body["max_tokens"] == 300
    assert body["stream"] is False
    assert body["presence_penalty"] == 0.6
    assert body["frequency_penalty"] == 0.6


@pytest.mark.asyncio
async def test_penalties_can_be_omitted():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion("ok"))

    backend = _backend(handler, presence_penalty=None, frequency_penalty=None)
    await backend.complete(MESSAGES, 0.6, 10)
    assert "presence_penalty" not in seen["body"]
    assert "frequency_penalty" not in seen["body"]


@pytest.mark.asyncio
async def test_missing_key_is_configuration_error_without_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=_completion("never"))

    backend = _backend(handler, api_key="  ")
    assert backend.configured is False
    with pytest.raises(ConfigurationError):
        await backend.complete(MESSAGES, 0.6, 10)
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status,kind,reported", [
    (401, "upstream_auth_failed", 502),
    (403, "upstream_auth_failed", 502),
    (429, "rate_limited", 429),
    (500, "upstream_unavailable", 503),
    (503, "upstream_unavailable", 503),
    (400, "upstream_error", 502),
])
async def test_http_errors_are_mapped(status, kind, reported):
    backend = _backend(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(UpstreamHTTPError) as exc_info:
        await backend.complete(MESSAGES, 0.6, 10)
    err = exc_info.value
    assert err.kind == kind
    assert err.status_code == reported
    assert err.details["upstreamStatus"] == status


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"choices": []},
    {"choices": [{"message": {}}]},
    {"nothing": True},
    {"choices": [{"message": {"content": 42}}]},
])
async def test_missing_content_is_format_error(payload):
    backend = _backend(lambda request: httpx.Response(200, json=payload))
    with pytest.raises(UpstreamFormatError):
        await backend.complete(MESSAGES, 0.6, 10)


@pytest.mark.asyncio
async def test_non_json_body_is_format_error():
    backend = _backend(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(UpstreamFormatError):
        await backend.complete(MESSAGES, 0.6, 10)


@pytest.mark.asyncio
async def test_timeout_is_mapped():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(UpstreamTimeoutError) as exc_info:
        await _backend(handler).complete(MESSAGES, 0.6, 10)
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_connection_failure_is_mapped():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamConnectionError) as exc_info:
        await _backend(handler).complete(MESSAGES, 0.6, 10)
    assert exc_info.value.status_code == 503


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_yields_deltas_in_order():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=_sse_body(_chunk("Hel"), _chunk("lo"), _chunk(" there"), "[DONE]"),
            headers={"content-type": "text/event-stream"},
        )

    deltas = [d async for d in _backend(handler).stream(MESSAGES, 0.2, 500)]
    assert deltas == ["Hel", "lo", " there"]
    assert seen["body"]["stream"] is True
    assert seen["body"]["max_tokens"] == 500


@pytest.mark.asyncio
async def test_stream_skips_malformed_and_empty_fragments():
    body = _sse_body(
        _chunk("a"),
        "{not json",
        json.dumps({"choices": [{"delta": {}}]}),
        _chunk(""),
        _chunk("b"),
        "[DONE]",
    ) + b": keep-alive comment\n\n"
    backend = _backend(lambda request: httpx.Response(200, content=body))
    assert [d async for d in backend.stream(MESSAGES, 0.6, 10)] == ["a", "b"]


@pytest.mark.asyncio
async def test_stream_stops_at_done():
    body = _sse_body(_chunk("a"), "[DONE]", _chunk("ignored"))
    backend = _backend(lambda request: httpx.Response(200, content=body))
    assert [d async for d in backend.stream(MESSAGES, 0.6, 10)] == ["a"]


@pytest.mark.asyncio
async def test_stream_http_error_raises_before_any_delta():
    backend = _backend(lambda request: httpx.Response(429, json={"error": "slow down"}))
    with pytest.raises(UpstreamHTTPError) as exc_info:
        async for _ in backend.stream(MESSAGES, 0.6, 10):
            pytest.fail("no delta expected")
    assert exc_info.value.kind == "rate_limited"
    assert "slow down" in exc_info.value.details["body"]


@pytest.mark.asyncio
async def test_stream_timeout_is_mapped():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(UpstreamTimeoutError):
        async for _ in _backend(handler).stream(MESSAGES, 0.6, 10):
            pass


async def _trickle(count, delay):
    for i in range(count):
        await asyncio.sleep(delay)
        yield f"data: {_chunk(str(i))}\n\n".encode()
    yield b"data: [DONE]\n\n"


@pytest.mark.asyncio
async def test_stream_total_deadline():
    """A stream that keeps trickling deltas is still cut off after the timeout."""
    backend = _backend(lambda request: httpx.Response(200, content=_trickle(6, 0.2)), timeout=0.5)
    deltas = []
    with pytest.raises(UpstreamTimeoutError) as exc_info:
        async for delta in backend.stream(MESSAGES, 0.6, 10):
            deltas.append(delta)
    assert len(deltas) < 6
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_slow_stream_through_relay_commits_nothing(make_relay, store):
    backend = _backend(lambda request: httpx.Response(200, content=_trickle(6, 0.2)), timeout=0.5)
    relay = make_relay(backend)
    relay.submit("c1", "hi", "happy")

    events = [e async for e in relay.stream_reply("c1")]
    assert events[-1].type == "error"
    assert events[-1].kind == "upstream_timeout"
    assert "done" not in [e.type for e in events]
    assert store.get("c1") is None


@pytest.mark.asyncio
async def test_stream_decoding_error_is_mapped():
    def handler(request):
        raise httpx.DecodingError("bad gzip", request=request)

    with pytest.raises(UpstreamFormatError) as exc_info:
        async for _ in _backend(handler).stream(MESSAGES, 0.6, 10):
            pass
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_complete_decoding_error_is_mapped():
    def handler(request):
        raise httpx.DecodingError("bad gzip", request=request)

    with pytest.raises(UpstreamFormatError):
        await _backend(handler).complete(MESSAGES, 0.6, 10)


@pytest.mark.asyncio
async def test_other_httpx_errors_are_mapped():
    def handler(request):
        raise httpx.TooManyRedirects("loop", request=request)

    with pytest.raises(UpstreamConnectionError):
        await _backend(handler).complete(MESSAGES, 0.6, 10)
    with pytest.raises(UpstreamConnectionError):
        async for _ in _backend(handler).stream(MESSAGES, 0.6, 10):
            pass


def test_delta_from_chunk():
    assert _delta_from_chunk({"choices": [{"delta": {"content": "x"}}]}) == "x"
    assert _delta_from_chunk({"choices": []}) == ""
    assert _delta_from_chunk({}) == ""


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_check():
    def handler(request):
        assert request.url.path == "/v1/models"
        return httpx.Response(200, json={"data": []})

    assert await _backend(handler).health_check() is True
    assert await _backend(handler, api_key="").health_check() is False


# ---------------------------------------------------------------------------
# Retry wrapper
# ---------------------------------------------------------------------------

class FlakyBackend(FakeBackend):
    """Fails with `error` for the first `failures` calls, then behaves."""

    def __init__(self, failures, error, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.fail_with = error

    async def complete(self, messages, temperature, max_tokens):
        self.calls.append({"mode": "complete"})
        if len(self.calls) <= self.failures:
            raise self.fail_with
        return self.reply

    async def stream(self, messages, temperature, max_tokens):
        self.calls.append({"mode": "stream"})
        if len(self.calls) <= self.failures:
            raise self.fail_with
        for delta in self.deltas:
            yield delta


@pytest.mark.asyncio
async def test_retry_recovers_from_connection_errors():
    inner = FlakyBackend(2, UpstreamConnectionError("down"), reply="finally")
    backend = RetryingBackend(inner, max_retries=2, backoff=0)
    assert await backend.complete(MESSAGES, 0.6, 10) == "finally"
    assert len(inner.calls) == 3


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_retries():
    inner = FlakyBackend(5, UpstreamConnectionError("down"), reply="never")
    backend = RetryingBackend(inner, max_retries=2, backoff=0)
    with pytest.raises(UpstreamConnectionError):
        await backend.complete(MESSAGES, 0.6, 10)
    assert len(inner.calls) == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    UpstreamTimeoutError("slow"),
    UpstreamHTTPError(500),
    UpstreamFormatError("bad"),
])
async def test_retry_does_not_retry_other_errors(error):
    inner = FlakyBackend(1, error, reply="never")
    backend = RetryingBackend(inner, max_retries=2, backoff=0)
    with pytest.raises(type(error)):
        await backend.complete(MESSAGES, 0.6, 10)
    assert len(inner.calls) == 1


@pytest.mark.asyncio
async def test_retry_stream_before_first_delta():
    inner = FlakyBackend(1, UpstreamConnectionError("down"), deltas=["a", "b"])
    backend = RetryingBackend(inner, max_retries=2, backoff=0)
    assert [d async for d in backend.stream(MESSAGES, 0.6, 10)] == ["a", "b"]
    assert len(inner.calls) == 2


@pytest.mark.asyncio
async def test_retry_stream_never_after_a_delta():
    inner = FakeBackend(deltas=["a"], error=UpstreamConnectionError("dropped"))
    backend = RetryingBackend(inner, max_retries=2, backoff=0)
    received = []
    with pytest.raises(UpstreamConnectionError):
        async for delta in backend.stream(MESSAGES, 0.6, 10):
            received.append(delta)
    assert received == ["a"]
    assert len(inner.calls) == 1


def test_retry_wrapper_delegates_configured():
    assert RetryingBackend(FakeBackend(configured=False)).configured is False
    assert RetryingBackend(FakeBackend()).configured is True


def test_make_backend_wraps_when_retries_enabled():
    cfg = {"url": "https://upstream.test/v1/", "api_key": "sk", "max_retries": 2}
    backend = make_backend(cfg)
    assert isinstance(backend, RetryingBackend)
    assert backend.backend.url == "https://upstream.test/v1"

    plain = make_backend({**cfg, "max_retries": 0})
    assert isinstance(plain, DeepSeekBackend)
