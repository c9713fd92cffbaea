"""
Unit tests for the OpenAI transport.

Runs the real async client against an httpx mock transport, so request
payloads and error mapping are exercised end to end.
"""

import json

import httpx
import pytest

from conftest import sse_body
from llm_quota_guard.core.errors import FailureKind, TransportFailure
from llm_quota_guard.core.token_counter import TokenUsage
from llm_quota_guard.sdk.openai_client import OpenAITransport, classify_error

MESSAGES = [{"role": "user", "content": "Hi"}]

COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 0,
    "model": "gpt-4",
    "choices": [
        {"index": 0, "message": {"role": "assistant", "content": "Hi!"}, "finish_reason": "stop"}
    ],
    "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11},
}


class BrokenStream(httpx.AsyncByteStream):
    """Body that drops the connection after one frame."""

    async def __aiter__(self):
        yield sse_body("par", done=False)[0]
        raise httpx.ReadError("connection reset")


def _transport(handler, **kwargs) -> OpenAITransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAITransport(
        model="gpt-4", api_key="sk-test", base_url="http://test/v1", http_client=client, **kwargs
    )


def _sse_response(chunks) -> httpx.Response:
    return httpx.Response(
        200, headers={"content-type": "text/event-stream"}, content=b"".join(chunks)
    )


async def _read_all(transport: OpenAITransport) -> bytes:
    body = b""
    async with transport.open_stream(MESSAGES) as chunks:
        async for chunk in chunks:
            body += chunk
    return body


class TestOpenAITransportInit:
    """Test construction and parameter validation."""

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="model is required"):
            OpenAITransport(model="", api_key="sk-test")

    def test_init_defaults(self):
        transport = OpenAITransport(model="gpt-4", api_key="sk-test")

        assert transport.max_tokens == 1000
        assert transport.temperature == 0.7
        assert transport.presence_penalty == 0.1
        assert transport.frequency_penalty == 0.1
        assert transport.client.max_retries == 0

    @pytest.mark.asyncio
    async def test_missing_key_fails_as_auth_on_request(self):
        """Verify construction succeeds without a key and requests fail as auth."""
        calls = []
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: calls.append(request)))
        transport = OpenAITransport(model="gpt-4", api_key="", http_client=client)

        with pytest.raises(TransportFailure) as exc_info:
            await transport.complete(MESSAGES)
        assert exc_info.value.kind == FailureKind.AUTH

        with pytest.raises(TransportFailure) as exc_info:
            async with transport.open_stream(MESSAGES):
                pass
        assert exc_info.value.kind == FailureKind.AUTH

        assert calls == []
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_aclose_before_first_request(self):
        transport = OpenAITransport(model="gpt-4", api_key="")
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self):
        transport = _transport(lambda request: httpx.Response(200, json=COMPLETION))
        with pytest.raises(ValueError, match="messages is required"):
            await transport.complete([])


class TestComplete:
    """Test the non-streaming call."""

    @pytest.mark.asyncio
    async def test_complete_returns_text_and_usage(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["authorization"]
            return httpx.Response(200, json=COMPLETION)

        reply = await _transport(handler).complete(MESSAGES)

        assert reply.text == "Hi!"
        assert reply.usage == TokenUsage(prompt_tokens=9, completion_tokens=2)
        assert reply.finish_reason == "stop"
        assert reply.request_id == "chatcmpl-1"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "gpt-4"
        assert seen["body"]["max_tokens"] == 1000
        assert seen["body"]["temperature"] == 0.7
        assert "stream" not in seen["body"]

    @pytest.mark.asyncio
    async def test_model_override(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=COMPLETION)

        await _transport(handler).complete(MESSAGES, model="gpt-3.5-turbo")

        assert seen["body"]["model"] == "gpt-3.5-turbo"

    @pytest.mark.asyncio
    async def test_complete_auth_error(self):
        transport = _transport(
            lambda request: httpx.Response(401, json={"error": {"message": "bad key"}})
        )

        with pytest.raises(TransportFailure) as exc_info:
            await transport.complete(MESSAGES)

        assert exc_info.value.kind == FailureKind.AUTH


class TestOpenStream:
    """Test the streaming call."""

    @pytest.mark.asyncio
    async def test_stream_yields_raw_body(self):
        chunks = sse_body("Hel", "lo", usage={"prompt_tokens": 4, "completion_tokens": 2})
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return _sse_response(chunks)

        body = await _read_all(_transport(handler))

        assert body == b"".join(chunks)
        assert seen["body"]["stream"] is True
        assert seen["body"]["stream_options"] == {"include_usage": True}
        assert seen["body"]["presence_penalty"] == 0.1
        assert seen["body"]["frequency_penalty"] == 0.1

    @pytest.mark.asyncio
    async def test_overload_with_retry_after(self):
        transport = _transport(
            lambda request: httpx.Response(
                429, headers={"retry-after": "7"}, json={"error": {"message": "slow down"}}
            )
        )

        with pytest.raises(TransportFailure) as exc_info:
            await _read_all(transport)

        assert exc_info.value.kind == FailureKind.REMOTE_OVERLOAD
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,kind", [
        (401, FailureKind.AUTH),
        (403, FailureKind.AUTH),
        (503, FailureKind.REMOTE_OVERLOAD),
        (529, FailureKind.REMOTE_OVERLOAD),
        (400, FailureKind.REMOTE_ERROR),
        (500, FailureKind.REMOTE_ERROR),
    ])
    async def test_status_classification(self, status, kind):
        transport = _transport(
            lambda request: httpx.Response(status, json={"error": {"message": "nope"}})
        )

        with pytest.raises(TransportFailure) as exc_info:
            await _read_all(transport)

        assert exc_info.value.kind == kind

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(TransportFailure) as exc_info:
            await _read_all(_transport(handler))

        assert exc_info.value.kind == FailureKind.TRANSPORT

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow")

        with pytest.raises(TransportFailure) as exc_info:
            await _read_all(_transport(handler))

        assert exc_info.value.kind == FailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_dropped_mid_stream(self):
        transport = _transport(
            lambda request: httpx.Response(
                200, headers={"content-type": "text/event-stream"}, stream=BrokenStream()
            )
        )
        received = []

        with pytest.raises(TransportFailure) as exc_info:
            async with transport.open_stream(MESSAGES) as chunks:
                async for chunk in chunks:
                    received.append(chunk)

        assert exc_info.value.kind == FailureKind.TRANSPORT
        assert b"par" in b"".join(received)


class TestClassifyError:
    """Test direct exception mapping."""

    def test_transport_failure_passes_through(self):
        failure = TransportFailure(FailureKind.AUTH, "x")
        assert classify_error(failure) is failure

    def test_httpx_timeout(self):
        assert classify_error(httpx.ReadTimeout("slow")).kind == FailureKind.TIMEOUT

    def test_httpx_protocol_error(self):
        failure = classify_error(httpx.RemoteProtocolError("peer closed"))
        assert failure.kind == FailureKind.TRANSPORT
        assert "peer closed" in str(failure)

    def test_unknown_exception(self):
        assert classify_error(RuntimeError("boom")).kind == FailureKind.TRANSPORT
