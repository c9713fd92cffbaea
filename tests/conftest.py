"""
Shared test helpers: a scripted completion transport, a settable clock and
event-stream body builders.
"""

import asyncio
import contextlib
import json
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from llm_quota_guard.core.token_counter import TokenUsage
from llm_quota_guard.sdk.openai_client import CompletionReply


class MutableClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 3, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def sse_frame(content: Optional[str] = None, usage: Optional[dict] = None, finish_reason=None) -> bytes:
    """One ``data:`` line in the chat completion chunk format."""
    payload = {"choices": []}
    if content is not None or finish_reason is not None:
        delta = {"content": content} if content is not None else {}
        payload["choices"] = [{"index": 0, "delta": delta, "finish_reason": finish_reason}]
    if usage is not None:
        payload["usage"] = usage
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def sse_body(*deltas: str, usage: Optional[dict] = None, done: bool = True) -> List[bytes]:
    """A complete body: one frame per delta, an optional usage frame and the sentinel."""
    chunks = [sse_frame(delta) for delta in deltas]
    if usage is not None:
        chunks.append(sse_frame(usage=usage))
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


class FakeTransport:
    """Transport that replays scripted bodies instead of calling a service.

    Args:
        chunks: Raw body chunks yielded by ``open_stream``
        open_error: Raised when the stream is opened
        stream_error: Raised after the last chunk
        hang: Block forever after the last chunk
        delay: Seconds to sleep before each chunk
        reply: Returned by ``complete``
        complete_error: Raised by ``complete``
    """

    def __init__(
        self,
        chunks=(),
        open_error: Optional[Exception] = None,
        stream_error: Optional[Exception] = None,
        hang: bool = False,
        delay: float = 0.0,
        reply: Optional[CompletionReply] = None,
        complete_error: Optional[Exception] = None,
    ):
        self.chunks = list(chunks)
        self.open_error = open_error
        self.stream_error = stream_error
        self.hang = hang
        self.delay = delay
        self.reply = reply or CompletionReply(
            text="Hello there", usage=TokenUsage(prompt_tokens=20, completion_tokens=5)
        )
        self.complete_error = complete_error
        self.opened = 0
        self.closed = 0
        self.completed = 0
        self.aclosed = 0
        self.requests = []

    @contextlib.asynccontextmanager
    async def open_stream(self, messages, model=None):
        self.requests.append({"messages": messages, "model": model})
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1
        try:
            yield self._body()
        finally:
            self.closed += 1

    async def _body(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error
        if self.hang:
            await asyncio.Event().wait()

    async def complete(self, messages, model=None):
        self.requests.append({"messages": messages, "model": model})
        self.completed += 1
        if self.complete_error is not None:
            raise self.complete_error
        return self.reply

    async def aclose(self):
        self.aclosed += 1


class FlakyStore:
    """Key/value store whose writes can be made to fail or yield."""

    def __init__(self, fail_writes: bool = False, yield_on_write: bool = False):
        self.data = {}
        self.fail_writes = fail_writes
        self.yield_on_write = yield_on_write
        self.writes = 0

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        if self.yield_on_write:
            await asyncio.sleep(0)
        if self.fail_writes:
            raise OSError("disk full")
        self.writes += 1
        self.data[key] = json.loads(json.dumps(value))


@pytest.fixture
def clock():
    return MutableClock()
