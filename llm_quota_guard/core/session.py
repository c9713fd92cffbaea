"""
Stream sessions and their registry.

A session is one in-flight, cancellable completion stream. Its state only
moves forward through a fixed transition table; the registry owns every
session and its cancellation token.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Dict, FrozenSet, List, Optional

from .errors import IllegalTransitionError, StreamCancelled, StreamTimeout
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


class StreamState(Enum):
    """Lifecycle of a stream session."""
    CREATED = "created"
    ADMITTED = "admitted"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    SETTLING = "settling"
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.SUCCEEDED, StreamState.ABORTED, StreamState.FAILED)


# Forward-only. Connection failures skip SETTLING because nothing was billed.
LEGAL_TRANSITIONS: Dict[StreamState, FrozenSet[StreamState]] = {
    StreamState.CREATED: frozenset({StreamState.ADMITTED, StreamState.FAILED}),
    StreamState.ADMITTED: frozenset({StreamState.CONNECTING, StreamState.ABORTED, StreamState.FAILED}),
    StreamState.CONNECTING: frozenset({
        StreamState.STREAMING, StreamState.ABORTED, StreamState.FAILED,
    }),
    StreamState.STREAMING: frozenset({StreamState.SETTLING}),
    StreamState.SETTLING: frozenset({
        StreamState.SUCCEEDED, StreamState.ABORTED, StreamState.FAILED,
    }),
    StreamState.SUCCEEDED: frozenset(),
    StreamState.ABORTED: frozenset(),
    StreamState.FAILED: frozenset(),
}


async def _await_next(iterator):
    # None marks the end of the body
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class CancellationToken:
    """Cooperative cancellation flag checked at every suspension point."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled("stream cancelled")

    async def guard(self, awaitable: Awaitable, timeout: Optional[float] = None) -> Any:
        """Await ``awaitable`` unless the token is cancelled or ``timeout`` passes first.

        The pending awaitable is cancelled when it loses the race. A result
        that is ready takes precedence over a cancellation that arrived at
        the same time; the token is seen again at the next suspension point.

        Raises:
            StreamCancelled: If the token was cancelled first
            StreamTimeout: If nothing happened within ``timeout`` seconds
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await work
        if self.is_cancelled:
            raise StreamCancelled("stream cancelled")
        raise StreamTimeout(f"no data received for {timeout:g} seconds")

    async def next_chunk(self, iterator, timeout: Optional[float] = None):
        """Read the next item of an async iterator, or None at its end."""
        return await self.guard(_await_next(iterator), timeout)


@dataclass
class StreamSession:
    """One in-flight completion stream.

    Created by ``StreamRegistry.create``; mutated only while the registry
    holds it.
    """
    id: str
    owner_id: str
    model: str
    cancellation_token: CancellationToken = field(default_factory=CancellationToken)
    state: StreamState = StreamState.CREATED
    accumulated_text: str = ""
    estimated_usage: Optional[TokenUsage] = None
    actual_usage: Optional[TokenUsage] = None
    started_at: float = field(default_factory=time.time)

    def advance(self, target: StreamState) -> None:
        """Move to ``target``.

        Raises:
            IllegalTransitionError: If ``target`` is not reachable from the current state
        """
        if target not in LEGAL_TRANSITIONS[self.state]:
            raise IllegalTransitionError(self.id, self.state, target)
        logger.debug("Stream %s: %s -> %s", self.id, self.state.name, target.name)
        self.state = target

    def append(self, delta: str) -> str:
        self.accumulated_text += delta
        return self.accumulated_text

    @property
    def accepts_cancellation(self) -> bool:
        return self.state in (
            StreamState.CREATED, StreamState.ADMITTED, StreamState.CONNECTING, StreamState.STREAMING,
        )

    def describe(self) -> Dict[str, Any]:
        now = time.time()
        return {
            "stream_id": self.id,
            "owner_id": self.owner_id,
            "model": self.model,
            "state": self.state.value,
            "started_at": self.started_at,
            "duration": now - self.started_at,
        }


class StreamRegistry:
    """Owns the live stream sessions and their cancellation tokens."""

    def __init__(self):
        self._sessions: Dict[str, StreamSession] = {}
        # sessions still waiting on admission; cancellable but not yet live
        self._pending: Dict[str, StreamSession] = {}

    def create(self, owner_id: str, model: str, stream_id: Optional[str] = None) -> StreamSession:
        """Allocate an unregistered session with a fresh cancellation token."""
        return StreamSession(
            id=stream_id or f"{owner_id}-{uuid.uuid4().hex[:12]}",
            owner_id=owner_id,
            model=model,
        )

    def reserve(self, session: StreamSession) -> None:
        """Hold a session that is awaiting admission so its id can already be cancelled."""
        if session.id in self._sessions or session.id in self._pending:
            raise ValueError(f"Stream {session.id} is already registered")
        self._pending[session.id] = session

    def register(self, session: StreamSession) -> None:
        if session.id in self._sessions:
            raise ValueError(f"Stream {session.id} is already registered")
        self._pending.pop(session.id, None)
        self._sessions[session.id] = session

    def get(self, stream_id: str) -> Optional[StreamSession]:
        return self._sessions.get(stream_id) or self._pending.get(stream_id)

    def remove(self, stream_id: str) -> Optional[StreamSession]:
        pending = self._pending.pop(stream_id, None)
        return self._sessions.pop(stream_id, None) or pending

    def cancel(self, stream_id: str) -> bool:
        """Request cancellation of a stream.

        Idempotent. A session already settling ignores the request.

        Returns:
            True if a live session accepted the cancellation
        """
        session = self.get(stream_id)
        if session is None or not session.accepts_cancellation:
            return False
        session.cancellation_token.cancel()
        logger.info("Stream %s cancellation requested", stream_id)
        return True

    def cancel_owner(self, owner_id: str) -> int:
        """Cancel every live stream of one owner. Returns how many accepted."""
        return sum(
            self.cancel(session.id)
            for session in list(self._pending.values()) + list(self._sessions.values())
            if session.owner_id == owner_id
        )

    def cancel_all(self) -> int:
        """Cancel every pending and live stream. Returns how many accepted."""
        return sum(self.cancel(stream_id) for stream_id in list(self._pending) + list(self._sessions))

    def active_streams(self) -> List[Dict[str, Any]]:
        return [session.describe() for session in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, stream_id: str) -> bool:
        return stream_id in self._sessions
