"""
Streaming completion coordination.

Runs one request through admission, transport, incremental decoding and
ledger reconciliation, and reports it to a listener as chunk events
followed by exactly one terminal event.

Billing at settlement:
- Succeeded: reported usage, or the approximation if none was reported
- Aborted after the body opened: whatever accrued (prompt + partial text)
- Failed mid-stream: only if some text arrived, since the remote side
  has then most likely billed the request
- Denied, aborted or failed before the body opened: nothing
"""

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from .admission import AdmissionController, AdmissionDecision, AdmissionRequest
from .conversation import ConversationBook, PageContext
from .decoder import StreamDecoder, StreamFrame
from .errors import FailureKind, StreamCancelled, StreamTimeout, TransportFailure
from .ledger import UsageLedger
from .session import StreamRegistry, StreamSession, StreamState
from .token_counter import TokenUsage, approximate_token_count

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT_SECONDS = 30.0


class StreamEvent:
    """Base class of everything a stream reports."""
    terminal = False
    stream_id: str


@dataclass(frozen=True)
class StreamChunk(StreamEvent):
    """A content delta and the text accumulated so far."""
    stream_id: str
    delta: str
    accumulated: str


@dataclass(frozen=True)
class StreamSettled(StreamEvent):
    """Stream completed normally."""
    terminal = True
    stream_id: str
    final_text: str
    usage: TokenUsage
    cost: float


@dataclass(frozen=True)
class StreamError(StreamEvent):
    """Stream denied, failed or cancelled.

    ``usage`` is set when the request was billed anyway.
    """
    terminal = True
    stream_id: str
    kind: FailureKind
    message: str
    retry_after: Optional[float] = None
    partial_text: str = ""
    usage: Optional[TokenUsage] = None


StreamListener = Callable[[StreamEvent], None]


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of a non-streaming completion."""
    success: bool
    text: str = ""
    usage: Optional[TokenUsage] = None
    cost: float = 0.0
    conversation_length: int = 0
    kind: Optional[FailureKind] = None
    error: str = ""
    retry_after: Optional[float] = None

    @classmethod
    def failure(cls, kind: FailureKind, message: str, retry_after: Optional[float] = None) -> "CompletionResult":
        return cls(success=False, kind=kind, error=message, retry_after=retry_after)


def estimate_usage(prompt_text: str, completion_text: str) -> TokenUsage:
    """Approximate usage when the remote service reported none."""
    return TokenUsage(
        prompt_tokens=approximate_token_count(prompt_text),
        completion_tokens=approximate_token_count(completion_text),
    )


class StreamingCoordinator:
    """Orchestrates admission, transport, decoding and usage reconciliation.

    Never retries. Every stream ends with exactly one terminal event, and a
    stream is removed from the registry once that event has been emitted.
    """

    def __init__(
        self,
        transport,
        ledger: UsageLedger,
        admission: AdmissionController,
        registry: Optional[StreamRegistry] = None,
        conversations: Optional[ConversationBook] = None,
        model: str = "gpt-4",
        estimated_completion_tokens: int = 1000,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        listener: Optional[StreamListener] = None,
    ):
        """
        Args:
            transport: Object with ``complete(messages, model)`` and the async
                context manager ``open_stream(messages, model)``
            ledger: Usage ledger written at settlement
            admission: Admission controller consulted before any transport call
            registry: Registry owning live sessions
            conversations: Message history used to build request payloads
            model: Model requests run on
            estimated_completion_tokens: Completion estimate for admission
            idle_timeout: Seconds without data before a stream fails
            listener: Default receiver of stream events
        """
        self.transport = transport
        self.ledger = ledger
        self.admission = admission
        self.registry = registry if registry is not None else StreamRegistry()
        self.conversations = conversations if conversations is not None else ConversationBook()
        self.model = model
        self.estimated_completion_tokens = estimated_completion_tokens
        self.idle_timeout = idle_timeout
        self.listener = listener
        self._tasks: Dict[str, asyncio.Task] = {}

    async def check_admission(
        self, model: str, prompt_text: str, estimated_completion_tokens: Optional[int] = None
    ) -> AdmissionDecision:
        if estimated_completion_tokens is None:
            estimated_completion_tokens = self.estimated_completion_tokens
        return await self.admission.check(
            AdmissionRequest(model, prompt_text, estimated_completion_tokens)
        )

    async def generate(
        self,
        conversation_id: str,
        user_message: str,
        context: Optional[PageContext] = None,
        streaming: bool = False,
        listener: Optional[StreamListener] = None,
    ) -> Union[CompletionResult, str]:
        """Run a completion.

        Returns:
            CompletionResult when ``streaming`` is False, otherwise the id
            of the started stream
        """
        if streaming:
            return await self.start_stream(conversation_id, user_message, context, listener)
        return await self.complete(conversation_id, user_message, context)

    async def complete(
        self, conversation_id: str, user_message: str, context: Optional[PageContext] = None
    ) -> CompletionResult:
        """Non-streaming completion, gated by admission and recorded with server usage."""
        messages = self.conversations.build_messages(conversation_id, user_message, context)
        prompt_text = json.dumps(messages)

        decision = await self.check_admission(self.model, prompt_text)
        if not decision.allowed:
            return CompletionResult.failure(decision.kind, decision.reason, decision.retry_after)

        try:
            reply = await self.transport.complete(messages, model=self.model)
        except TransportFailure as e:
            logger.warning("Completion failed (%s): %s", e.kind.value, e)
            return CompletionResult.failure(e.kind, str(e), e.retry_after)

        usage = reply.usage
        if usage is None:
            logger.warning("Completion response carried no usage, recording an estimate")
            usage = estimate_usage(prompt_text, reply.text)
        if reply.finish_reason == "length":
            logger.warning("Response truncated due to max_tokens limit")

        cost = await self.ledger.record(self.model, usage)
        length = self.conversations.add_reply(conversation_id, reply.text)
        return CompletionResult(
            success=True, text=reply.text, usage=usage, cost=cost, conversation_length=length
        )

    async def start_stream(
        self,
        conversation_id: str,
        user_message: str,
        context: Optional[PageContext] = None,
        listener: Optional[StreamListener] = None,
    ) -> str:
        """Start a stream in the background and return its id.

        Events go to ``listener`` (or the coordinator's default listener).
        """
        session = self.registry.create(conversation_id, self.model)
        self.registry.reserve(session)
        task = asyncio.create_task(
            self._run(session, user_message, context, listener or self.listener)
        )
        self._tasks[session.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session.id, None))
        return session.id

    async def run_stream(
        self,
        conversation_id: str,
        user_message: str,
        context: Optional[PageContext] = None,
        listener: Optional[StreamListener] = None,
    ) -> StreamEvent:
        """Run a stream to completion and return its terminal event."""
        session = self.registry.create(conversation_id, self.model)
        self.registry.reserve(session)
        return await self._run(session, user_message, context, listener or self.listener)

    async def wait_stream(self, stream_id: str) -> Optional[StreamEvent]:
        """Wait for a background stream; None if it is unknown or already finished."""
        task = self._tasks.get(stream_id)
        if task is None:
            return None
        return await task

    def cancel_stream(self, stream_id: str) -> bool:
        return self.registry.cancel(stream_id)

    async def aclose(self) -> None:
        """Cancel every live stream and wait for them to settle."""
        self.registry.cancel_all()
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _run(
        self,
        session: StreamSession,
        user_message: str,
        context: Optional[PageContext],
        listener: Optional[StreamListener],
    ) -> StreamEvent:
        def emit(event: StreamEvent) -> StreamEvent:
            if listener is not None:
                try:
                    listener(event)
                except Exception:
                    logger.exception("Stream listener failed on %s", type(event).__name__)
            return event

        try:
            messages = self.conversations.build_messages(session.owner_id, user_message, context)
            prompt_text = json.dumps(messages)

            decision = await self.check_admission(session.model, prompt_text)
            if not decision.allowed:
                session.advance(StreamState.FAILED)
                return emit(StreamError(
                    session.id, decision.kind, decision.reason, retry_after=decision.retry_after
                ))

            session.estimated_usage = decision.estimated_usage
            session.advance(StreamState.ADMITTED)
            self.registry.register(session)
            try:
                return await self._drive(session, messages, prompt_text, emit)
            except Exception as e:
                # Last resort so the caller still gets its single terminal event
                logger.exception("Stream %s failed unexpectedly", session.id)
                if session.state == StreamState.STREAMING:
                    session.advance(StreamState.SETTLING)
                if not session.state.is_terminal:
                    session.advance(StreamState.FAILED)
                return emit(StreamError(
                    session.id, FailureKind.TRANSPORT, str(e), partial_text=session.accumulated_text
                ))
        finally:
            self.registry.remove(session.id)

    async def _drive(self, session, messages, prompt_text, emit) -> StreamEvent:
        token = session.cancellation_token
        if token.is_cancelled:
            session.advance(StreamState.ABORTED)
            return emit(StreamError(session.id, FailureKind.CANCELLED, "Stream aborted by user"))

        session.advance(StreamState.CONNECTING)
        async with contextlib.AsyncExitStack() as stack:
            try:
                chunks = await token.guard(
                    stack.enter_async_context(self.transport.open_stream(messages, model=session.model))
                )
            except StreamCancelled:
                session.advance(StreamState.ABORTED)
                return emit(StreamError(session.id, FailureKind.CANCELLED, "Stream aborted by user"))
            except TransportFailure as e:
                logger.warning("Stream %s could not connect (%s): %s", session.id, e.kind.value, e)
                session.advance(StreamState.FAILED)
                return emit(StreamError(session.id, e.kind, str(e), retry_after=e.retry_after))

            session.advance(StreamState.STREAMING)
            outcome, failure = await self._consume(session, chunks, emit)

        return await self._settle(session, prompt_text, outcome, failure, emit)

    async def _consume(self, session, chunks, emit):
        token = session.cancellation_token
        decoder = StreamDecoder()
        try:
            while True:
                chunk = await token.next_chunk(chunks, timeout=self.idle_timeout)
                if chunk is None:
                    break
                for frame in decoder.feed(chunk):
                    self._apply(session, frame, emit)
            for frame in decoder.flush():
                self._apply(session, frame, emit)
        except StreamCancelled:
            return StreamState.ABORTED, None
        except StreamTimeout as e:
            return StreamState.FAILED, TransportFailure(FailureKind.TIMEOUT, f"Stream timeout - {e}")
        except TransportFailure as e:
            return StreamState.FAILED, e
        return StreamState.SUCCEEDED, None

    def _apply(self, session: StreamSession, frame: StreamFrame, emit) -> None:
        # a cancel issued from a listener stops delivery of the rest of the batch
        session.cancellation_token.raise_if_cancelled()
        if frame.delta:
            accumulated = session.append(frame.delta)
            emit(StreamChunk(session.id, frame.delta, accumulated))
        if frame.usage is not None:
            session.actual_usage = frame.usage
            session.estimated_usage = frame.usage
        if frame.finish_reason == "length":
            logger.warning("Stream %s truncated due to max_tokens limit", session.id)

    async def _settle(
        self,
        session: StreamSession,
        prompt_text: str,
        outcome: StreamState,
        failure: Optional[TransportFailure],
        emit,
    ) -> StreamEvent:
        session.advance(StreamState.SETTLING)

        usage = session.actual_usage
        if usage is None:
            usage = estimate_usage(prompt_text, session.accumulated_text)
            session.actual_usage = usage

        billable = outcome != StreamState.FAILED or bool(session.accumulated_text)
        cost = 0.0
        if billable:
            cost = await self.ledger.record(session.model, usage)

        session.advance(outcome)
        logger.info(
            "Stream %s %s (%d chars, %s tokens%s)",
            session.id, outcome.value, len(session.accumulated_text), usage.total_tokens,
            "" if billable else ", not billed",
        )

        if outcome == StreamState.SUCCEEDED:
            self.conversations.add_reply(session.owner_id, session.accumulated_text)
            return emit(StreamSettled(session.id, session.accumulated_text, usage, cost))

        if outcome == StreamState.ABORTED:
            return emit(StreamError(
                session.id, FailureKind.CANCELLED, "Stream aborted by user",
                partial_text=session.accumulated_text, usage=usage,
            ))

        return emit(StreamError(
            session.id, failure.kind, str(failure), retry_after=failure.retry_after,
            partial_text=session.accumulated_text, usage=usage if billable else None,
        ))
