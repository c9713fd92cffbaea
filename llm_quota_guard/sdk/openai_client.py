"""
OpenAI completion transport.

Opens chat completion calls, either as one response or as a long-lived
event-stream body handed out as raw bytes. Every failure leaves this module
as a ``TransportFailure`` with a classified kind. Retries are disabled;
retrying is the caller's decision.
"""

import contextlib
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import openai
from openai import AsyncOpenAI

from ..core.errors import FailureKind, TransportFailure
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

OVERLOAD_STATUS_CODES = {429, 503, 529}
AUTH_STATUS_CODES = {401, 403}
MISSING_KEY_MESSAGE = "API key not set. Please check your settings."


@dataclass(frozen=True)
class CompletionReply:
    """Result of a non-streaming completion."""
    text: str
    usage: Optional[TokenUsage]
    request_id: Optional[str] = None
    finish_reason: Optional[str] = None


def _retry_after(response: Optional[httpx.Response]) -> Optional[float]:
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_error(exc: BaseException) -> TransportFailure:
    """Map an ``openai`` or ``httpx`` exception to a ``TransportFailure``.

    Args:
        exc: Exception raised while talking to the completion service

    Returns:
        TransportFailure carrying the failure kind and, for overload
        responses, the server's Retry-After
    """
    if isinstance(exc, TransportFailure):
        return exc

    # APITimeoutError is a subclass of APIConnectionError
    if isinstance(exc, openai.APITimeoutError):
        return TransportFailure(FailureKind.TIMEOUT, "Request timed out. Please try again.")
    if isinstance(exc, openai.APIConnectionError):
        return TransportFailure(
            FailureKind.TRANSPORT, "Network error. Please check your connection and try again."
        )

    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status in AUTH_STATUS_CODES:
            return TransportFailure(FailureKind.AUTH, "Invalid API key. Please check your settings.")
        if status in OVERLOAD_STATUS_CODES:
            return TransportFailure(
                FailureKind.REMOTE_OVERLOAD,
                "Completion service is overloaded or rate limited. Please try again later.",
                retry_after=_retry_after(exc.response),
            )
        return TransportFailure(
            FailureKind.REMOTE_ERROR, f"API request failed with status {status}: {exc.message}"
        )

    if isinstance(exc, httpx.TimeoutException):
        return TransportFailure(FailureKind.TIMEOUT, "Request timed out. Please try again.")
    if isinstance(exc, httpx.HTTPError):
        return TransportFailure(FailureKind.TRANSPORT, f"Stream interrupted: {exc}")
    if isinstance(exc, openai.APIError):
        return TransportFailure(FailureKind.REMOTE_ERROR, str(exc))

    return TransportFailure(FailureKind.TRANSPORT, str(exc))


async def _classified(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    try:
        async for chunk in chunks:
            yield chunk
    except (openai.APIError, httpx.HTTPError) as e:
        raise classify_error(e) from e


class OpenAITransport:
    """Chat completion transport on the OpenAI async client.

    The same request parameters are used for both paths so admission
    estimates line up with what is actually sent.
    """

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        presence_penalty: float = 0.1,
        frequency_penalty: float = 0.1,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the transport.

        Args:
            model: Default model name (required)
            api_key: API key; None falls back to OPENAI_API_KEY, an empty
                string means no key is configured
            base_url: Alternative API root, e.g. a compatible proxy
            timeout: Per-request network timeout in seconds
            max_tokens: Completion ceiling sent with every request
            temperature: Sampling temperature
            presence_penalty: Presence penalty
            frequency_penalty: Frequency penalty
            http_client: Preconfigured httpx client (tests, proxies)

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.presence_penalty = presence_penalty
        self.frequency_penalty = frequency_penalty
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._http_client = http_client
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        """The OpenAI client, created on first use.

        Raises:
            TransportFailure: With kind ``auth`` when no API key is available
        """
        if self._client is None:
            if self._api_key == "":
                raise TransportFailure(FailureKind.AUTH, MISSING_KEY_MESSAGE)
            try:
                self._client = AsyncOpenAI(
                    api_key=self._api_key,
                    base_url=self._base_url,
                    timeout=self._timeout,
                    max_retries=0,
                    http_client=self._http_client,
                )
            except openai.OpenAIError as e:
                raise TransportFailure(FailureKind.AUTH, MISSING_KEY_MESSAGE) from e
        return self._client

    def _params(self, messages: List[Dict[str, str]], model: Optional[str]) -> Dict[str, Any]:
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        return {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
        }

    async def complete(self, messages: List[Dict[str, str]], model: Optional[str] = None) -> CompletionReply:
        """Create a chat completion in one response.

        Raises:
            TransportFailure: On any API or network error
        """
        params = self._params(messages, model)
        try:
            response = await self.client.chat.completions.create(**params)
        except (openai.APIError, httpx.HTTPError) as e:
            raise classify_error(e) from e

        choice = response.choices[0] if response.choices else None
        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            )
        return CompletionReply(
            text=(choice.message.content or "") if choice else "",
            usage=usage,
            request_id=response.id,
            finish_reason=choice.finish_reason if choice else None,
        )

    @contextlib.asynccontextmanager
    async def open_stream(
        self, messages: List[Dict[str, str]], model: Optional[str] = None
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streaming completion and yield its raw body bytes.

        Usage reporting is requested so the final frame carries real token
        counts. The response is closed when the context exits.

        Raises:
            TransportFailure: On any API or network error, at open or while reading
        """
        params = self._params(messages, model)
        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **params,
                stream=True,
                stream_options={"include_usage": True},
            ) as response:
                logger.debug("Stream opened on %s", params["model"])
                yield _classified(response.iter_bytes())
        except (openai.APIError, httpx.HTTPError) as e:
            raise classify_error(e) from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
