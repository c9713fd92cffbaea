"""
Incremental decoding of the completion event stream.

The body is newline-delimited text. Meaningful lines carry a ``data: ``
prefix followed by a JSON record; ``data: [DONE]`` ends the body, blank
lines and ``:`` comments are ignored. Reads may split a line anywhere,
including inside a multi-byte character, so an incomplete trailing line is
kept until the next read.
"""

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamFrame:
    """One decoded record: a content delta, a usage report, or both."""
    delta: str = ""
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None


def parse_frame(payload: Dict[str, Any]) -> StreamFrame:
    """Extract delta, usage and finish reason from a chat completion chunk.

    Raises:
        ValueError: If the record does not have the expected shape
    """
    if not isinstance(payload, dict):
        raise ValueError("frame is not a JSON object")

    delta = ""
    finish_reason = None
    choices = payload.get("choices") or []
    if not isinstance(choices, list):
        raise ValueError("choices is not a JSON array")
    if choices:
        choice = choices[0]
        if not isinstance(choice, dict):
            raise ValueError("choice is not a JSON object")
        content = (choice.get("delta") or {}).get("content")
        if content:
            delta = str(content)
        finish_reason = choice.get("finish_reason")

    usage = None
    raw_usage = payload.get("usage")
    if raw_usage:
        prompt_tokens = int(raw_usage.get("prompt_tokens") or 0)
        completion_tokens = int(raw_usage.get("completion_tokens") or 0)
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("usage token counts cannot be negative")
        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)

    return StreamFrame(delta=delta, usage=usage, finish_reason=finish_reason)


class StreamDecoder:
    """Turns raw body bytes into ``StreamFrame`` objects.

    A malformed frame is logged and skipped; decoding continues with the
    next line.
    """

    def __init__(self):
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.skipped = 0

    def feed(self, chunk: bytes) -> List[StreamFrame]:
        """Decode every complete line in ``chunk`` plus what was buffered."""
        self._buffer += self._text.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def flush(self) -> List[StreamFrame]:
        """Decode an unterminated final line at end of body."""
        self._buffer += self._text.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._decode_lines([remainder])

    def _decode_lines(self, lines: List[str]) -> List[StreamFrame]:
        frames = []
        for line in lines:
            frame = self._decode_line(line.rstrip("\r"))
            if frame is not None:
                frames.append(frame)
        return frames

    def _decode_line(self, line: str) -> Optional[StreamFrame]:
        if not line.strip() or line.startswith(":"):
            return None
        if not line.startswith(DATA_PREFIX):
            # other event-stream fields (event:, id:, retry:) carry nothing we use
            return None

        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            self.done = True
            return None

        try:
            return parse_frame(json.loads(data))
        except (ValueError, TypeError, AttributeError, LookupError) as e:
            self.skipped += 1
            logger.warning("Skipping malformed stream frame (%s): %.200s", e, data)
            return None
