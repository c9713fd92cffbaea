"""
Token counting and usage tracking.

Holds the token usage value type and the approximate counter used when the
remote service does not report real figures.
"""

import math
from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage for a single request.
    
    Either reported by the remote service or produced by
    ``approximate_token_count`` when no report arrived.
    """
    prompt_tokens: int
    completion_tokens: int
    
    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def approximate_token_count(text: str) -> int:
    """Estimate the token count of a text.
    
    This is a heuristic, not a tokenizer: it averages a word-based estimate
    (1.3 tokens per word) with a character-based one (4 characters per
    token). Swap in a real tokenizer here if exact parity with the remote
    service's accounting is required.
    
    Args:
        text: Text to estimate
        
    Returns:
        ceil((words * 1.3 + chars / 4) / 2), or 0 for empty text
    """
    if not text:
        return 0
    
    word_estimate = len(text.split()) * 1.3
    char_estimate = len(text) / 4
    return math.ceil((word_estimate + char_estimate) / 2)
