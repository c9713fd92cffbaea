"""
Failure kinds and exception hierarchy.

Every denial or failure reported to a caller carries one ``FailureKind``.
"""

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Machine-readable reason a request was denied or failed."""
    RATE = "rate"
    DAILY_TOKENS = "daily_tokens"
    DAILY_REQUESTS = "daily_requests"
    DAILY_COST = "daily_cost"
    MONTHLY_TOKENS = "monthly_tokens"
    MONTHLY_REQUESTS = "monthly_requests"
    MONTHLY_COST = "monthly_cost"
    CONTEXT = "context"
    TRANSPORT = "transport"
    AUTH = "auth"
    REMOTE_OVERLOAD = "remote_overload"
    REMOTE_ERROR = "remote_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class QuotaGuardError(Exception):
    """Base exception for all errors raised by this package."""


class TransportFailure(QuotaGuardError):
    """Raised when the completion transport fails.

    Attributes:
        kind: Classified cause of the failure.
        retry_after: Seconds the remote side asked us to wait, if any.
    """

    def __init__(self, kind: FailureKind, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.kind = kind
        self.retry_after = retry_after


class StreamCancelled(QuotaGuardError):
    """Raised at a suspension point once the stream's token is cancelled."""


class StreamTimeout(QuotaGuardError):
    """Raised when a stream receives no data within the idle timeout."""


class IllegalTransitionError(QuotaGuardError):
    """Raised when a stream session is moved to a state it cannot reach."""

    def __init__(self, session_id: str, current, target):
        super().__init__(
            f"Stream {session_id}: illegal transition {current.name} -> {target.name}"
        )
        self.session_id = session_id
        self.current = current
        self.target = target
