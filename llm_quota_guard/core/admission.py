"""
Admission control.

Decides whether a prospective request may proceed under the quota policy.

Check Order:
1. Per-minute request rate - the only limit with a concrete retry time
2. Daily quota - tokens, then requests, then cost
3. Monthly quota - tokens, then requests, then cost
4. Model context window - independent of quotas

Tokens are checked before requests and cost because token exhaustion is
usually the most actionable signal for the caller.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import FailureKind
from .ledger import PeriodUsage, UsageLedger
from .policy import PeriodLimits, QuotaPolicy
from .pricing import PricingTable
from .token_counter import TokenUsage, approximate_token_count

logger = logging.getLogger(__name__)

DEFAULT_ESTIMATED_COMPLETION_TOKENS = 500


@dataclass(frozen=True)
class AdmissionRequest:
    """A request that has not been sent yet."""
    model: str
    prompt_text: str
    estimated_completion_tokens: int = DEFAULT_ESTIMATED_COMPLETION_TOKENS


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission check.

    Allowed decisions carry the usage and cost estimate; denials carry the
    limiting kind, a user-facing reason and, for the rate limit, retry_after
    in seconds.
    """
    allowed: bool
    estimated_usage: Optional[TokenUsage] = None
    estimated_cost: float = 0.0
    kind: Optional[FailureKind] = None
    reason: str = ""
    retry_after: Optional[int] = None

    @classmethod
    def allow(cls, usage: TokenUsage, cost: float) -> "AdmissionDecision":
        return cls(allowed=True, estimated_usage=usage, estimated_cost=cost)

    @classmethod
    def deny(cls, kind: FailureKind, reason: str, retry_after: Optional[int] = None) -> "AdmissionDecision":
        return cls(allowed=False, kind=kind, reason=reason, retry_after=retry_after)


class AdmissionController:
    """Checks prospective requests against the quota policy.

    Reads the ledger inside its transaction so the check never interleaves
    with a concurrent ``record_usage``. Denials are returned as decisions,
    never raised.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        policy_provider: Callable[[], QuotaPolicy],
        pricing_provider: Callable[[], PricingTable],
    ):
        """
        Args:
            ledger: Usage ledger to read
            policy_provider: Returns the current quota policy
            pricing_provider: Returns the current pricing table
        """
        self.ledger = ledger
        self._policy = policy_provider
        self._pricing = pricing_provider

    async def check(self, request: AdmissionRequest) -> AdmissionDecision:
        """Decide whether ``request`` may proceed.

        Args:
            request: Model, prompt text and completion estimate

        Returns:
            AdmissionDecision; the first violated limit wins
        """
        policy = self._policy()
        pricing = self._pricing()
        prompt_tokens = approximate_token_count(request.prompt_text)
        usage = TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=max(0, request.estimated_completion_tokens),
        )
        estimated_cost = pricing.cost(request.model, usage.prompt_tokens, usage.completion_tokens)

        async with self.ledger.transaction() as ledger:
            decision = (
                self._check_rate(ledger, policy)
                or _check_period(ledger.daily, policy.daily, "daily", usage, estimated_cost)
                or _check_period(ledger.monthly, policy.monthly, "monthly", usage, estimated_cost)
            )

        if decision is None:
            decision = _check_context(pricing, request.model, prompt_tokens)

        if decision is not None:
            logger.info("Request denied (%s): %s", decision.kind.value, decision.reason)
            return decision

        return AdmissionDecision.allow(usage, estimated_cost)

    def _check_rate(self, ledger: UsageLedger, policy: QuotaPolicy) -> Optional[AdmissionDecision]:
        limit = policy.per_minute.requests
        if limit is None:
            return None

        current = len(ledger.minutely.requests)
        if current < limit:
            return None

        now = ledger.now().timestamp()
        retry_after = ledger.minutely.retry_after(now) or 60
        return AdmissionDecision.deny(
            FailureKind.RATE,
            f"Rate limit exceeded: {current}/{limit} requests per minute, "
            f"retry after {retry_after} s",
            retry_after=retry_after,
        )


def _check_period(
    usage: PeriodUsage,
    limits: PeriodLimits,
    period: str,
    estimate: TokenUsage,
    estimated_cost: float,
) -> Optional[AdmissionDecision]:
    label = period.capitalize()

    if limits.tokens is not None:
        projected = usage.tokens.total + estimate.total_tokens
        if projected > limits.tokens:
            return AdmissionDecision.deny(
                FailureKind(f"{period}_tokens"),
                f"{label} token limit exceeded: {projected}/{limits.tokens} (resets {period})",
            )

    if limits.requests is not None:
        projected = usage.requests + 1
        if projected > limits.requests:
            return AdmissionDecision.deny(
                FailureKind(f"{period}_requests"),
                f"{label} request limit exceeded: {projected}/{limits.requests} (resets {period})",
            )

    if limits.cost is not None:
        projected_cost = usage.cost + estimated_cost
        if projected_cost > limits.cost:
            return AdmissionDecision.deny(
                FailureKind(f"{period}_cost"),
                f"{label} cost limit exceeded: ${projected_cost:.2f}/${limits.cost:.2f} "
                f"(resets {period})",
            )

    return None


def _check_context(pricing: PricingTable, model: str, prompt_tokens: int) -> Optional[AdmissionDecision]:
    model_pricing = pricing.lookup(model)
    if model_pricing is None or prompt_tokens <= model_pricing.context_window_tokens:
        return None
    return AdmissionDecision.deny(
        FailureKind.CONTEXT,
        f"Prompt exceeds model context window "
        f"({prompt_tokens} > {model_pricing.context_window_tokens})",
    )
