"""
Unit tests for admission control.

Tests each limit, the order limits are checked in, and unlimited policies.
"""

from decimal import Decimal

import pytest

from llm_quota_guard.core.admission import AdmissionController, AdmissionRequest
from llm_quota_guard.core.errors import FailureKind
from llm_quota_guard.core.ledger import UsageLedger
from llm_quota_guard.core.policy import PerMinuteLimits, PeriodLimits, QuotaPolicy
from llm_quota_guard.core.pricing import DEFAULT_PRICING_TABLE, ModelPricing


def _controller(ledger, policy, pricing=DEFAULT_PRICING_TABLE):
    return AdmissionController(ledger, lambda: policy, lambda: pricing)


def _request(completion_tokens: int, prompt_text: str = "", model: str = "gpt-4"):
    return AdmissionRequest(model=model, prompt_text=prompt_text, estimated_completion_tokens=completion_tokens)


class TestPeriodLimits:
    """Test daily and monthly quotas."""

    @pytest.mark.asyncio
    async def test_daily_tokens_projected_over_limit(self, clock):
        """Verify 95 used + 10 estimated against a limit of 100 is denied."""
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 90, 5)
        policy = QuotaPolicy(daily=PeriodLimits(tokens=100))

        decision = await _controller(ledger, policy).check(_request(10))

        assert decision.allowed is False
        assert decision.kind == FailureKind.DAILY_TOKENS
        assert decision.reason == "Daily token limit exceeded: 105/100 (resets daily)"
        assert decision.retry_after is None

    @pytest.mark.asyncio
    async def test_projection_equal_to_limit_is_allowed(self, clock):
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 90, 0)
        policy = QuotaPolicy(daily=PeriodLimits(tokens=100))

        decision = await _controller(ledger, policy).check(_request(10))

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_daily_requests(self, clock):
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 1, 1)
        policy = QuotaPolicy(daily=PeriodLimits(requests=1))

        decision = await _controller(ledger, policy).check(_request(1))

        assert decision.kind == FailureKind.DAILY_REQUESTS
        assert decision.reason == "Daily request limit exceeded: 2/1 (resets daily)"

    @pytest.mark.asyncio
    async def test_daily_cost(self, clock):
        """Verify 1000 gpt-4 completion tokens ($0.06) exceed a $0.05 limit."""
        ledger = UsageLedger(clock=clock)
        policy = QuotaPolicy(daily=PeriodLimits(cost=0.05))

        decision = await _controller(ledger, policy).check(_request(1000))

        assert decision.kind == FailureKind.DAILY_COST
        assert decision.reason == "Daily cost limit exceeded: $0.06/$0.05 (resets daily)"

    @pytest.mark.asyncio
    async def test_monthly_tokens(self, clock):
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 45, 0)
        policy = QuotaPolicy(monthly=PeriodLimits(tokens=50))

        decision = await _controller(ledger, policy).check(_request(10))

        assert decision.kind == FailureKind.MONTHLY_TOKENS
        assert decision.reason == "Monthly token limit exceeded: 55/50 (resets monthly)"

    @pytest.mark.asyncio
    async def test_tokens_checked_before_requests_and_cost(self, clock):
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 100, 0)
        policy = QuotaPolicy(daily=PeriodLimits(tokens=10, requests=1, cost=0.0))

        decision = await _controller(ledger, policy).check(_request(10))

        assert decision.kind == FailureKind.DAILY_TOKENS

    @pytest.mark.asyncio
    async def test_daily_checked_before_monthly(self, clock):
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 100, 0)
        policy = QuotaPolicy(
            daily=PeriodLimits(requests=1),
            monthly=PeriodLimits(tokens=10),
        )

        decision = await _controller(ledger, policy).check(_request(10))

        assert decision.kind == FailureKind.DAILY_REQUESTS

    @pytest.mark.asyncio
    async def test_zero_request_limit_denies(self, clock):
        ledger = UsageLedger(clock=clock)
        policy = QuotaPolicy(daily=PeriodLimits(requests=0))

        decision = await _controller(ledger, policy).check(_request(1))

        assert decision.kind == FailureKind.DAILY_REQUESTS


class TestRateLimit:
    """Test the per-minute request window."""

    @pytest.mark.asyncio
    async def test_rate_limit_with_retry_after(self, clock):
        """Verify a full window is denied with the seconds until the oldest entry expires."""
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 1, 1)
        await ledger.record_usage("gpt-4", 1, 1)
        policy = QuotaPolicy(per_minute=PerMinuteLimits(requests=2))
        clock.advance(seconds=10)

        decision = await _controller(ledger, policy).check(_request(1))

        assert decision.allowed is False
        assert decision.kind == FailureKind.RATE
        assert decision.retry_after == 50
        assert "2/2 requests per minute" in decision.reason

    @pytest.mark.asyncio
    async def test_window_expiry_allows_again(self, clock):
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 1, 1)
        policy = QuotaPolicy(per_minute=PerMinuteLimits(requests=1))
        controller = _controller(ledger, policy)

        assert (await controller.check(_request(1))).allowed is False
        clock.advance(seconds=61)
        assert (await controller.check(_request(1))).allowed is True

    @pytest.mark.asyncio
    async def test_rate_checked_first(self, clock):
        """Verify the rate limit wins over an exhausted daily quota."""
        ledger = UsageLedger(clock=clock)
        await ledger.record_usage("gpt-4", 500, 500)
        policy = QuotaPolicy(
            per_minute=PerMinuteLimits(requests=1),
            daily=PeriodLimits(tokens=10, requests=1, cost=0.01),
        )

        decision = await _controller(ledger, policy).check(_request(10))

        assert decision.kind == FailureKind.RATE
        assert decision.retry_after > 0


class TestContextWindow:
    """Test the model context window check."""

    @pytest.mark.asyncio
    async def test_prompt_over_context_window(self, clock):
        pricing = DEFAULT_PRICING_TABLE.with_models(
            {"tiny": ModelPricing(Decimal("0"), Decimal("0"), 10)}
        )
        ledger = UsageLedger(clock=clock)

        decision = await _controller(ledger, QuotaPolicy(), pricing).check(
            _request(0, prompt_text="word " * 100, model="tiny")
        )

        assert decision.kind == FailureKind.CONTEXT
        assert "context window" in decision.reason

    @pytest.mark.asyncio
    async def test_quota_checked_before_context(self, clock):
        pricing = DEFAULT_PRICING_TABLE.with_models(
            {"tiny": ModelPricing(Decimal("0"), Decimal("0"), 10)}
        )
        ledger = UsageLedger(clock=clock)
        policy = QuotaPolicy(daily=PeriodLimits(requests=0))

        decision = await _controller(ledger, policy, pricing).check(
            _request(0, prompt_text="word " * 100, model="tiny")
        )

        assert decision.kind == FailureKind.DAILY_REQUESTS


class TestAllowed:
    """Test allowed decisions."""

    @pytest.mark.asyncio
    async def test_unlimited_policy_allows(self, clock):
        """Verify null limits never deny and the estimate is returned."""
        ledger = UsageLedger(clock=clock)
        for _ in range(50):
            await ledger.record_usage("gpt-4", 1000, 1000)

        decision = await _controller(ledger, QuotaPolicy()).check(
            _request(1000, prompt_text="hello world")
        )

        assert decision.allowed is True
        assert decision.kind is None
        assert decision.estimated_usage.prompt_tokens == 3
        assert decision.estimated_usage.completion_tokens == 1000
        assert decision.estimated_cost == pytest.approx(0.00009 + 0.06)

    @pytest.mark.asyncio
    async def test_unknown_model_is_not_blocked(self, clock):
        ledger = UsageLedger(clock=clock)
        policy = QuotaPolicy(daily=PeriodLimits(cost=0.0))

        decision = await _controller(ledger, policy).check(_request(100, model="mystery"))

        assert decision.allowed is True
        assert decision.estimated_cost == 0.0

    @pytest.mark.asyncio
    async def test_check_does_not_record(self, clock):
        ledger = UsageLedger(clock=clock)
        await _controller(ledger, QuotaPolicy()).check(_request(100))

        assert ledger.daily.requests == 0
        assert ledger.minutely.requests == []

    @pytest.mark.asyncio
    async def test_policy_provider_is_read_per_check(self, clock):
        ledger = UsageLedger(clock=clock)
        policies = [QuotaPolicy()]
        controller = AdmissionController(ledger, lambda: policies[0], lambda: DEFAULT_PRICING_TABLE)

        assert (await controller.check(_request(10))).allowed is True
        policies[0] = QuotaPolicy(daily=PeriodLimits(tokens=5))
        assert (await controller.check(_request(10))).allowed is False
