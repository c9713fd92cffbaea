"""
Usage ledger.

Persisted usage counters across four scopes: a sliding 60 second request
window, the current calendar day, the current calendar month, and lifetime.

All mutations go through one asyncio.Lock. Admission reads take the same
lock, so a read-modify-write of the ledger is never interleaved with
another one even when the persistence call yields control.
"""

import asyncio
import contextlib
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .policy import QuotaPolicy
from .pricing import DEFAULT_PRICING_TABLE, PricingTable
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

MINUTE_WINDOW_SECONDS = 60.0

PERIODS = ("daily", "monthly", "lifetime")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def date_key(moment: datetime) -> str:
    """Calendar date key, ``YYYY-MM-DD``."""
    return moment.strftime("%Y-%m-%d")


def month_key(moment: datetime) -> str:
    """Calendar month key, ``YYYY-MM``."""
    return moment.strftime("%Y-%m")


@dataclass
class TokenCounts:
    prompt: int = 0
    completion: int = 0
    total: int = 0

    def add(self, prompt: int, completion: int) -> None:
        self.prompt += prompt
        self.completion += completion
        self.total = self.prompt + self.completion

    def to_dict(self) -> Dict[str, int]:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenCounts":
        prompt = int(data.get("prompt", 0))
        completion = int(data.get("completion", 0))
        # total is derived; a stored value that disagrees is not trusted
        return cls(prompt=prompt, completion=completion, total=prompt + completion)


@dataclass
class UsageTotals:
    """Tokens, requests and cost accumulated for one scope or model."""
    tokens: TokenCounts = field(default_factory=TokenCounts)
    requests: int = 0
    cost: float = 0.0

    def add(self, prompt: int, completion: int, cost: float) -> None:
        self.tokens.add(prompt, completion)
        self.requests += 1
        self.cost += cost

    def to_dict(self) -> Dict[str, Any]:
        return {"tokens": self.tokens.to_dict(), "requests": self.requests, "cost": self.cost}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageTotals":
        return cls(
            tokens=TokenCounts.from_dict(data.get("tokens", {})),
            requests=int(data.get("requests", 0)),
            cost=float(data.get("cost", 0.0)),
        )


@dataclass
class PeriodUsage(UsageTotals):
    """Usage for one scope, stamped with the period it belongs to.

    ``period_key`` is the date for daily, the month for monthly and the
    start date for lifetime.
    """
    period_key: str = ""
    model_breakdown: Dict[str, UsageTotals] = field(default_factory=dict)

    def record(self, model: str, prompt: int, completion: int, cost: float) -> None:
        self.add(prompt, completion, cost)
        self.model_breakdown.setdefault(model, UsageTotals()).add(prompt, completion, cost)

    def to_dict(self, key_name: str) -> Dict[str, Any]:
        data = {key_name: self.period_key}
        data.update(super().to_dict())
        data["model_breakdown"] = {
            model: totals.to_dict() for model, totals in self.model_breakdown.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], key_name: str) -> "PeriodUsage":
        if key_name not in data:
            raise ValueError(f"Usage scope missing '{key_name}'")
        totals = UsageTotals.from_dict(data)
        return cls(
            tokens=totals.tokens,
            requests=totals.requests,
            cost=totals.cost,
            period_key=str(data[key_name]),
            model_breakdown={
                model: UsageTotals.from_dict(entry)
                for model, entry in data.get("model_breakdown", {}).items()
            },
        )


@dataclass
class MinuteWindow:
    """Timestamps (epoch seconds) of requests recorded in the last minute."""
    requests: List[float] = field(default_factory=list)

    def prune(self, now: float) -> bool:
        """Drop entries older than the window. Returns True if any were dropped."""
        cutoff = now - MINUTE_WINDOW_SECONDS
        kept = [stamp for stamp in self.requests if stamp > cutoff]
        changed = len(kept) != len(self.requests)
        self.requests = kept
        return changed

    def retry_after(self, now: float) -> int:
        """Whole seconds until the oldest entry leaves the window (at least 1)."""
        if not self.requests:
            return 0
        elapsed = now - min(self.requests)
        return max(1, int(MINUTE_WINDOW_SECONDS - int(elapsed)))


# Storage keys are part of the persisted snapshot format
_SCOPE_KEYS = {"daily": "date", "monthly": "month", "lifetime": "start_date"}


def _percent(used: float, limit: float) -> float:
    # a zero ceiling is exhausted from the start
    if limit == 0:
        return 100.0
    return used / limit * 100


@dataclass
class PeriodStats:
    """Usage of one period next to its configured limits."""
    period: str
    usage: PeriodUsage
    limits: Optional[Dict[str, Optional[float]]]
    percentages: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "usage": self.usage.to_dict(_SCOPE_KEYS[self.period]),
            "limits": self.limits,
            "percentages": dict(self.percentages),
        }


class UsageLedger:
    """Multi-period usage counters with serialized, persisted mutation.

    The ledger is created empty, rolled over before every read and write,
    and persisted after every mutation. Persistence is best effort: a failed
    write is logged and the in-memory counters stay authoritative.
    """

    STORAGE_KEY = "usage_ledger"

    def __init__(
        self,
        store=None,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Create an empty ledger.

        Args:
            store: Async key/value store with ``get``/``set``; None keeps
                the ledger in memory only
            pricing: Pricing table used to cost recorded usage
            clock: Returns the current aware datetime
        """
        self.store = store
        self.pricing = pricing
        self._clock = clock
        self._lock = asyncio.Lock()
        now = clock()
        self.daily = PeriodUsage(period_key=date_key(now))
        self.monthly = PeriodUsage(period_key=month_key(now))
        self.lifetime = PeriodUsage(period_key=now.isoformat())
        self.minutely = MinuteWindow()

    def now(self) -> datetime:
        return self._clock()

    async def load(self) -> None:
        """Load the persisted snapshot, keeping the empty ledger if there is none.

        An unreadable snapshot is logged and replaced by an empty ledger.
        """
        if self.store is None:
            return
        async with self._lock:
            try:
                snapshot = await self.store.get(self.STORAGE_KEY)
            except Exception:
                logger.warning("Could not read usage ledger, starting empty", exc_info=True)
                return
            if snapshot:
                try:
                    self._restore(snapshot)
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning("Ignoring malformed usage ledger snapshot: %s", e)
            if self.rollover_if_needed() or not snapshot:
                await self._persist()

    def rollover_if_needed(self) -> bool:
        """Reset daily/monthly scopes whose period has passed.

        Also prunes the per-minute window. The caller must hold the ledger
        lock; use ``transaction()`` outside this class.

        Returns:
            True if any scope changed
        """
        now = self._clock()
        changed = False

        current_date = date_key(now)
        if self.daily.period_key != current_date:
            logger.info("Daily usage rolled over %s -> %s", self.daily.period_key, current_date)
            self.daily = PeriodUsage(period_key=current_date)
            changed = True

        current_month = month_key(now)
        if self.monthly.period_key != current_month:
            logger.info("Monthly usage rolled over %s -> %s", self.monthly.period_key, current_month)
            self.monthly = PeriodUsage(period_key=current_month)
            changed = True

        if self.minutely.prune(now.timestamp()):
            changed = True

        return changed

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator["UsageLedger"]:
        """Hold the ledger lock with counters rolled over to the current period."""
        async with self._lock:
            if self.rollover_if_needed():
                await self._persist()
            yield self

    async def record_usage(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Add one request's usage to every scope and persist the ledger.

        Args:
            model: Model the request ran on
            prompt_tokens: Prompt tokens billed
            completion_tokens: Completion tokens billed

        Returns:
            Cost of the recorded usage
        """
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

        cost = self.pricing.cost(model, prompt_tokens, completion_tokens)
        async with self._lock:
            self.rollover_if_needed()
            now = self._clock().timestamp()
            for scope in (self.daily, self.monthly, self.lifetime):
                scope.record(model, prompt_tokens, completion_tokens, cost)
            self.minutely.requests.append(now)
            self.minutely.prune(now)
            await self._persist()

        logger.debug(
            "Recorded %s prompt + %s completion tokens on %s ($%.6f)",
            prompt_tokens, completion_tokens, model, cost,
        )
        return cost

    async def record(self, model: str, usage: TokenUsage) -> float:
        return await self.record_usage(model, usage.prompt_tokens, usage.completion_tokens)

    async def reset_usage(self, period: str) -> None:
        """Zero one period's counters and re-stamp it with the current period.

        Raises:
            ValueError: If period is not daily, monthly or lifetime
        """
        if period not in PERIODS:
            raise ValueError(f"Invalid period: {period}")

        async with self._lock:
            now = self._clock()
            if period == "daily":
                self.daily = PeriodUsage(period_key=date_key(now))
            elif period == "monthly":
                self.monthly = PeriodUsage(period_key=month_key(now))
            else:
                self.lifetime = PeriodUsage(period_key=now.isoformat())
            await self._persist()

    def usage_for(self, period: str) -> PeriodUsage:
        if period not in PERIODS:
            raise ValueError(f"Invalid period: {period}")
        return getattr(self, period)

    async def get_stats(self, period: str, policy: QuotaPolicy) -> PeriodStats:
        """Usage, limits and percent-of-limit for one period.

        Percentages are only present for limits that are configured.
        """
        async with self.transaction():
            usage = copy.deepcopy(self.usage_for(period))

        limits = policy.limits_for(period)
        percentages = {}
        if limits is not None:
            if limits.tokens is not None:
                percentages["tokens"] = _percent(usage.tokens.total, limits.tokens)
            if limits.requests is not None:
                percentages["requests"] = _percent(usage.requests, limits.requests)
            if limits.cost is not None:
                percentages["cost"] = _percent(usage.cost, limits.cost)

        return PeriodStats(
            period=period,
            usage=usage,
            limits=limits.to_dict() if limits is not None else None,
            percentages=percentages,
        )

    async def current_minute_requests(self) -> int:
        async with self.transaction():
            return len(self.minutely.requests)

    def to_snapshot(self) -> Dict[str, Any]:
        """Plain-data copy of the ledger, in its persisted format."""
        return {
            "daily": self.daily.to_dict("date"),
            "monthly": self.monthly.to_dict("month"),
            "minutely": {"requests": list(self.minutely.requests)},
            "lifetime": self.lifetime.to_dict("start_date"),
        }

    async def import_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """Replace the ledger contents with ``snapshot`` and persist it.

        Raises:
            ValueError: If the snapshot is malformed
        """
        async with self._lock:
            self._restore(snapshot)
            await self._persist()

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        if not isinstance(snapshot, dict):
            raise ValueError("Ledger snapshot must be a dictionary")
        for scope in ("daily", "monthly", "lifetime"):
            if not isinstance(snapshot.get(scope), dict):
                raise ValueError(f"Ledger snapshot missing '{scope}' scope")

        daily = PeriodUsage.from_dict(snapshot["daily"], "date")
        monthly = PeriodUsage.from_dict(snapshot["monthly"], "month")
        lifetime = PeriodUsage.from_dict(snapshot["lifetime"], "start_date")
        minutely = MinuteWindow(
            [float(stamp) for stamp in snapshot.get("minutely", {}).get("requests", [])]
        )
        self.daily, self.monthly, self.lifetime, self.minutely = daily, monthly, lifetime, minutely

    async def _persist(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(self.STORAGE_KEY, self.to_snapshot())
        except Exception:
            logger.warning("Failed to persist usage ledger", exc_info=True)
