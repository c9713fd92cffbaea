"""
Quota policy.

Nested ceilings per resource and period. Any limit may be None, meaning
unlimited.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class PerMinuteLimits:
    """Sliding 60 second request ceiling."""
    requests: Optional[int] = None


@dataclass(frozen=True)
class PeriodLimits:
    """Token, request and cost ceilings for one calendar period."""
    tokens: Optional[int] = None
    requests: Optional[int] = None
    cost: Optional[float] = None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {"tokens": self.tokens, "requests": self.requests, "cost": self.cost}


@dataclass(frozen=True)
class QuotaPolicy:
    """Complete quota configuration."""
    per_minute: PerMinuteLimits = PerMinuteLimits()
    daily: PeriodLimits = PeriodLimits()
    monthly: PeriodLimits = PeriodLimits()

    def limits_for(self, period: str) -> Optional[PeriodLimits]:
        """Limits for ``daily`` or ``monthly``; None for periods without limits."""
        if period == "daily":
            return self.daily
        if period == "monthly":
            return self.monthly
        return None

    def merged(self, partial: Dict[str, Any]) -> "QuotaPolicy":
        """Return a copy with the values of a partial nested mapping applied.
        
        Args:
            partial: e.g. ``{"daily": {"tokens": 50000}, "per_minute": {"requests": None}}``
            
        Returns:
            New QuotaPolicy; sections and keys absent from ``partial`` are kept
            
        Raises:
            ValueError: If the mapping has unknown keys or invalid values
        """
        if not isinstance(partial, dict):
            raise ValueError("Quota policy update must be a dictionary")
        
        unknown_keys = set(partial.keys()) - {"per_minute", "daily", "monthly"}
        if unknown_keys:
            raise ValueError(f"Unknown quota sections: {unknown_keys}")
        
        per_minute = self.per_minute
        if "per_minute" in partial:
            section = _check_section(partial["per_minute"], "per_minute", {"requests"})
            if "requests" in section:
                per_minute = replace(
                    per_minute,
                    requests=_parse_limit(section["requests"], "per_minute.requests", int),
                )
        
        daily = self.daily
        if "daily" in partial:
            daily = _merge_period(daily, partial["daily"], "daily")
        
        monthly = self.monthly
        if "monthly" in partial:
            monthly = _merge_period(monthly, partial["monthly"], "monthly")
        
        return QuotaPolicy(per_minute=per_minute, daily=daily, monthly=monthly)

    def to_dict(self) -> Dict[str, Dict[str, Optional[float]]]:
        return {
            "per_minute": {"requests": self.per_minute.requests},
            "daily": self.daily.to_dict(),
            "monthly": self.monthly.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaPolicy":
        """Build a policy from a full or partial mapping; absent limits are unlimited."""
        return cls().merged(data)


def _check_section(section: Any, path: str, allowed: set) -> Dict[str, Any]:
    if not isinstance(section, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(section.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    return section


def _merge_period(current: PeriodLimits, section: Any, path: str) -> PeriodLimits:
    section = _check_section(section, path, {"tokens", "requests", "cost"})
    updates = {}
    if "tokens" in section:
        updates["tokens"] = _parse_limit(section["tokens"], f"{path}.tokens", int)
    if "requests" in section:
        updates["requests"] = _parse_limit(section["requests"], f"{path}.requests", int)
    if "cost" in section:
        updates["cost"] = _parse_limit(section["cost"], f"{path}.cost", float)
    return replace(current, **updates)


def _parse_limit(value: Any, path: str, cast):
    if value is None:
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number or null")
    if value < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return cast(value)


DEFAULT_QUOTA_POLICY = QuotaPolicy(
    per_minute=PerMinuteLimits(requests=20),
    daily=PeriodLimits(tokens=100_000, requests=1_000, cost=10.00),
    monthly=PeriodLimits(tokens=2_000_000, requests=20_000, cost=200.00),
)
