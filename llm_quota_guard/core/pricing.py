"""
Pricing calculations and rate management.

Static per-model prices and context windows. The table is immutable at
runtime; a configuration reload builds a new one.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing and context window for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens
    context_window_tokens: int

    def to_dict(self) -> Dict[str, float]:
        return {
            "prompt_per_1k": float(self.prompt_cost_per_1k),
            "completion_per_1k": float(self.completion_cost_per_1k),
            "context_window": self.context_window_tokens,
        }


@dataclass(frozen=True)
class PricingTable:
    """Pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def lookup(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model, or None when the model is unknown."""
        return self.prices.get(model)

    def cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate the cost of a request in dollars.
        
        Unknown models cost 0 and log a warning. Missing pricing must never
        block an otherwise valid request.
        
        Args:
            model: Model identifier
            prompt_tokens: Prompt tokens used
            completion_tokens: Completion tokens used
            
        Returns:
            prompt/1000 * prompt rate + completion/1000 * completion rate
        """
        pricing = self.lookup(model)
        if pricing is None:
            logger.warning("Unknown model %r, recording zero cost", model)
            return 0.0
        
        # (tokens / 1000) * cost_per_1k, unrounded so small requests still count
        prompt_cost = (Decimal(prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
        completion_cost = (Decimal(completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k
        
        return float(prompt_cost + completion_cost)

    def with_models(self, models: Dict[str, ModelPricing]) -> "PricingTable":
        """Return a new table with ``models`` added or replaced."""
        prices = dict(self.prices)
        prices.update(models)
        return PricingTable(prices)

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {model: pricing.to_dict() for model, pricing in self.prices.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Dict]) -> "PricingTable":
        """Build a table from ``{model: {prompt_per_1k, completion_per_1k, context_window}}``.
        
        Raises:
            ValueError: If an entry is malformed
        """
        prices = {}
        for model, entry in data.items():
            if not isinstance(entry, dict):
                raise ValueError(f"Pricing for '{model}' must be a dictionary")
            try:
                prices[model] = ModelPricing(
                    prompt_cost_per_1k=Decimal(str(entry["prompt_per_1k"])),
                    completion_cost_per_1k=Decimal(str(entry["completion_per_1k"])),
                    context_window_tokens=int(entry["context_window"]),
                )
            except KeyError as e:
                raise ValueError(f"Missing {e} in pricing for '{model}'")
        return cls(prices)


def _pricing(prompt: str, completion: str, window: int) -> ModelPricing:
    return ModelPricing(
        prompt_cost_per_1k=Decimal(prompt),
        completion_cost_per_1k=Decimal(completion),
        context_window_tokens=window,
    )


DEFAULT_PRICING_TABLE = PricingTable({
    "gpt-4": _pricing("0.03", "0.06", 8192),
    "gpt-4-turbo": _pricing("0.01", "0.03", 128000),
    "gpt-3.5-turbo": _pricing("0.0005", "0.0015", 16385),
    "claude-3-opus": _pricing("0.015", "0.075", 200000),
    "claude-3-sonnet": _pricing("0.003", "0.015", 200000),
    "claude-3-haiku": _pricing("0.00025", "0.00125", 200000),
})

