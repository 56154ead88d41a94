"""
Usage accounting and cost calculations.

Splits provider-reported costs into input and output components and prices
usage from catalog rates when the provider reports no cost.
"""

from dataclasses import dataclass
from decimal import Decimal

from .catalog import AIModel

# Relative per-token weights; output tokens cost ~2.5x input tokens
INPUT_COST_WEIGHT = 0.4
OUTPUT_COST_WEIGHT = 1.0

TOKENS_PER_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class UsageResult:
    """Token and cost accounting for a single completion call."""
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost: float
    output_cost: float
    total_cost: float

    def __post_init__(self):
        """Validate values are non-negative."""
        for name in ("input_tokens", "output_tokens", "total_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        for name in ("input_cost", "output_cost", "total_cost"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def empty(cls) -> "UsageResult":
        return cls(0, 0, 0, 0.0, 0.0, 0.0)


def split_cost(total_cost: float, input_tokens: int, output_tokens: int):
    """Split a combined cost into (input_cost, output_cost).

    Weighs input tokens at 0.4 and output tokens at 1.0. Returns zero
    costs when there is nothing to split.
    """
    if total_cost <= 0:
        return 0.0, 0.0

    input_weight = input_tokens * INPUT_COST_WEIGHT
    output_weight = output_tokens * OUTPUT_COST_WEIGHT
    total_weight = input_weight + output_weight
    if total_weight == 0:
        return 0.0, 0.0

    input_cost = total_cost * input_weight / total_weight
    output_cost = total_cost * output_weight / total_weight
    return input_cost, output_cost


def calculate_cost(model: AIModel, input_tokens: int, output_tokens: int):
    """Price usage from a model's per-million-token rates.

    Returns:
        Tuple of (input_cost, output_cost); zero for free models
    """
    if model.is_free:
        return 0.0, 0.0

    input_cost = (Decimal(input_tokens) / TOKENS_PER_MILLION) * model.input_price
    output_cost = (Decimal(output_tokens) / TOKENS_PER_MILLION) * model.output_price
    return float(input_cost), float(output_cost)
