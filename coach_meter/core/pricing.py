"""
Pricing calculations and rate management.

Maps a model call's token counts to a cost in whole cents.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from .token_counter import TokenUsage


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in dollars."""
    input_price_per_token: Decimal
    output_price_per_token: Decimal

    def __post_init__(self):
        if self.input_price_per_token < 0 or self.output_price_per_token < 0:
            raise ValueError("token prices cannot be negative")


@dataclass(frozen=True)
class PricingTable:
    """Pricing table with a designated fallback model."""
    prices: Dict[str, ModelPricing]
    default_model: str

    def __post_init__(self):
        if self.default_model not in self.prices:
            raise ValueError(
                f"default_model '{self.default_model}' has no pricing entry"
            )

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Unknown models are priced as the default model rather than rejected.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model
        """
        return self.prices.get(model, self.prices[self.default_model])


# GPT-4o: $5 per 1M input tokens, $15 per 1M output tokens
DEFAULT_PRICING_TABLE = PricingTable(
    prices={
        "gpt-4o": ModelPricing(
            input_price_per_token=Decimal("0.000005"),
            output_price_per_token=Decimal("0.000015")
        ),
        "gpt-4": ModelPricing(
            input_price_per_token=Decimal("0.00003"),
            output_price_per_token=Decimal("0.00006")
        ),
    },
    default_model="gpt-4o"
)


class CostCalculator:
    """Computes the cost of a model call in whole cents."""

    def __init__(self, pricing: PricingTable = DEFAULT_PRICING_TABLE):
        self.pricing = pricing

    @property
    def default_model(self) -> str:
        return self.pricing.default_model

    def calculate_cost_cents(self, model: str, usage: TokenUsage) -> int:
        """Calculate cost in cents, rounded half up to the nearest cent.

        Args:
            model: Model identifier (unknown models use default pricing)
            usage: Token usage data

        Returns:
            Non-negative cost in whole cents
        """
        pricing = self.pricing.get_pricing(model)

        dollars = (
            Decimal(usage.prompt_tokens) * pricing.input_price_per_token
            + Decimal(usage.completion_tokens) * pricing.output_price_per_token
        )
        cents = (dollars * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)

        return int(cents)
