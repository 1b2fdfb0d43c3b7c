"""Static per-model price tables.

Prices are USD per million tokens. Providers' usage endpoints report token
counts but not cost, so cost is derived locally from these tables.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

_MILLION = Decimal(1_000_000)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a model family."""

    input_per_million: Decimal
    output_per_million: Decimal


@dataclass(frozen=True)
class PriceTable:
    """Ordered substring rules; the first rule contained in the model name wins."""

    rules: tuple[tuple[str, ModelPricing], ...]
    fallback: ModelPricing

    def get_pricing(self, model: str) -> ModelPricing:
        name = model.lower()
        for pattern, pricing in self.rules:
            if pattern in name:
                return pricing
        return self.fallback

    def cost(self, model: str, tokens_input: int, tokens_output: int) -> float:
        """Cost in USD for the given token counts."""
        pricing = self.get_pricing(model)
        input_cost = Decimal(tokens_input) / _MILLION * pricing.input_per_million
        output_cost = Decimal(tokens_output) / _MILLION * pricing.output_per_million
        return float(input_cost + output_cost)


def _p(input_price: str, output_price: str) -> ModelPricing:
    return ModelPricing(Decimal(input_price), Decimal(output_price))


# More specific names must precede their prefixes
OPENAI_PRICES = PriceTable(
    rules=(
        ("gpt-4o-mini", _p("0.15", "0.60")),
        ("gpt-4o", _p("2.50", "10.00")),
        ("gpt-4-turbo", _p("10.00", "30.00")),
        ("gpt-4", _p("30.00", "60.00")),
        ("gpt-3.5-turbo", _p("0.50", "1.50")),
        ("o1-preview", _p("15.00", "60.00")),
        ("o1-mini", _p("3.00", "12.00")),
        ("o1", _p("15.00", "60.00")),
    ),
    fallback=_p("1.00", "2.00"),
)

ANTHROPIC_PRICES = PriceTable(
    rules=(
        ("opus", _p("15.00", "75.00")),
        ("sonnet", _p("3.00", "15.00")),
        ("haiku", _p("0.25", "1.25")),
    ),
    fallback=_p("3.00", "15.00"),
)
