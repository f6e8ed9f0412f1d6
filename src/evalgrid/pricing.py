from __future__ import annotations

from pydantic import BaseModel


class ModelPricing(BaseModel):
    """Pricing per 1M tokens."""

    input: float
    output: float


PRICING: dict[str, ModelPricing] = {
    "gpt-4o": ModelPricing(input=2.5, output=10.0),
    "gpt-4o-mini": ModelPricing(input=0.15, output=0.6),
    "gpt-4.1": ModelPricing(input=2.0, output=8.0),
    "gpt-4.1-mini": ModelPricing(input=0.4, output=1.6),
    "gpt-4.1-nano": ModelPricing(input=0.1, output=0.4),
    "o3": ModelPricing(input=2.0, output=8.0),
    "o4-mini": ModelPricing(input=1.1, output=4.4),
    "gpt-5": ModelPricing(input=1.25, output=10.0),
    "gpt-5-mini": ModelPricing(input=0.25, output=2.0),
    "gpt-5-nano": ModelPricing(input=0.05, output=0.4),
    "claude-3-5-haiku-latest": ModelPricing(input=0.8, output=4.0),
    "claude-3-7-sonnet-latest": ModelPricing(input=3.0, output=15.0),
    "claude-sonnet-4-0": ModelPricing(input=3.0, output=15.0),
    "claude-opus-4-0": ModelPricing(input=15.0, output=75.0),
    "gemini-2.0-flash": ModelPricing(input=0.1, output=0.4),
    "gemini-2.0-flash-lite": ModelPricing(input=0.075, output=0.3),
    "gemini-2.5-flash": ModelPricing(input=0.3, output=2.5),
    "gemini-2.5-pro": ModelPricing(input=1.25, output=10.0),
}


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    pricing: dict[str, ModelPricing] = PRICING,
) -> float | None:
    model_pricing = pricing.get(model)
    if model_pricing is None:
        # Dated snapshots share the price of their alias, e.g. gpt-4o-2024-08-06
        for name in sorted(pricing, key=len, reverse=True):
            if model.startswith(name + "-"):
                model_pricing = pricing[name]
                break
    if model_pricing is None:
        return None
    return (input_tokens * model_pricing.input + output_tokens * model_pricing.output) / 1_000_000
