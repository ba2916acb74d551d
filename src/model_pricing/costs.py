"""Token cost calculation from a LiteLLM price table."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

MODEL_PREFIXES = ("", "openai/", "azure/")


def resolve_model_prices(model: str, price_spec: dict[str, Any]) -> dict[str, Any] | None:
    """Look up a model's prices, trying provider-prefixed keys as well."""
    for prefix in MODEL_PREFIXES:
        prices = price_spec.get(f"{prefix}{model}")
        if isinstance(prices, dict) and "input_cost_per_token" in prices:
            return prices
    return None


def calculate_cost(
    prices: dict[str, Any],
    input_tokens: int,
    cached_input_tokens: int,
    output_tokens: int,
) -> float:
    """Return the USD cost of one token bundle.

    Cached input tokens are a subset of input tokens and use the cache-read rate,
    falling back to the input rate when the model has none.
    """
    input_rate = float(prices.get("input_cost_per_token") or 0.0)
    output_rate = float(prices.get("output_cost_per_token") or 0.0)
    cached_rate = prices.get("cache_read_input_token_cost")
    cached_rate = float(cached_rate) if cached_rate is not None else input_rate

    cached = min(max(cached_input_tokens, 0), max(input_tokens, 0))
    non_cached = max(input_tokens - cached, 0)
    return non_cached * input_rate + cached * cached_rate + max(output_tokens, 0) * output_rate


def build_cost_function(price_spec: dict[str, Any]) -> Callable[[str, int, int, int], float | None]:
    """Return `cost(model, input, cached_input, output)`; unknown models cost `None`."""

    def cost(model: str, input_tokens: int, cached_input_tokens: int, output_tokens: int) -> float | None:
        prices = resolve_model_prices(model, price_spec)
        if prices is None:
            return None
        return calculate_cost(prices, input_tokens, cached_input_tokens, output_tokens)

    return cost
