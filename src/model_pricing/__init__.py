"""Shared model pricing utilities."""

from .costs import build_cost_function, calculate_cost, resolve_model_prices
from .price_spec import DEFAULT_PRICE_SPEC_URL, PriceSpecError, get_price_spec, resolve_price_cache_path

__all__ = [
    "DEFAULT_PRICE_SPEC_URL",
    "PriceSpecError",
    "build_cost_function",
    "calculate_cost",
    "get_price_spec",
    "resolve_model_prices",
    "resolve_price_cache_path",
]
