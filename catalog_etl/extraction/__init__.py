"""Fallback-chain extraction of product fields from page markup."""

from .engine import ExtractionEngine
from .prices import discount_percent, normalize_regular_price, parse_price, price_stats
from .strategies import RetailerStrategy

__all__ = [
    "ExtractionEngine",
    "RetailerStrategy",
    "discount_percent",
    "normalize_regular_price",
    "parse_price",
    "price_stats",
]
