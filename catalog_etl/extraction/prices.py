"""Price text parsing shared by page extraction and feed ingestion."""
from __future__ import annotations

import math
import re
from typing import Any, Iterable, Optional, Tuple

_NON_NUMERIC = re.compile(r"[^0-9.]")
_PRICE_TOKEN = re.compile(r"\d+\.?\d{0,2}")


def parse_price(value: Any) -> float:
    """Parse a price out of free text; never raises.

    All characters outside ``[0-9.]`` are dropped, then the first
    ``\\d+\\.?\\d{0,2}`` token is read, so ``"$1,234.50 (20% off)"`` gives
    ``1234.5``. Anything unparseable gives ``0.0``.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) and number > 0 else 0.0

    cleaned = _NON_NUMERIC.sub("", str(value))
    match = _PRICE_TOKEN.search(cleaned)
    if not match:
        return 0.0
    try:
        return float(match.group(0))
    except ValueError:
        return 0.0


def normalize_regular_price(price: float, original: Optional[float]) -> float:
    """Regular price is never missing and never below the sale price."""
    if not original or original < price:
        return price
    return original


def discount_percent(price: float, regular: float) -> int:
    """Whole-percent discount of ``price`` against ``regular`` (0 when none).

    Halves round up, matching ``ROUND`` on PostgreSQL numerics.
    """
    if regular <= 0 or regular <= price:
        return 0
    return int(math.floor((regular - price) / regular * 100 + 0.5))


def price_stats(offers: Iterable[Tuple[float, Optional[float]]]) -> Optional[Tuple[float, float, int]]:
    """Cached product stats from ``(price, original_price)`` pairs.

    Returns ``(min_price, max_regular_price, max_discount)`` or ``None``
    when there are no offers. A missing original price counts as the price.
    """
    offers = list(offers)
    if not offers:
        return None
    min_price = min(price for price, _ in offers)
    max_regular = max(original or price for price, original in offers)
    return min_price, max_regular, discount_percent(min_price, max_regular)
