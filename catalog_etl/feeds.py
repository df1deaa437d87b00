"""Vendor feed documents: download, shape detection and field aliasing."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_random

from .errors import FeedDownloadError, FeedFormatError
from .extraction.prices import normalize_regular_price, parse_price
from .models import DEFAULT_CATEGORY, UNKNOWN_BRAND, CandidateRecord, RetailerRole

LOGGER = logging.getLogger(__name__)

FEED_HEADERS = {
    "User-Agent": "catalog-etl feed sync",
    "Accept": "application/json",
}

TITLE_KEYS = ("title", "name")
URL_KEYS = ("url", "link")
PRICE_KEYS = ("price", "sale_price")
ORIGINAL_PRICE_KEYS = ("originalPrice", "original_price", "regular_price", "rrp", "msrp")
IMAGE_KEYS = ("image", "image_url", "img")
BRAND_KEYS = ("brand", "developer")
CATEGORY_KEYS = ("category", "type")
STOCK_KEYS = ("inStock", "in_stock", "availability")
OUT_OF_STOCK_VALUES = frozenset(
    {"false", "0", "no", "n", "off", "out of stock", "outofstock", "sold out", "soldout"}
)


@dataclass
class FeedDocument:
    """A parsed feed: optional site header plus raw product items."""

    items: List[Dict[str, Any]] = field(default_factory=list)
    site_name: Optional[str] = None
    site_url: Optional[str] = None
    site_logo: Optional[str] = None
    role: Optional[RetailerRole] = None


def _first(item: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_feed_document(data: Any) -> FeedDocument:
    """Accept a bare product array or ``{products: [...]}`` with a site header."""
    if isinstance(data, list):
        return FeedDocument(items=[item for item in data if isinstance(item, dict)])

    if not isinstance(data, dict):
        raise FeedFormatError(f"Feed must be a list or object, got {type(data).__name__}")

    products = data.get("products") or []
    if not isinstance(products, list):
        raise FeedFormatError("Feed 'products' must be a list")

    role = data.get("role")
    try:
        parsed_role = RetailerRole(str(role).upper()) if role else None
    except ValueError as exc:
        raise FeedFormatError(f"Unknown retailer role: {role!r}") from exc

    return FeedDocument(
        items=[item for item in products if isinstance(item, dict)],
        site_name=_text(data.get("siteName")),
        site_url=_text(data.get("siteUrl")),
        site_logo=_text(data.get("siteLogo")),
        role=parsed_role,
    )


def parse_in_stock(value: Any) -> bool:
    """Feed stock flag; missing means in stock, strings like ``"false"`` mean not."""
    if value is None:
        return True
    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("http"):
            text = text.rsplit("/", 1)[-1]
        return text not in OUT_OF_STOCK_VALUES
    return bool(value)


def to_candidate(item: Mapping[str, Any]) -> Optional[CandidateRecord]:
    """Map one aliased feed item to a candidate record, or None if unusable."""
    title = _text(_first(item, TITLE_KEYS))
    url = _text(_first(item, URL_KEYS))
    if not title or not url:
        LOGGER.debug("Skipping feed item without title/url: %s", item)
        return None

    price = parse_price(_first(item, PRICE_KEYS))
    if price <= 0:
        LOGGER.warning("Skipping feed item %r: no positive price", title)
        return None

    original = parse_price(_first(item, ORIGINAL_PRICE_KEYS))
    return CandidateRecord(
        url=url,
        title=title,
        price=price,
        original_price=normalize_regular_price(price, original),
        image=_text(_first(item, IMAGE_KEYS)),
        brand=_text(_first(item, BRAND_KEYS)) or UNKNOWN_BRAND,
        category=_text(_first(item, CATEGORY_KEYS)) or DEFAULT_CATEGORY,
        description=_text(item.get("description")),
        in_stock=parse_in_stock(_first(item, STOCK_KEYS)),
    )


def to_candidates(document: FeedDocument) -> List[CandidateRecord]:
    candidates = []
    for item in document.items:
        candidate = to_candidate(item)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


@retry(
    stop=stop_after_attempt(3),
    wait=wait_random(1, 3),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
def _get(client: httpx.Client, url: str) -> httpx.Response:
    response = client.get(url)
    response.raise_for_status()
    return response


def download_feed(
    url: str,
    *,
    timeout: float = 30.0,
    client: Optional[httpx.Client] = None,
) -> FeedDocument:
    """Download and parse a feed, retrying transport errors.

    Raises
    ------
    FeedDownloadError
        If the feed could not be fetched
    FeedFormatError
        If the body is not a supported JSON feed
    """
    LOGGER.info("Fetching feed from %s", url)
    own_client = client is None
    session = client or httpx.Client(timeout=timeout, headers=FEED_HEADERS, follow_redirects=True)
    try:
        response = _get(session, url)
    except httpx.HTTPError as exc:
        raise FeedDownloadError(f"Failed to download feed {url}: {exc}") from exc
    finally:
        if own_client:
            session.close()

    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise FeedFormatError(f"Feed {url} is not valid JSON: {exc}") from exc

    document = parse_feed_document(data)
    LOGGER.info("Feed %s has %d product(s)", url, len(document.items))
    return document


def load_feed_file(path: str | Path) -> FeedDocument:
    """Read a feed document from disk."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise FeedFormatError(f"{path} is not valid JSON: {exc}") from exc
    return parse_feed_document(data)
