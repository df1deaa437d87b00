"""Extraction strategies: structured data, meta tags and visual selectors.

Each strategy reads a parsed page and returns the fields it could find as a
partial dict with the keys ``title``, ``price``, ``original_price``,
``currency``, ``in_stock``, ``image``, ``brand``, ``category`` and
``description``. Missing fields are simply absent.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from ..models import RetailerRole
from .prices import parse_price

LOGGER = logging.getLogger(__name__)

Fields = Dict[str, Any]

IN_STOCK_MARKERS = ("instock", "in stock", "limitedavailability", "onlineonly")
DEFAULT_STRATEGIES: Tuple[str, ...] = ("structured_data", "meta_tags", "selectors")


@dataclass
class RetailerStrategy:
    """Declarative extraction recipe for one retailer domain."""

    domain: str
    name: str = ""
    role: RetailerRole = RetailerRole.SPOKE
    strategies: Tuple[str, ...] = DEFAULT_STRATEGIES
    selectors: Dict[str, str] = field(default_factory=dict)
    split_brand_from_title: bool = False
    interval_ms: int = 2000
    deals_url: Optional[str] = None  # First listing page for link discovery

    @classmethod
    def from_entry(
        cls,
        domain: str,
        entry: Mapping[str, Any],
        defaults: Mapping[str, Any],
    ) -> RetailerStrategy:
        selectors = dict(defaults.get("selectors") or {})
        selectors.update(entry.get("selectors") or {})
        strategies = tuple(entry.get("strategies") or defaults.get("strategies") or DEFAULT_STRATEGIES)
        unknown = [name for name in strategies if name not in STRATEGIES]
        if unknown:
            raise ValueError(f"Unknown extraction strategies for {domain}: {unknown}")
        return cls(
            domain=domain,
            name=entry.get("name") or domain,
            role=RetailerRole(entry.get("role", RetailerRole.SPOKE.value)),
            strategies=strategies,
            selectors=selectors,
            split_brand_from_title=bool(entry.get("split_brand_from_title", False)),
            interval_ms=int(entry.get("interval_ms", defaults.get("interval_ms", 2000))),
            deals_url=entry.get("deals_url"),
        )


def _iter_json_ld(soup: BeautifulSoup) -> Iterable[Dict[str, Any]]:
    for script in soup.find_all("script", type=lambda t: t and "ld+json" in t):
        raw = script.string or script.get_text()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed JSON-LD block")
            continue
        stack: List[Any] = [data]
        while stack:
            node = stack.pop(0)
            if isinstance(node, list):
                stack.extend(node)
            elif isinstance(node, dict):
                if "@graph" in node:
                    stack.extend(node["@graph"] if isinstance(node["@graph"], list) else [node["@graph"]])
                yield node


def _is_product(node: Mapping[str, Any]) -> bool:
    node_type = node.get("@type")
    if isinstance(node_type, list):
        return "Product" in node_type
    return node_type == "Product"


def _first_offer(offers: Any) -> Dict[str, Any]:
    if isinstance(offers, list):
        offers = offers[0] if offers else {}
    return offers if isinstance(offers, dict) else {}


def _image_url(image: Any) -> Optional[str]:
    if isinstance(image, list):
        image = image[0] if image else None
    if isinstance(image, dict):
        image = image.get("url") or image.get("contentUrl")
    return image if isinstance(image, str) and image else None


def _brand_name(brand: Any) -> Optional[str]:
    if isinstance(brand, dict):
        brand = brand.get("name")
    return brand.strip() if isinstance(brand, str) and brand.strip() else None


def structured_data(soup: BeautifulSoup, config: RetailerStrategy) -> Fields:
    """Read the first schema.org Product embedded as JSON-LD."""
    product = next((node for node in _iter_json_ld(soup) if _is_product(node)), None)
    if product is None:
        return {}

    fields: Fields = {
        "title": product.get("name"),
        "image": _image_url(product.get("image")),
        "brand": _brand_name(product.get("brand")),
        "category": product.get("category") if isinstance(product.get("category"), str) else None,
        "description": product.get("description"),
    }

    offer = _first_offer(product.get("offers"))
    if offer:
        fields["price"] = parse_price(offer.get("price") or offer.get("lowPrice"))
        fields["currency"] = offer.get("priceCurrency")
        availability = offer.get("availability")
        if isinstance(availability, str):
            fields["in_stock"] = any(marker in availability.lower() for marker in IN_STOCK_MARKERS)
    return fields


def _meta(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag and tag.get("content"):
            return tag["content"].strip()
    return None


def meta_tags(soup: BeautifulSoup, config: RetailerStrategy) -> Fields:
    """Open Graph and product price meta tags."""
    fields: Fields = {
        "title": _meta(soup, "og:title"),
        "image": _meta(soup, "og:image"),
        "description": _meta(soup, "og:description", "description"),
        "brand": _meta(soup, "product:brand", "og:brand"),
        "currency": _meta(soup, "product:price:currency", "og:price:currency"),
    }
    price = _meta(soup, "product:price:amount", "og:price:amount", "twitter:data1")
    if price:
        fields["price"] = parse_price(price)
    original = _meta(soup, "product:original_price:amount")
    if original:
        fields["original_price"] = parse_price(original)
    availability = _meta(soup, "product:availability", "og:availability")
    if availability:
        fields["in_stock"] = any(marker in availability.lower() for marker in IN_STOCK_MARKERS)
    return fields


def _select_text(soup: BeautifulSoup, selector: Optional[str]) -> Optional[str]:
    if not selector:
        return None
    element: Optional[Tag] = soup.select_one(selector)
    if element is None:
        return None
    text = element.get("content") or element.get_text(" ", strip=True)
    return text or None


def _select_image(soup: BeautifulSoup, selector: Optional[str]) -> Optional[str]:
    if not selector:
        return None
    element = soup.select_one(selector)
    if element is None:
        return None
    return element.get("data-src") or element.get("src") or element.get("content") or None


def visual_selectors(soup: BeautifulSoup, config: RetailerStrategy) -> Fields:
    """Retailer-specific CSS targets for the human-visible page."""
    selectors = config.selectors
    fields: Fields = {
        "title": _select_text(soup, selectors.get("title")),
        "image": _select_image(soup, selectors.get("image")),
        "brand": _select_text(soup, selectors.get("brand")),
        "category": _select_text(soup, selectors.get("category")),
    }
    price_text = _select_text(soup, selectors.get("price"))
    if price_text:
        fields["price"] = parse_price(price_text)
    original_text = _select_text(soup, selectors.get("original_price"))
    if original_text:
        fields["original_price"] = parse_price(original_text)

    description_selector = selectors.get("description")
    if description_selector:
        element = soup.select_one(description_selector)
        if element is not None:
            fields["description"] = element.get_text("\n", strip=True)[:2000] or None
    return fields


STRATEGIES: Dict[str, Callable[[BeautifulSoup, RetailerStrategy], Fields]] = {
    "structured_data": structured_data,
    "meta_tags": meta_tags,
    "selectors": visual_selectors,
}
