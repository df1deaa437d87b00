"""Turns raw product-page markup into a candidate record."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..errors import ExtractionMiss
from ..models import DEFAULT_CATEGORY, UNKNOWN_BRAND, CandidateRecord
from ..scheduler import normalize_domain
from .prices import normalize_regular_price
from .strategies import STRATEGIES, Fields, RetailerStrategy

LOGGER = logging.getLogger(__name__)

SNIPPET_LENGTH = 500
_WHITESPACE = re.compile(r"\s+")
_BY_BRAND = re.compile(r"\s+by\s+", re.IGNORECASE)


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = _WHITESPACE.sub(" ", value).strip()
    return value or None


class ExtractionEngine:
    """Runs a retailer's ordered strategy list, filling fields first-come."""

    def __init__(
        self,
        retailers: Optional[Mapping[str, RetailerStrategy]] = None,
        default: Optional[RetailerStrategy] = None,
    ) -> None:
        self.retailers: Dict[str, RetailerStrategy] = dict(retailers or {})
        self.default = default or RetailerStrategy(domain="*")

    @classmethod
    def from_table(cls, table: Mapping[str, Any]) -> ExtractionEngine:
        """Build the engine from the retailer YAML table."""
        defaults = table.get("defaults") or {}
        retailers = {
            normalize_domain(domain): RetailerStrategy.from_entry(normalize_domain(domain), entry or {}, defaults)
            for domain, entry in (table.get("retailers") or {}).items()
        }
        return cls(retailers, RetailerStrategy.from_entry("*", {}, defaults))

    def strategy_for(self, url: str) -> RetailerStrategy:
        try:
            domain = normalize_domain(url)
        except ValueError:
            return self.default
        return self.retailers.get(domain, self.default)

    def strategy_named(self, name: str) -> Optional[RetailerStrategy]:
        """Configured retailer whose display name matches ``name`` (case-insensitive)."""
        wanted = name.strip().lower()
        for strategy in self.retailers.values():
            if strategy.name.lower() == wanted:
                return strategy
        return None

    def collect_fields(self, html: str, url: str) -> Fields:
        """Merge strategy output in order; earlier strategies win."""
        config = self.strategy_for(url)
        soup = BeautifulSoup(html, "lxml")
        fields: Fields = {}
        for name in config.strategies:
            try:
                partial = STRATEGIES[name](soup, config)
            except Exception as exc:
                LOGGER.warning("Strategy %s failed on %s: %s", name, url, exc)
                continue
            for key, value in partial.items():
                if key in fields or value is None or value == "":
                    continue
                if key in ("price", "original_price"):
                    if not value:
                        continue
                elif key != "in_stock" and not _clean(value):
                    continue
                fields[key] = value
        if config.split_brand_from_title:
            _split_brand(fields)
        return fields

    def extract(self, html: str, url: str) -> Optional[CandidateRecord]:
        """Return a candidate record, or ``None`` when no title/positive price survives."""
        try:
            return self.extract_or_raise(html, url)
        except ExtractionMiss as exc:
            LOGGER.error("Failed to parse product from %s", exc.url)
            LOGGER.info("HTML snippet: %s...", exc.snippet)
            return None

    def extract_or_raise(self, html: str, url: str) -> CandidateRecord:
        fields = self.collect_fields(html or "", url)
        title = _clean(fields.get("title"))
        price = float(fields.get("price") or 0.0)
        if not title or price <= 0:
            raise ExtractionMiss(url, (html or "")[:SNIPPET_LENGTH])

        image = _clean(fields.get("image"))
        description = fields.get("description")
        return CandidateRecord(
            url=url,
            title=title,
            price=price,
            original_price=normalize_regular_price(price, fields.get("original_price")),
            currency=_clean(fields.get("currency")) or "USD",
            in_stock=bool(fields.get("in_stock", True)),
            image=urljoin(url, image) if image else None,
            brand=_clean(fields.get("brand")) or UNKNOWN_BRAND,
            category=_clean(fields.get("category")) or DEFAULT_CATEGORY,
            description=description.strip() if isinstance(description, str) and description.strip() else None,
        )


def _split_brand(fields: Fields) -> None:
    """``"Serum by Xfer Records"`` -> title ``Serum``, brand ``Xfer Records``."""
    title = _clean(fields.get("title"))
    if not title:
        return
    parts = _BY_BRAND.split(title, maxsplit=1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return
    fields["title"] = parts[0]
    if not _clean(fields.get("brand")) or fields.get("brand") == UNKNOWN_BRAND:
        fields["brand"] = parts[1]
