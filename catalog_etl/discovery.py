"""Product-link discovery over a retailer's paginated deals listing.

Listing pages are fetched through the same :class:`FetchWorker` as product
pages, so they share the domain's pacing. Links are read with the
``product_link`` selector and pagination follows ``next_page`` until it runs
out, loops back, or hits the page budget.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urldefrag, urljoin

from bs4 import BeautifulSoup

from .browser.fetcher import FetchWorker
from .extraction.strategies import RetailerStrategy
from .scheduler import normalize_domain

LOGGER = logging.getLogger(__name__)

MAX_LISTING_PAGES = 50


@dataclass
class DiscoveryResult:
    """Product URLs found on a listing, in first-seen order."""

    urls: List[str] = field(default_factory=list)
    pages: int = 0
    complete: bool = False  # Every listing page loaded and pagination ended


def _same_site(url: str, domain: str) -> bool:
    try:
        return normalize_domain(url) == domain
    except ValueError:
        return False


def parse_listing(html: str, page_url: str, strategy: RetailerStrategy) -> Tuple[List[str], Optional[str]]:
    """Return ``(product_urls, next_page_url)`` for one listing page.

    Relative links resolve against ``page_url``; fragments are dropped and
    links to other sites ignored.
    """
    soup = BeautifulSoup(html or "", "lxml")
    domain = normalize_domain(page_url)
    links: List[str] = []
    selector = strategy.selectors.get("product_link")
    if selector:
        for anchor in soup.select(selector):
            href = anchor.get("href")
            if not href:
                continue
            url = urldefrag(urljoin(page_url, href.strip())).url
            if _same_site(url, domain) and url not in links:
                links.append(url)

    next_url = None
    next_selector = strategy.selectors.get("next_page")
    if next_selector:
        anchor = soup.select_one(next_selector)
        if anchor is not None and anchor.get("href"):
            next_url = urldefrag(urljoin(page_url, anchor["href"].strip())).url
    return links, next_url


def discover(
    fetcher: FetchWorker,
    strategy: RetailerStrategy,
    start_url: Optional[str] = None,
    *,
    max_pages: int = MAX_LISTING_PAGES,
) -> DiscoveryResult:
    """Walk the listing from ``start_url`` (the retailer's deals page by default).

    The result is marked complete only when pagination ended on its own;
    a failed page or an exhausted page budget leaves it incomplete.
    """
    url = start_url or strategy.deals_url
    if not url:
        raise ValueError(f"No deals listing configured for {strategy.name or strategy.domain}")
    if not strategy.selectors.get("product_link"):
        raise ValueError(f"No product_link selector configured for {strategy.name or strategy.domain}")

    result = DiscoveryResult()
    visited = set()
    while url:
        if url in visited:
            LOGGER.warning("Pagination on %s loops back to %s; stopping", strategy.domain, url)
            result.complete = True
            break
        if result.pages >= max_pages:
            LOGGER.warning("Stopping discovery on %s after %d page(s)", strategy.domain, result.pages)
            break
        visited.add(url)

        page = fetcher.fetch(url)
        if page is None or page.status != 200:
            LOGGER.error(
                "Listing page %s failed (%s); discovery incomplete",
                url,
                page.status if page is not None else "no response",
            )
            break
        result.pages += 1

        links, next_url = parse_listing(page.html, page.final_url or url, strategy)
        new = [link for link in links if link not in result.urls]
        result.urls.extend(new)
        LOGGER.info(
            "Listing page %d of %s: %d link(s), %d new", result.pages, strategy.domain, len(links), len(new)
        )

        if next_url is None:
            result.complete = True
        url = next_url

    LOGGER.info(
        "Discovered %d product URL(s) on %s across %d page(s)%s",
        len(result.urls),
        strategy.domain,
        result.pages,
        "" if result.complete else " (incomplete)",
    )
    return result
