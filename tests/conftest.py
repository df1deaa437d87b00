"""Shared fixtures: in-memory catalog store, scripted page driver, blob storage."""
from __future__ import annotations

import copy
import itertools
from contextlib import contextmanager
from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Dict, Iterator, List, Mapping, Optional

import pytest
from PIL import Image

from catalog_etl.errors import TransactionConflict
from catalog_etl.extraction.prices import price_stats
from catalog_etl.models import (
    CatalogEntry,
    Feed,
    FeedStatus,
    Listing,
    PricePoint,
    Product,
    Retailer,
    RetailerRole,
)
from catalog_etl.upsert import PRODUCT_UPDATABLE_FIELDS


class FakeTransaction:
    def __init__(self, store: "FakeCatalogStore") -> None:
        self.store = store

    def create_product(self, **fields: Any) -> Product:
        if any(p.slug == fields["slug"] for p in self.store.products.values()):
            raise TransactionConflict(f"duplicate key value violates unique constraint: slug={fields['slug']}")
        product = Product(id=next(self.store._ids), **fields)
        self.store.products[product.id] = product
        return product.model_copy(deep=True)

    def update_product(self, product_id: int, fields: Mapping[str, Any]) -> None:
        assert set(fields) <= set(PRODUCT_UPDATABLE_FIELDS)
        product = self.store.products[product_id]
        self.store.products[product_id] = product.model_copy(
            update={**fields, "updated_at": datetime.now(timezone.utc)}
        )
        self.store.product_updates.append((product_id, dict(fields)))

    def get_product(self, product_id: int) -> Optional[Product]:
        product = self.store.products.get(product_id)
        return product.model_copy(deep=True) if product else None

    def slug_exists(self, slug: str) -> bool:
        return any(p.slug == slug for p in self.store.products.values())

    def find_listing(self, url: str) -> Optional[Listing]:
        for listing in self.store.listings.values():
            if listing.url == url:
                return listing.model_copy()
        return None

    def upsert_listing(self, **fields: Any) -> Listing:
        existing = self.find_listing(fields["url"])
        now = datetime.now(timezone.utc)
        if existing is None:
            listing = Listing(id=next(self.store._ids), last_scraped=now, **fields)
        else:
            update = {k: v for k, v in fields.items() if k not in ("url", "title", "retailer_id")}
            listing = existing.model_copy(update={**update, "last_scraped": now})
        self.store.listings[listing.id] = listing
        return listing.model_copy()

    def latest_price(self, listing_id: int) -> Optional[float]:
        points = [p for p in self.store.history if p.listing_id == listing_id]
        return points[-1].price if points else None

    def append_price(self, listing_id: int, price: float) -> None:
        self.store.history.append(PricePoint(listing_id=listing_id, price=price))

    def recalculate_product_stats(self, product_id: int) -> None:
        stats = price_stats(
            (l.price, l.original_price) for l in self.store.listings.values() if l.product_id == product_id
        )
        if stats is None or product_id not in self.store.products:
            return
        min_price, max_regular, max_discount = stats
        self.store.products[product_id] = self.store.products[product_id].model_copy(
            update={"min_price": min_price, "max_regular_price": max_regular, "max_discount": max_discount}
        )

    def delete_listing(self, listing_id: int) -> None:
        self.store.listings.pop(listing_id, None)
        self.store.history = [p for p in self.store.history if p.listing_id != listing_id]

    def count_listings(self, product_id: int) -> int:
        return sum(1 for l in self.store.listings.values() if l.product_id == product_id)

    def delete_product(self, product_id: int) -> None:
        self.store.products.pop(product_id, None)
        for listing_id in [l.id for l in self.store.listings.values() if l.product_id == product_id]:
            self.delete_listing(listing_id)


class FakeCatalogStore:
    """In-memory CatalogStore; a failed transaction restores the prior state."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.retailers: Dict[int, Retailer] = {}
        self.products: Dict[int, Product] = {}
        self.listings: Dict[int, Listing] = {}
        self.history: List[PricePoint] = []
        self.feeds: Dict[int, Dict[str, Any]] = {}
        self.status_log: List[tuple] = []
        self.product_updates: List[tuple] = []
        self.conflicts_to_raise = 0
        self.transactions = 0

    @contextmanager
    def transaction(self) -> Iterator[FakeTransaction]:
        backup = copy.deepcopy((self.products, self.listings, self.history))
        self.transactions += 1
        try:
            yield FakeTransaction(self)
            if self.conflicts_to_raise:
                self.conflicts_to_raise -= 1
                raise TransactionConflict("could not serialize access")
        except Exception:
            self.products, self.listings, self.history = backup
            raise

    def ensure_schema(self) -> None:
        pass

    def upsert_retailer(
        self,
        name: str,
        domain: str,
        role: Optional[RetailerRole] = None,
        logo: Optional[str] = None,
        scrape_interval_ms: Optional[int] = None,
    ) -> Retailer:
        existing = self.get_retailer(name)
        if existing is None:
            retailer = Retailer(
                id=next(self._ids),
                name=name,
                domain=domain,
                role=role or RetailerRole.SPOKE,
                logo=logo,
                scrape_interval_ms=scrape_interval_ms or 2000,
            )
        else:
            update: Dict[str, Any] = {}
            if role is not None:
                update["role"] = role
            if logo is not None:
                update["logo"] = logo
            if scrape_interval_ms is not None:
                update["scrape_interval_ms"] = scrape_interval_ms
            retailer = existing.model_copy(update=update)
        self.retailers[retailer.id] = retailer
        return retailer

    def get_retailer(self, name: str) -> Optional[Retailer]:
        for retailer in self.retailers.values():
            if retailer.name == name:
                return retailer
        return None

    def _feed(self, row: Dict[str, Any]) -> Feed:
        return Feed(retailer=self.retailers[row["retailer_id"]], **{k: v for k, v in row.items() if k != "retailer_id"})

    def add_feed(self, name: str, url: str, retailer_id: int, fmt: str = "JSON") -> Feed:
        row = {
            "id": next(self._ids),
            "name": name,
            "url": url,
            "format": fmt,
            "status": FeedStatus.IDLE,
            "error_message": None,
            "last_synced_at": None,
            "retailer_id": retailer_id,
        }
        self.feeds[row["id"]] = row
        return self._feed(row)

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        row = self.feeds.get(feed_id)
        return self._feed(row) if row else None

    def list_feeds(self) -> List[Feed]:
        return [self._feed(row) for row in self.feeds.values()]

    def delete_feed(self, feed_id: int) -> Optional[Feed]:
        row = self.feeds.pop(feed_id, None)
        return self._feed(row) if row else None

    def count_feeds(self, retailer_id: int) -> int:
        return sum(1 for row in self.feeds.values() if row["retailer_id"] == retailer_id)

    def set_feed_status(
        self, feed_id: int, status: FeedStatus, error_message: Optional[str] = None
    ) -> None:
        row = self.feeds[feed_id]
        row["status"] = status
        row["error_message"] = error_message
        if status == FeedStatus.SUCCESS:
            row["last_synced_at"] = datetime.now(timezone.utc)
        self.status_log.append((feed_id, status, error_message))

    def load_catalog(self) -> List[CatalogEntry]:
        return [
            CatalogEntry(
                id=p.id,
                slug=p.slug,
                title=p.title,
                brand=p.brand,
                image=p.image,
                source_image_url=p.source_image_url,
                tags=list(p.tags),
            )
            for p in self.products.values()
        ]

    def listings_for_retailer(self, retailer_id: int) -> List[Listing]:
        return [l.model_copy() for l in self.listings.values() if l.retailer_id == retailer_id]

    # Test helpers

    def add_product(self, **fields: Any) -> Product:
        with self.transaction() as tx:
            return tx.create_product(**fields)

    def add_listing(self, **fields: Any) -> Listing:
        with self.transaction() as tx:
            listing = tx.upsert_listing(**fields)
            tx.append_price(listing.id, fields["price"])
            return listing

    def product_by_slug(self, slug: str) -> Optional[Product]:
        for product in self.products.values():
            if product.slug == slug:
                return product
        return None

    def history_for(self, url: str) -> List[float]:
        listing = next(l for l in self.listings.values() if l.url == url)
        return [p.price for p in self.history if p.listing_id == listing.id]


class FakePageDriver:
    """Scripted PageDriver: titles are returned in order, the last one repeats.

    With ``pages`` the markup is looked up by the navigated URL and unknown
    URLs answer 404.
    """

    def __init__(
        self,
        titles: Optional[List[Any]] = None,
        *,
        status: Optional[int] = 200,
        html: str = "<html><title>Product</title></html>",
        pages: Optional[Mapping[str, str]] = None,
        final_url: Optional[str] = None,
        goto_error: Optional[Exception] = None,
    ) -> None:
        self.titles = list(titles or ["Product"])
        self.status = status
        self.html = html
        self.pages = pages
        self.final_url = final_url
        self.goto_error = goto_error
        self.url: Optional[str] = None
        self.visited: List[str] = []
        self.closed = False
        self.title_calls = 0

    def goto(self, url: str, timeout_ms: int) -> Optional[int]:
        self.url = url
        self.visited.append(url)
        if self.goto_error is not None:
            raise self.goto_error
        if self.pages is not None and url not in self.pages:
            return 404
        return self.status

    def title(self) -> str:
        index = min(self.title_calls, len(self.titles) - 1)
        self.title_calls += 1
        value = self.titles[index]
        if isinstance(value, Exception):
            raise value
        return value

    def content(self) -> str:
        if self.pages is not None:
            return self.pages.get(self.url or "", "")
        return self.html

    def current_url(self) -> str:
        return self.final_url or self.url or ""

    def close(self) -> None:
        self.closed = True


class MemoryStorage:
    """ObjectStorage keeping blobs in a dict."""

    def __init__(self, *, fail_put: bool = False, fail_delete: bool = False) -> None:
        self.objects: Dict[str, bytes] = {}
        self.fail_put = fail_put
        self.fail_delete = fail_delete
        self.deleted: List[str] = []

    def put(self, key: str, data: bytes, content_type: str) -> None:
        if self.fail_put:
            raise RuntimeError("bucket unavailable")
        self.objects[key] = data

    def delete(self, key: str) -> None:
        if self.fail_delete:
            raise RuntimeError("bucket unavailable")
        self.objects.pop(key, None)
        self.deleted.append(key)

    def public_url(self, key: str) -> str:
        return f"https://cdn.example.com/{key}"


def make_png(width: int = 40, height: int = 20, *, padding: int = 0) -> bytes:
    """RGBA PNG with an opaque red block inside ``padding`` transparent pixels."""
    img = Image.new("RGBA", (width + 2 * padding, height + 2 * padding), (0, 0, 0, 0))
    img.paste((255, 0, 0, 255), (padding, padding, padding + width, padding + height))
    output = BytesIO()
    img.save(output, format="PNG")
    return output.getvalue()


@pytest.fixture
def store() -> FakeCatalogStore:
    return FakeCatalogStore()


@pytest.fixture
def master(store: FakeCatalogStore) -> Retailer:
    return store.upsert_retailer("Audio Plugin Deals", "audioplugin.deals", RetailerRole.MASTER)


@pytest.fixture
def spoke(store: FakeCatalogStore) -> Retailer:
    return store.upsert_retailer("Plugin Boutique", "pluginboutique.com", RetailerRole.SPOKE)
