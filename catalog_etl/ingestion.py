"""Ingestion coordinator: match, authorize, store images, persist, reconcile.

Records of one run are processed sequentially against an in-memory catalog
snapshot that grows as products are created, so two similar titles in the
same feed resolve to one product. Each record is written in its own
transaction; image storage happens before the transaction opens and its
failure aborts the run.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx
from slugify import slugify
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from .assets import AssetPipeline, is_valid_image_reference
from .browser.fetcher import FetchWorker
from .discovery import MAX_LISTING_PAGES, discover
from .errors import FeedFormatError, TransactionConflict
from .extraction.engine import ExtractionEngine
from .extraction.prices import discount_percent, price_stats
from .feeds import FeedDocument, download_feed, load_feed_file, to_candidates
from .matching import find_best_match, is_known_brand
from .models import (
    DEFAULT_CATEGORY,
    CandidateRecord,
    CatalogEntry,
    Feed,
    FeedStatus,
    Listing,
    Product,
    Retailer,
    RetailerRole,
)
from .scheduler import normalize_domain
from .upsert import CatalogStore

LOGGER = logging.getLogger(__name__)

TRANSACTION_ATTEMPTS = 3
TRANSACTION_BACKOFF = 1.0


@dataclass
class RunSummary:
    """Counters for one ingestion run."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    listings_created: int = 0
    listings_updated: int = 0
    price_points: int = 0
    skipped: int = 0
    listings_removed: int = 0
    products_purged: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class _RecordOutcome:
    product_id: int
    slug: str
    entry: Optional[CatalogEntry] = None  # Matched snapshot entry, None for a new product
    image: Optional[str] = None
    created: bool = False
    product_changes: Dict[str, Any] = field(default_factory=dict)
    listing_created: bool = False
    price_appended: bool = False


def unique_slug(title: str, taken: Set[str]) -> str:
    """URL slug for ``title``, suffixed ``-2``, ``-3``... if already taken."""
    base = slugify(title) or "product"
    slug = base
    counter = 2
    while slug in taken:
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def price_changed(latest: Optional[float], price: float) -> bool:
    """True when ``price`` differs from ``latest`` by at least a whole cent."""
    return latest is None or round(latest * 100) != round(price * 100)


class IngestionCoordinator:
    """Turns candidate records into catalog writes for one retailer at a time."""

    def __init__(
        self,
        store: CatalogStore,
        *,
        assets: Optional[AssetPipeline] = None,
        engine: Optional[ExtractionEngine] = None,
        fetcher: Optional[FetchWorker] = None,
        feed_timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
        transaction_attempts: int = TRANSACTION_ATTEMPTS,
        transaction_backoff: float = TRANSACTION_BACKOFF,
    ) -> None:
        self.store = store
        self.assets = assets
        self.engine = engine
        self.fetcher = fetcher
        self.feed_timeout = feed_timeout
        self.http_client = http_client
        self.transaction_attempts = transaction_attempts
        self.transaction_backoff = transaction_backoff

    # ------------------------------------------------------------------
    # Core run
    # ------------------------------------------------------------------
    def ingest(
        self,
        retailer: Retailer,
        records: Iterable[CandidateRecord],
        *,
        site_name: Optional[str] = None,
        reconcile: bool = True,
        keep_urls: Iterable[str] = (),
    ) -> RunSummary:
        """Process ``records`` for ``retailer`` in order.

        Parameters
        ----------
        retailer : Retailer
            Source of the records; its role decides which product fields
            may be written
        records : iterable of CandidateRecord
            Extracted or fed offers
        site_name : str, optional
            Used in the default description of new products
        reconcile : bool
            Remove stale listings after a complete MASTER run
        keep_urls : iterable of str
            Listing URLs that reconciliation must keep although no record
            carried them, such as pages that failed to fetch

        Raises
        ------
        AssetUploadFailure
            If an authorized image could not be stored; the run stops and
            records already written stay committed
        """
        summary = RunSummary()
        snapshot = self.store.load_catalog()
        seen_urls: Set[str] = set(keep_urls)
        site_name = site_name or retailer.name

        LOGGER.info(
            "Ingesting for %s [%s] against %d catalog product(s)",
            retailer.name,
            retailer.role.value,
            len(snapshot),
        )
        for record in records:
            summary.processed += 1
            seen_urls.add(record.url)
            self._process(record, retailer, snapshot, summary, site_name)

        if reconcile and retailer.is_master:
            if summary.processed == 0:
                LOGGER.warning("Skipping reconciliation for %s: run had no records", retailer.name)
            else:
                self.reconcile(retailer, seen_urls, snapshot, summary)

        LOGGER.info("Ingestion for %s finished: %s", retailer.name, summary.as_dict())
        return summary

    def _process(
        self,
        record: CandidateRecord,
        retailer: Retailer,
        snapshot: List[CatalogEntry],
        summary: RunSummary,
        site_name: str,
    ) -> None:
        try:
            outcome = self._write_with_retry(record, retailer, snapshot, site_name)
        except TransactionConflict as exc:
            LOGGER.error("Skipping %s after %d attempts: %s", record.url, self.transaction_attempts, exc)
            summary.skipped += 1
            return

        if outcome is None:
            summary.skipped += 1
            return

        if outcome.created:
            summary.created += 1
            snapshot.append(
                CatalogEntry(
                    id=outcome.product_id,
                    slug=outcome.slug,
                    title=record.title,
                    brand=record.brand,
                    image=outcome.image,
                    source_image_url=record.image if outcome.image else None,
                    tags=[record.category],
                )
            )
        elif outcome.product_changes:
            summary.updated += 1
            _refresh_entry(outcome.entry, outcome.product_changes)

        if outcome.listing_created:
            summary.listings_created += 1
        else:
            summary.listings_updated += 1
        if outcome.price_appended:
            summary.price_points += 1

    def _resolve_image(
        self,
        record: CandidateRecord,
        retailer: Retailer,
        entry: Optional[CatalogEntry],
        slug: str,
    ) -> Optional[str]:
        """Stored image reference to write for this record, or None to leave it alone."""
        if not record.image:
            return None
        permitted = retailer.is_master or entry is None or not entry.image
        if not permitted:
            return None
        stale = (
            entry is None
            or not entry.image
            or entry.source_image_url != record.image
            or not is_valid_image_reference(entry.image)
        )
        if not stale:
            return None
        if self.assets is None:
            return record.image
        return self.assets.store(record.image, slug)

    def _reload_snapshot(self, snapshot: List[CatalogEntry]) -> None:
        snapshot[:] = self.store.load_catalog()
        LOGGER.info("Reloaded catalog snapshot after a write conflict: %d product(s)", len(snapshot))

    def _write_with_retry(
        self,
        record: CandidateRecord,
        retailer: Retailer,
        snapshot: List[CatalogEntry],
        site_name: str,
    ) -> Optional[_RecordOutcome]:
        """Match and write one record, retrying conflicts against a fresh snapshot.

        A conflict may mean another writer created the product meanwhile, so
        each retry matches again after reloading the catalog.
        """
        for attempt in Retrying(
            stop=stop_after_attempt(self.transaction_attempts),
            wait=wait_fixed(self.transaction_backoff),
            retry=retry_if_exception_type(TransactionConflict),
            before_sleep=lambda _: self._reload_snapshot(snapshot),
            reraise=True,
        ):
            with attempt:
                return self._match_and_write(record, retailer, snapshot, site_name)
        return None

    def _match_and_write(
        self,
        record: CandidateRecord,
        retailer: Retailer,
        snapshot: List[CatalogEntry],
        site_name: str,
    ) -> Optional[_RecordOutcome]:
        match = find_best_match(record.title, record.brand, snapshot)
        entry = match.product if match else None
        if match:
            LOGGER.info(
                "Matched %r -> %s (%s, %.2f)", record.title, entry.slug, match.method.value, match.score
            )
            slug = entry.slug
        else:
            slug = unique_slug(record.title, {item.slug for item in snapshot})
            LOGGER.info("No match for %r; new product %s", record.title, slug)

        image_ref = self._resolve_image(record, retailer, entry, slug)
        outcome = self._write(record, retailer, entry, slug, image_ref, site_name)
        if outcome is not None:
            outcome.entry = entry
            outcome.image = image_ref
        return outcome

    def _write(
        self,
        record: CandidateRecord,
        retailer: Retailer,
        entry: Optional[CatalogEntry],
        slug: str,
        image_ref: Optional[str],
        site_name: str,
    ) -> Optional[_RecordOutcome]:
        with self.store.transaction() as tx:
            if entry is None:
                if tx.slug_exists(slug):
                    raise TransactionConflict(f"Product {slug} was created by another writer")
                min_price, max_regular, max_discount = price_stats([(record.price, record.regular_price)])
                product = tx.create_product(
                    slug=slug,
                    title=record.title,
                    brand=record.brand,
                    category=record.category,
                    description=record.description or f"Imported from {site_name}",
                    image=image_ref,
                    source_image_url=record.image if image_ref else None,
                    tags=[record.category],
                    min_price=min_price,
                    max_regular_price=max_regular,
                    max_discount=max_discount,
                )
                outcome = _RecordOutcome(product.id, product.slug, created=True)
                LOGGER.info("Created product %s (%s)", product.slug, retailer.role.value)
            else:
                product = tx.get_product(entry.id)
                if product is None:
                    LOGGER.warning("Product %s disappeared before %s was written", entry.slug, record.url)
                    return None
                changes = _permitted_changes(product, record, retailer, image_ref)
                if changes:
                    tx.update_product(product.id, changes)
                    LOGGER.info(
                        "Updated product %s (%s): %s", product.slug, retailer.role.value, sorted(changes)
                    )
                outcome = _RecordOutcome(product.id, product.slug, product_changes=changes)

            existing = tx.find_listing(record.url)
            listing = tx.upsert_listing(
                url=record.url,
                title=record.title,
                price=record.price,
                original_price=record.regular_price,
                in_stock=record.in_stock,
                currency=record.currency,
                product_id=product.id,
                retailer_id=retailer.id,
            )
            outcome.listing_created = existing is None
            if existing is None:
                LOGGER.info("Created listing %s", record.url)

            latest = tx.latest_price(listing.id)
            if price_changed(latest, record.price):
                tx.append_price(listing.id, record.price)
                outcome.price_appended = True
                LOGGER.info(
                    "Price for %s: %s -> %.2f (%d%% off)",
                    record.url,
                    latest,
                    record.price,
                    discount_percent(record.price, record.regular_price),
                )

            tx.recalculate_product_stats(product.id)
            if existing is not None and existing.product_id != product.id:
                tx.recalculate_product_stats(existing.product_id)
        return outcome

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def reconcile(
        self,
        retailer: Retailer,
        seen_urls: Set[str],
        snapshot: Optional[List[CatalogEntry]] = None,
        summary: Optional[RunSummary] = None,
    ) -> RunSummary:
        """Drop this retailer's listings whose URL was not seen in the run.

        A product whose page moved to a new URL keeps only the new listing,
        so the old price no longer counts toward its stats.
        """
        stale = [
            listing
            for listing in self.store.listings_for_retailer(retailer.id)
            if listing.url not in seen_urls
        ]
        LOGGER.info("Reconciling %s: %d stale listing(s)", retailer.name, len(stale))
        return self._remove_listings(stale, snapshot, summary or RunSummary())

    def _remove_listings(
        self,
        listings: Iterable[Listing],
        snapshot: Optional[List[CatalogEntry]],
        summary: RunSummary,
    ) -> RunSummary:
        for listing in listings:
            purged_slug = None
            with self.store.transaction() as tx:
                tx.delete_listing(listing.id)
                if tx.count_listings(listing.product_id) == 0:
                    product = tx.get_product(listing.product_id)
                    tx.delete_product(listing.product_id)
                    purged_slug = product.slug if product else None
                else:
                    tx.recalculate_product_stats(listing.product_id)
            summary.listings_removed += 1
            LOGGER.info("Removed listing %s", listing.url)

            if purged_slug is not None:
                summary.products_purged += 1
                LOGGER.info("Purged orphan product %s", purged_slug)
                if self.assets is not None:
                    self.assets.delete(purged_slug)
                if snapshot is not None:
                    snapshot[:] = [entry for entry in snapshot if entry.id != listing.product_id]
        return summary

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def ingest_document(self, document: FeedDocument, retailer: Optional[Retailer] = None) -> RunSummary:
        """Ingest a parsed feed document, upserting its retailer first."""
        if retailer is None:
            if not document.site_name:
                raise FeedFormatError("Feed document has no siteName and no retailer was given")
            domain = document.site_url or document.site_name
            try:
                domain = normalize_domain(domain)
            except ValueError:
                pass
            retailer = self.store.upsert_retailer(
                document.site_name, domain, document.role, document.site_logo
            )
        elif document.role or document.site_logo:
            retailer = self.store.upsert_retailer(
                retailer.name, retailer.domain, document.role, document.site_logo
            )
        return self.ingest(
            retailer, to_candidates(document), site_name=document.site_name or retailer.name
        )

    def ingest_file(self, path: str | Path) -> RunSummary:
        LOGGER.info("Reading feed file %s", path)
        return self.ingest_document(load_feed_file(path))

    def sync_feed(self, feed_id: int, *, force: bool = False) -> Optional[RunSummary]:
        """Download a configured feed and ingest it, tracking the feed status.

        Returns None when the feed is already syncing and ``force`` is not set.
        Any failure marks the feed ERROR with the message and is re-raised.
        """
        feed = self._require_feed(feed_id)
        if feed.status == FeedStatus.SYNCING and not force:
            LOGGER.warning("Feed %s (%s) is already syncing", feed.id, feed.name)
            return None

        self._set_status(feed, FeedStatus.SYNCING)
        try:
            document = download_feed(feed.url, timeout=self.feed_timeout, client=self.http_client)
            summary = self.ingest_document(document, feed.retailer)
        except Exception as exc:
            self._set_status(feed, FeedStatus.ERROR, str(exc))
            raise
        self._set_status(feed, FeedStatus.SUCCESS)
        return summary

    def sync_all(self) -> Dict[int, Optional[RunSummary]]:
        """Sync every feed that is not currently syncing; failures don't stop the rest."""
        results: Dict[int, Optional[RunSummary]] = {}
        for feed in self.store.list_feeds():
            if feed.status == FeedStatus.SYNCING:
                LOGGER.info("Skipping feed %s (%s): already syncing", feed.id, feed.name)
                continue
            try:
                results[feed.id] = self.sync_feed(feed.id)
            except Exception as exc:
                LOGGER.error("Feed %s (%s) failed: %s", feed.id, feed.name, exc)
                results[feed.id] = None
        return results

    def add_feed(
        self,
        name: str,
        url: str,
        *,
        retailer_name: Optional[str] = None,
        role: Optional[RetailerRole] = None,
        fmt: str = "JSON",
    ) -> Feed:
        """Register a feed, creating its retailer from the feed URL's host if needed."""
        retailer_name = retailer_name or name
        retailer = self.store.get_retailer(retailer_name)
        if retailer is None or role is not None:
            retailer = self.store.upsert_retailer(retailer_name, normalize_domain(url), role)
        feed = self.store.add_feed(name, url, retailer.id, fmt)
        LOGGER.info("Added feed %s (%s) for %s", feed.id, url, retailer.name)
        return feed

    def remove_feed(self, feed_id: int) -> RunSummary:
        """Delete a feed; if its retailer has no feeds left, drop its listings too."""
        summary = RunSummary()
        feed = self.store.delete_feed(feed_id)
        if feed is None:
            raise LookupError(f"Feed {feed_id} not found")
        LOGGER.info("Removed feed %s (%s)", feed.id, feed.name)

        if self.store.count_feeds(feed.retailer.id) == 0:
            listings = self.store.listings_for_retailer(feed.retailer.id)
            LOGGER.info("Retailer %s has no feeds left; removing %d listing(s)", feed.retailer.name, len(listings))
            self._remove_listings(listings, None, summary)
        return summary

    def scrape_urls(
        self,
        urls: Iterable[str],
        retailer_name: str,
        *,
        reconcile: bool = False,
    ) -> RunSummary:
        """Fetch product pages through the scheduler and ingest what extracts.

        Fetches run concurrently within each domain's limits; ingestion of the
        results stays sequential and in input order. With ``reconcile`` the
        URLs are taken as the retailer's complete listing, and pages that
        failed to fetch or extract keep their existing listings.
        """
        if self.fetcher is None or self.engine is None:
            raise RuntimeError("Scraping needs a fetch worker and an extraction engine")
        retailer = self._scrape_retailer(retailer_name)
        urls = list(urls)
        futures = [(url, self.fetcher.submit(url)) for url in urls]
        candidates: List[CandidateRecord] = []
        missed: List[str] = []
        for url, future in futures:
            try:
                result = future.result()
            except Exception as exc:
                LOGGER.error("Fetch of %s failed: %s", url, exc)
                result = None
            if result is None:
                LOGGER.warning("Skipping %s: page could not be fetched", url)
                missed.append(url)
                continue
            if result.status != 200:
                LOGGER.warning("Skipping %s: status %s", url, result.status)
                missed.append(url)
                continue
            candidate = self.engine.extract(result.html, url)
            if candidate is None:
                missed.append(url)
                continue
            candidates.append(candidate)

        summary = self.ingest(retailer, candidates, reconcile=reconcile, keep_urls=missed)
        summary.processed += len(missed)
        summary.skipped += len(missed)
        return summary

    def scrape_url(self, url: str, retailer_name: str) -> RunSummary:
        return self.scrape_urls([url], retailer_name)

    def crawl(self, retailer_name: str, *, max_pages: int = MAX_LISTING_PAGES) -> RunSummary:
        """Discover product links on the retailer's deals listing and scrape them.

        A MASTER retailer is reconciled only when discovery walked the whole
        listing; a partial crawl never removes listings.
        """
        if self.fetcher is None or self.engine is None:
            raise RuntimeError("Crawling needs a fetch worker and an extraction engine")
        strategy = self.engine.strategy_named(retailer_name)
        if strategy is None:
            raise LookupError(f"Retailer {retailer_name!r} is not in the retailer table")

        retailer = self._scrape_retailer(strategy.name)
        found = discover(self.fetcher, strategy, max_pages=max_pages)
        if not found.complete and retailer.is_master:
            LOGGER.warning("Crawl of %s is incomplete; skipping reconciliation", retailer.name)
        return self.scrape_urls(found.urls, strategy.name, reconcile=found.complete)

    def _scrape_retailer(self, name: str) -> Retailer:
        """Stored retailer ``name``, registered from the retailer table on first use.

        Its stored scrape interval slows the domain's queue when it is
        stricter than the scheduler's own limit.
        """
        retailer = self.store.get_retailer(name)
        if retailer is None:
            retailer = self._register_retailer(name)
        try:
            self.fetcher.scheduler.throttle(retailer.domain, retailer.scrape_interval_ms / 1000.0)
        except ValueError:
            LOGGER.debug("Retailer %s has no usable domain to throttle", retailer.name)
        return retailer

    def _register_retailer(self, name: str) -> Retailer:
        strategy = self.engine.strategy_named(name) if self.engine is not None else None
        if strategy is None:
            raise LookupError(f"Retailer {name!r} not found")
        LOGGER.info(
            "Registering retailer %s (%s, %s) from the retailer table",
            strategy.name,
            strategy.domain,
            strategy.role.value,
        )
        return self.store.upsert_retailer(
            strategy.name,
            strategy.domain,
            strategy.role,
            scrape_interval_ms=strategy.interval_ms,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_feed(self, feed_id: int) -> Feed:
        feed = self.store.get_feed(feed_id)
        if feed is None:
            raise LookupError(f"Feed {feed_id} not found")
        return feed

    def _set_status(self, feed: Feed, status: FeedStatus, message: Optional[str] = None) -> None:
        self.store.set_feed_status(feed.id, status, message)
        if message:
            LOGGER.error("Feed %s (%s) -> %s: %s", feed.id, feed.name, status.value, message)
        else:
            LOGGER.info("Feed %s (%s) -> %s", feed.id, feed.name, status.value)


def _permitted_changes(
    product: Product,
    record: CandidateRecord,
    retailer: Retailer,
    image_ref: Optional[str],
) -> Dict[str, Any]:
    """Product fields this retailer may change, limited to values that differ."""
    changes: Dict[str, Any] = {}
    if retailer.is_master:
        if record.description and record.description != product.description:
            changes["description"] = record.description
        if is_known_brand(record.brand) and record.brand != product.brand:
            changes["brand"] = record.brand
        if record.category != DEFAULT_CATEGORY and record.category != product.category:
            changes["category"] = record.category

    if record.category != DEFAULT_CATEGORY and record.category not in product.tags:
        changes["tags"] = [*product.tags, record.category]

    if image_ref is not None and (retailer.is_master or not product.image):
        if image_ref != product.image:
            changes["image"] = image_ref
        if record.image != product.source_image_url:
            changes["source_image_url"] = record.image
    return changes


def _refresh_entry(entry: CatalogEntry, changes: Dict[str, Any]) -> None:
    for name in ("brand", "image", "source_image_url", "tags"):
        if name in changes:
            setattr(entry, name, changes[name])
