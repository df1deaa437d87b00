"""Error taxonomy for the scrape-to-catalog pipeline.

Per-record content failures (blocked fetch, extraction miss) are skipped by
callers; infrastructure failures (asset storage, feed download, exhausted
transaction retries) are surfaced through the feed status.
"""
from __future__ import annotations


class CatalogError(Exception):
    """Base class for pipeline errors."""


class FetchBlocked(CatalogError):
    """Challenge page persisted past the retry budget."""


class NavigationError(CatalogError):
    """Navigation raised or returned no response."""


class ExtractionMiss(CatalogError):
    """No title or positive price survived all extraction strategies."""

    def __init__(self, url: str, snippet: str = "") -> None:
        super().__init__(f"Could not extract product from {url}")
        self.url = url
        self.snippet = snippet


class AssetUploadFailure(CatalogError):
    """An image pipeline stage failed; fatal for the sync run."""


class TransactionConflict(CatalogError):
    """Transient write contention; safe to retry."""


class FeedDownloadError(CatalogError):
    """Feed document could not be downloaded."""


class FeedFormatError(CatalogError):
    """Feed document is not a product array or {products: [...]} object."""
