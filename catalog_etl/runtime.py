"""Builds the coordinator and its collaborators from settings."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from .assets import AssetPipeline, S3ObjectStorage
from .browser import FetchWorker, ProxyConfig, playwright_driver_factory
from .config import Settings, load_retailer_table
from .extraction import ExtractionEngine
from .ingestion import IngestionCoordinator
from .scheduler import DomainScheduler
from .upsert import PostgresCatalogStore

LOGGER = logging.getLogger(__name__)


def build_asset_pipeline(settings: Settings) -> Optional[AssetPipeline]:
    """Asset pipeline for the configured bucket, or None to keep source URLs."""
    if not settings.asset_bucket:
        LOGGER.warning("ASSET_BUCKET is not set; product images will reference source URLs")
        return None
    storage = S3ObjectStorage(
        settings.asset_bucket,
        public_base_url=settings.asset_public_base_url,
        endpoint_url=settings.asset_endpoint_url,
    )
    return AssetPipeline(
        storage,
        prefix=settings.asset_prefix,
        max_width=settings.asset_max_width,
        quality=settings.asset_quality,
        timeout=settings.asset_timeout,
    )


@contextmanager
def open_coordinator(
    settings: Optional[Settings] = None,
    *,
    browser: bool = False,
) -> Iterator[IngestionCoordinator]:
    """Yield a wired coordinator and release its resources afterwards.

    With ``browser`` set, a domain scheduler and Playwright fetch worker are
    attached so product pages can be scraped.
    """
    settings = settings or Settings.from_env()
    table = load_retailer_table(settings.retailers_path)
    store = PostgresCatalogStore(settings.database_url)
    assets = build_asset_pipeline(settings)
    scheduler: Optional[DomainScheduler] = None
    fetcher: Optional[FetchWorker] = None
    if browser:
        scheduler = DomainScheduler.from_table(table)
        fetcher = FetchWorker(
            scheduler,
            playwright_driver_factory(
                production=settings.production,
                headless=settings.headless,
                proxy=ProxyConfig.from_env(),
            ),
        )

    try:
        yield IngestionCoordinator(
            store,
            assets=assets,
            engine=ExtractionEngine.from_table(table),
            fetcher=fetcher,
            feed_timeout=settings.feed_timeout,
        )
    finally:
        if scheduler is not None:
            scheduler.shutdown()
        if assets is not None:
            assets.close()
        store.close()
