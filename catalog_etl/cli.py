"""CLI for the catalog ingestion pipeline."""
from __future__ import annotations

import json
import logging
import sys
from typing import Optional, Tuple

import click

from .discovery import MAX_LISTING_PAGES
from .errors import CatalogError
from .ingestion import RunSummary
from .models import RetailerRole
from .runtime import open_coordinator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ],
)

LOGGER = logging.getLogger(__name__)


def _echo_summary(summary: RunSummary) -> None:
    click.echo(json.dumps(summary.as_dict(), indent=2))


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Catalog ingestion CLI."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command("init-db")
def init_db() -> None:
    """Create catalog tables if they don't exist."""
    with open_coordinator() as coordinator:
        coordinator.store.ensure_schema()
    click.echo("✅ Schema ready")


@cli.command("add-feed")
@click.option("--name", required=True, help="Feed name")
@click.option("--url", required=True, help="Feed URL (JSON)")
@click.option("--retailer", "retailer_name", help="Retailer name (defaults to the feed name)")
@click.option(
    "--role",
    type=click.Choice([role.value for role in RetailerRole], case_sensitive=False),
    help="Retailer role (new retailers default to SPOKE)",
)
def add_feed(name: str, url: str, retailer_name: Optional[str], role: Optional[str]) -> None:
    """Register a feed and its retailer."""
    with open_coordinator() as coordinator:
        feed = coordinator.add_feed(
            name,
            url,
            retailer_name=retailer_name,
            role=RetailerRole(role.upper()) if role else None,
        )
    click.echo(f"✅ Added feed {feed.id}: {feed.name} -> {feed.retailer.name} [{feed.retailer.role.value}]")


@cli.command("remove-feed")
@click.argument("feed_id", type=int)
def remove_feed(feed_id: int) -> None:
    """Delete a feed (and its retailer's listings if no feeds remain)."""
    with open_coordinator() as coordinator:
        try:
            summary = coordinator.remove_feed(feed_id)
        except LookupError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("sync-feed")
@click.argument("feed_id", type=int)
@click.option("--force", is_flag=True, help="Sync even if the feed is marked SYNCING")
def sync_feed(feed_id: int, force: bool) -> None:
    """Download and ingest one feed."""
    with open_coordinator() as coordinator:
        try:
            summary = coordinator.sync_feed(feed_id, force=force)
        except (CatalogError, LookupError) as exc:
            raise click.ClickException(str(exc)) from exc
    if summary is None:
        click.echo(f"⚠️  Feed {feed_id} is already syncing (use --force)")
        return
    _echo_summary(summary)


@cli.command("sync-all")
def sync_all() -> None:
    """Sync every feed that is not already syncing."""
    with open_coordinator() as coordinator:
        results = coordinator.sync_all()
    failed = [feed_id for feed_id, summary in results.items() if summary is None]
    click.echo(f"✅ Synced {len(results) - len(failed)} feed(s), {len(failed)} failed")
    if failed:
        sys.exit(1)


@cli.command("ingest-file")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def ingest_file(path: str) -> None:
    """Ingest a feed document from disk."""
    with open_coordinator() as coordinator:
        try:
            summary = coordinator.ingest_file(path)
        except CatalogError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("scrape-url")
@click.argument("urls", nargs=-1, required=True)
@click.option("--retailer", "retailer_name", required=True, help="Configured retailer name")
def scrape_url(urls: Tuple[str, ...], retailer_name: str) -> None:
    """Scrape product page(s) in a browser and ingest them."""
    with open_coordinator(browser=True) as coordinator:
        try:
            summary = coordinator.scrape_urls(urls, retailer_name)
        except (CatalogError, LookupError) as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("crawl")
@click.option("--retailer", "retailer_name", required=True, help="Retailer name from the retailer table")
@click.option("--max-pages", type=int, default=MAX_LISTING_PAGES, show_default=True, help="Listing page budget")
def crawl(retailer_name: str, max_pages: int) -> None:
    """Discover product links on a retailer's deals listing and scrape them."""
    with open_coordinator(browser=True) as coordinator:
        try:
            summary = coordinator.crawl(retailer_name, max_pages=max_pages)
        except (CatalogError, LookupError, ValueError) as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("feeds")
def feeds() -> None:
    """Show configured feeds and their sync status."""
    with open_coordinator() as coordinator:
        rows = coordinator.store.list_feeds()
    if not rows:
        click.echo("No feeds configured")
        return
    for feed in rows:
        synced = feed.last_synced_at.isoformat(timespec="seconds") if feed.last_synced_at else "never"
        line = (
            f"{feed.id:>4}  {feed.name:<24} {feed.retailer.role.value:<6} "
            f"{feed.status.value:<8} {synced}"
        )
        if feed.error_message:
            line += f"  ({feed.error_message})"
        click.echo(line)


if __name__ == "__main__":
    cli()
