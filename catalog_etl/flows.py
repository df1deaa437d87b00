"""Prefect flow wiring for scheduled feed syncs."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from prefect import flow, get_run_logger, task

from .config import BASE_DIR
from .models import FeedStatus
from .runtime import open_coordinator

load_dotenv(BASE_DIR / ".env")


@task
def list_idle_feeds_task() -> List[int]:
    """Ids of feeds that are not already syncing."""
    logger = get_run_logger()
    with open_coordinator() as coordinator:
        feeds = coordinator.store.list_feeds()
    ids = [feed.id for feed in feeds if feed.status != FeedStatus.SYNCING]
    logger.info("list_idle_feeds_task total=%s idle=%s", len(feeds), len(ids))
    return ids


@task
def sync_feed_task(feed_id: int, force: bool = False) -> Optional[Dict[str, int]]:
    """Download and ingest one feed; the feed status records the outcome."""
    logger = get_run_logger()
    with open_coordinator() as coordinator:
        summary = coordinator.sync_feed(feed_id, force=force)
    if summary is None:
        logger.info("sync_feed_task feed=%s skipped (already syncing)", feed_id)
        return None
    logger.info("sync_feed_task feed=%s summary=%s", feed_id, json.dumps(summary.as_dict()))
    return summary.as_dict()


@flow(name="feed-sync")
def feed_sync_flow(feed_id: int, force: bool = False) -> Optional[Dict[str, int]]:
    return sync_feed_task(feed_id, force)


@flow(name="sync-all-feeds")
def sync_all_flow() -> Dict[str, Any]:
    """Sync idle feeds one after another; a failed feed never stops the rest."""
    logger = get_run_logger()
    results: Dict[str, Any] = {}
    failed = 0
    for feed_id in list_idle_feeds_task():
        state = sync_feed_task(feed_id, return_state=True)
        if state.is_failed():
            logger.error("sync_all_flow feed=%s failed", feed_id)
            results[str(feed_id)] = None
            failed += 1
        else:
            results[str(feed_id)] = state.result()

    logger.info("sync_all_flow feeds=%s failed=%s", len(results), failed)
    return results
