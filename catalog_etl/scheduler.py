"""Per-origin task scheduling with concurrency and dispatch-interval limits.

One :class:`DomainScheduler` is built per process and handed to every fetch
caller. Each hostname gets its own :class:`DomainQueue`, created lazily on
first use, so congestion on one site never delays another.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar
from urllib.parse import urlparse

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DomainLimits:
    """Scheduling limits for one domain."""

    concurrency: int = 1
    interval: float = 2.0  # Minimum seconds between consecutive dispatches

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")


def normalize_domain(origin_url: str) -> str:
    """Return the lowercase hostname of a URL without a leading ``www.``."""
    parsed = urlparse(origin_url if "://" in origin_url else f"//{origin_url}")
    host = (parsed.hostname or "").lower()
    if not host:
        raise ValueError(f"URL has no hostname: {origin_url!r}")
    if host.startswith("www."):
        host = host[4:]
    return host


class DomainQueue:
    """Bounded executor for a single domain."""

    def __init__(
        self,
        domain: str,
        limits: DomainLimits,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.domain = domain
        self.limits = limits
        self._clock = clock
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=limits.concurrency,
            thread_name_prefix=f"scrape-{domain}",
        )
        self._dispatch_lock = threading.Lock()
        self._last_dispatch: Optional[float] = None

    def submit(self, task: Callable[[], T]) -> Future:
        return self._executor.submit(self._run, task)

    def _run(self, task: Callable[[], T]) -> T:
        self._wait_for_dispatch_slot()
        return task()

    def _wait_for_dispatch_slot(self) -> None:
        # Held while sleeping so dispatch starts stay strictly spaced.
        with self._dispatch_lock:
            if self._last_dispatch is not None:
                delay = self._last_dispatch + self.limits.interval - self._clock()
                if delay > 0:
                    LOGGER.debug("Pacing %s: waiting %.2fs", self.domain, delay)
                    self._sleep(delay)
            self._last_dispatch = self._clock()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class DomainScheduler:
    """Registry of per-domain queues."""

    def __init__(
        self,
        overrides: Optional[Mapping[str, DomainLimits]] = None,
        *,
        default_limits: Optional[DomainLimits] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize scheduler.

        Parameters
        ----------
        overrides : mapping of str -> DomainLimits, optional
            Limits for specific domains (keys normalized like URLs)
        default_limits : DomainLimits, optional
            Limits for any domain without an override (1 task, 2s apart)
        clock, sleep : callable
            Injectable time source and sleeper
        """
        self.default_limits = default_limits or DomainLimits()
        self._overrides: Dict[str, DomainLimits] = {
            normalize_domain(domain): limits for domain, limits in (overrides or {}).items()
        }
        self._clock = clock
        self._sleep = sleep
        self._queues: Dict[str, DomainQueue] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_table(cls, table: Mapping[str, Any], **kwargs: Any) -> DomainScheduler:
        """Build a scheduler from the retailer YAML table."""
        defaults = table.get("defaults") or {}
        default_limits = DomainLimits(
            concurrency=int(defaults.get("concurrency", 1)),
            interval=float(defaults.get("interval_ms", 2000)) / 1000.0,
        )
        overrides = {}
        for domain, entry in (table.get("retailers") or {}).items():
            entry = entry or {}
            overrides[domain] = DomainLimits(
                concurrency=int(entry.get("concurrency", default_limits.concurrency)),
                interval=float(entry.get("interval_ms", default_limits.interval * 1000)) / 1000.0,
            )
        return cls(overrides, default_limits=default_limits, **kwargs)

    def limits_for(self, domain: str) -> DomainLimits:
        return self._overrides.get(domain, self.default_limits)

    def throttle(self, origin_url: str, interval: float) -> DomainLimits:
        """Raise a domain's dispatch interval to at least ``interval`` seconds.

        Never speeds a domain up. An existing queue picks the new interval
        up on its next dispatch.
        """
        domain = normalize_domain(origin_url)
        with self._lock:
            limits = self.limits_for(domain)
            if interval <= limits.interval:
                return limits
            limits = replace(limits, interval=interval)
            self._overrides[domain] = limits
            queue = self._queues.get(domain)
            if queue is not None:
                queue.limits = limits
        LOGGER.info("Throttled %s to one dispatch every %.1fs", domain, interval)
        return limits

    def queue_for(self, origin_url: str) -> DomainQueue:
        domain = normalize_domain(origin_url)
        with self._lock:
            queue = self._queues.get(domain)
            if queue is None:
                limits = self.limits_for(domain)
                LOGGER.debug(
                    "Creating queue for %s (concurrency=%d, interval=%.1fs)",
                    domain,
                    limits.concurrency,
                    limits.interval,
                )
                queue = DomainQueue(domain, limits, clock=self._clock, sleep=self._sleep)
                self._queues[domain] = queue
            return queue

    def submit(self, origin_url: str, task: Callable[[], T]) -> Future:
        """Queue ``task`` behind the limits of ``origin_url``'s domain.

        A failing task resolves only its own future with the exception;
        sibling tasks keep running.
        """
        return self.queue_for(origin_url).submit(task)

    def domains(self) -> list[str]:
        with self._lock:
            return sorted(self._queues)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            queues = list(self._queues.values())
            self._queues.clear()
        for queue in queues:
            queue.shutdown(wait=wait)

    def __enter__(self) -> DomainScheduler:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()
