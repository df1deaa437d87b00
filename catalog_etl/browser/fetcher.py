"""Headless-browser page fetcher with challenge-page handling.

A fetch is a small state machine driven over an injectable
:class:`PageDriver`::

    NAVIGATING -> CHALLENGE_WAIT -> READY
                       |  ^
                       +--+ (challenge title, backoff)
                       |
                       +-> FAILED (retry budget exhausted / exception)

The worker never raises to its caller: any failure yields ``None`` and the
driver is closed on every exit path.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from playwright.sync_api import Route, sync_playwright

from ..errors import FetchBlocked, NavigationError
from ..scheduler import DomainScheduler
from .proxy import ProxyConfig
from .user_agent import UserAgentPool

LOGGER = logging.getLogger(__name__)

CHALLENGE_PHRASES: Tuple[str, ...] = (
    "access to this page has been denied",
    "access denied",
    "just a moment",
    "human verification",
)
BLOCKED_RESOURCE_TYPES = frozenset({"image", "media", "font"})
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
]
WEBDRIVER_MASK = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"


class FetchState(str, Enum):
    NAVIGATING = "navigating"
    CHALLENGE_WAIT = "challenge_wait"
    READY = "ready"
    FAILED = "failed"


@dataclass
class FetchConfig:
    """Timing and retry budget for a single fetch."""

    navigation_timeout_ms: int = 60_000
    challenge_backoff: float = 3.0
    max_challenge_attempts: int = 30
    settle_delay: float = 5.0  # Lets dynamic pricing widgets populate
    title_retry_delay: float = 1.0
    challenge_phrases: Tuple[str, ...] = CHALLENGE_PHRASES


@dataclass
class FetchResult:
    """Captured page after the content settled."""

    html: str
    final_url: str
    status: int


@dataclass
class FetchSession:
    """Mutable state of one fetch run."""

    url: str
    state: FetchState = FetchState.NAVIGATING
    status: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    result: Optional[FetchResult] = None
    history: List[FetchState] = field(default_factory=lambda: [FetchState.NAVIGATING])

    def transition(self, state: FetchState) -> None:
        self.state = state
        self.history.append(state)


class PageDriver(Protocol):
    """Minimal browser page capability consumed by the fetcher."""

    def goto(self, url: str, timeout_ms: int) -> Optional[int]:
        """Navigate and wait for DOM readiness; return HTTP status or None."""
        ...

    def title(self) -> str:
        ...

    def content(self) -> str:
        ...

    def current_url(self) -> str:
        ...

    def close(self) -> None:
        ...


def is_challenge_title(title: str, phrases: Tuple[str, ...] = CHALLENGE_PHRASES) -> bool:
    lowered = (title or "").lower()
    return any(phrase in lowered for phrase in phrases)


class FetchWorker:
    """Fetches pages through the domain scheduler."""

    def __init__(
        self,
        scheduler: DomainScheduler,
        driver_factory: Callable[[], PageDriver],
        config: Optional[FetchConfig] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.scheduler = scheduler
        self.driver_factory = driver_factory
        self.config = config or FetchConfig()
        self._sleep = sleep

    def submit(self, url: str) -> Future:
        """Queue a fetch behind ``url``'s domain limits."""
        return self.scheduler.submit(url, lambda: self.fetch_now(url))

    def fetch(self, url: str) -> Optional[FetchResult]:
        """Fetch ``url`` through the scheduler and wait for the result."""
        try:
            return self.submit(url).result()
        except Exception as exc:
            LOGGER.error("Scheduled fetch of %s failed: %s", url, exc)
            return None

    def fetch_now(self, url: str) -> Optional[FetchResult]:
        """Fetch immediately, bypassing the scheduler."""
        session = self.run(url)
        return session.result if session.state == FetchState.READY else None

    def run(self, url: str) -> FetchSession:
        """Drive the state machine for ``url`` until READY or FAILED."""
        session = FetchSession(url)
        driver: Optional[PageDriver] = None
        try:
            driver = self.driver_factory()
            while session.state not in (FetchState.READY, FetchState.FAILED):
                if session.state == FetchState.NAVIGATING:
                    self._navigate(driver, session)
                else:
                    self._await_challenge(driver, session)
        except FetchBlocked as exc:
            session.error = str(exc)
            session.transition(FetchState.FAILED)
            LOGGER.warning("Blocked: %s", exc)
        except Exception as exc:
            session.error = str(exc)
            session.transition(FetchState.FAILED)
            LOGGER.error("Browser error for %s: %s", url, exc)
        finally:
            if driver is not None:
                try:
                    driver.close()
                except Exception as exc:
                    LOGGER.warning("Failed to close browser session for %s: %s", url, exc)

        return session

    def _navigate(self, driver: PageDriver, session: FetchSession) -> None:
        LOGGER.info("Navigating to %s", session.url)
        status = driver.goto(session.url, self.config.navigation_timeout_ms)
        if status is None:
            raise NavigationError(f"No response received for {session.url}")
        session.status = status
        session.transition(FetchState.CHALLENGE_WAIT)

    def _await_challenge(self, driver: PageDriver, session: FetchSession) -> None:
        if session.attempts >= self.config.max_challenge_attempts:
            raise FetchBlocked(
                f"{session.url} still challenged after {session.attempts} attempts"
            )

        try:
            title = driver.title()
        except Exception as exc:
            # Title reads fail while the challenge page navigates itself.
            LOGGER.debug("Title unavailable for %s: %s", session.url, exc)
            session.attempts += 1
            self._sleep(self.config.title_retry_delay)
            return

        if is_challenge_title(title, self.config.challenge_phrases):
            session.attempts += 1
            LOGGER.warning(
                "Block detected on %s (%r), waiting %.0fs (%d/%d)",
                session.url,
                title,
                self.config.challenge_backoff,
                session.attempts,
                self.config.max_challenge_attempts,
            )
            self._sleep(self.config.challenge_backoff)
            return

        LOGGER.info("Page ready: %r", title)
        self._sleep(self.config.settle_delay)
        session.result = FetchResult(
            html=driver.content(),
            final_url=driver.current_url(),
            status=session.status or 0,
        )
        session.transition(FetchState.READY)


class PlaywrightPageDriver:
    """Chromium page owned by one fetch call."""

    def __init__(
        self,
        *,
        headless: bool = True,
        block_heavy_resources: bool = False,
        user_agent: Optional[str] = None,
        proxy: Optional[ProxyConfig] = None,
    ) -> None:
        self._playwright = sync_playwright().start()
        self._browser = None
        self._context = None
        self._page = None
        try:
            launch_kwargs = {"headless": headless, "args": LAUNCH_ARGS}
            if proxy is not None:
                launch_kwargs["proxy"] = proxy.to_playwright_dict()
            self._browser = self._playwright.chromium.launch(**launch_kwargs)

            self._context = self._browser.new_context(
                user_agent=user_agent or UserAgentPool().get_random(),
                viewport={"width": 1920, "height": 1080},
                extra_http_headers={
                    "Accept-Language": "en-US,en;q=0.9",
                    "Referer": "https://www.google.com/",
                },
            )
            self._context.add_init_script(WEBDRIVER_MASK)
            self._page = self._context.new_page()
            if block_heavy_resources:
                self._page.route("**/*", self._route)
        except Exception:
            self.close()
            raise

    @staticmethod
    def _route(route: Route) -> None:
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            route.abort()
        else:
            route.continue_()

    def goto(self, url: str, timeout_ms: int) -> Optional[int]:
        response = self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        return response.status if response is not None else None

    def title(self) -> str:
        return self._page.title()

    def content(self) -> str:
        return self._page.content()

    def current_url(self) -> str:
        return self._page.url

    def close(self) -> None:
        try:
            if self._context is not None:
                self._context.close()
            if self._browser is not None:
                self._browser.close()
        finally:
            self._playwright.stop()


def playwright_driver_factory(
    *,
    production: bool,
    headless: Optional[bool] = None,
    user_agents: Optional[UserAgentPool] = None,
    proxy: Optional[ProxyConfig] = None,
) -> Callable[[], PageDriver]:
    """Build a factory producing one isolated browser session per fetch.

    Production mode runs headless and aborts image, media and font requests.
    """
    pool = user_agents or UserAgentPool()
    run_headless = production if headless is None else headless

    def factory() -> PageDriver:
        LOGGER.debug("Launching browser (headless=%s)", run_headless)
        return PlaywrightPageDriver(
            headless=run_headless,
            block_heavy_resources=production,
            user_agent=pool.get_random(),
            proxy=proxy,
        )

    return factory
