"""Browser-driven page fetching with anti-bot helpers."""

from .fetcher import (
    FetchConfig,
    FetchResult,
    FetchSession,
    FetchState,
    FetchWorker,
    PageDriver,
    PlaywrightPageDriver,
    playwright_driver_factory,
)
from .proxy import ProxyConfig
from .user_agent import UserAgentPool

__all__ = [
    "FetchConfig",
    "FetchResult",
    "FetchSession",
    "FetchState",
    "FetchWorker",
    "PageDriver",
    "PlaywrightPageDriver",
    "playwright_driver_factory",
    "ProxyConfig",
    "UserAgentPool",
]
