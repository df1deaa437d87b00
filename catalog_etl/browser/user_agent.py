"""Desktop user-agent rotation."""
from __future__ import annotations

import random
from typing import List, Optional


class UserAgentPool:
    """Pool of realistic desktop user-agent strings.

    Retail product pages serve different markup to mobile clients, so only
    desktop agents are rotated.
    """

    DESKTOP_USER_AGENTS: List[str] = [
        # Chrome on Windows
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
        # Chrome on macOS
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        # Chrome on Linux
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        # Edge on Windows
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    ]

    def __init__(self, agents: Optional[List[str]] = None, *, seed: Optional[int] = None) -> None:
        """Initialize user-agent pool.

        Parameters
        ----------
        agents : list[str], optional
            Custom agent strings (defaults to the built-in desktop list)
        seed : int, optional
            Seed for reproducible rotation
        """
        self.agents = list(self.DESKTOP_USER_AGENTS if agents is None else agents)
        if not self.agents:
            raise ValueError("UserAgentPool requires at least one user agent")
        self._random = random.Random(seed)

    def get_random(self) -> str:
        """Get a random user-agent string."""
        return self._random.choice(self.agents)
