from __future__ import annotations

import logging
import re
from typing import Dict, FrozenSet, List, Optional

from playwright.async_api import async_playwright, Browser, BrowserContext, Route


TRACKER_RE = re.compile(
    r"(doubleclick|googletagmanager|google-analytics|facebook\.com/tr|hotjar|clarity\.ms|segment\.com)",
    re.IGNORECASE,
)

# resource types aborted per request-blocking profile; trackers are always aborted
BLOCK_PROFILES: Dict[str, FrozenSet[str]] = {
    "fast": frozenset({"image", "media", "font", "stylesheet", "script"}),
    "safe": frozenset({"image", "media", "font"}),
    "images": frozenset(),
}


def should_block(profile: str, resource_type: str, url: str) -> bool:
    if TRACKER_RE.search(url or ""):
        return True
    return resource_type in BLOCK_PROFILES.get(profile, frozenset())


async def configure_blocking(context: BrowserContext, profile: str) -> None:
    """Abort requests the profile does not need."""

    async def handler(route: Route) -> None:
        request = route.request
        if should_block(profile, request.resource_type, request.url):
            await route.abort()
        else:
            await route.continue_()

    await context.route("**/*", handler)


class BrowserRuntime:
    """Owns the Playwright process and a shared Chromium Browser."""

    def __init__(self, *, headless: bool, args: Optional[List[str]] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        self._headless = headless
        self._args = args or []
        self._logger = logger or logging.getLogger("sitepress.browser")
        self._playwright = None
        self.browser: Optional[Browser] = None

    async def start(self) -> None:
        self._logger.info("Starting Playwright runtime…")
        self._playwright = await async_playwright().start()
        self.browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=self._args,
        )
        self._logger.info(f"Chromium launched (headless={self._headless})")

    async def stop(self) -> None:
        if self.browser:
            try:
                await self.browser.close()
            except Exception as e:
                self._logger.warning(f"Error closing browser: {e}")
            self.browser = None
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        self._logger.info("Playwright runtime stopped")

    @property
    def is_running(self) -> bool:
        return self.browser is not None and self.browser.is_connected()
