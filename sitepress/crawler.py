"""Breadth-first same-origin site crawler.

The crawler itself never touches the browser: it is given an async
``fetch_links(url)`` callable. ``PageLinkFetcher`` is the production one,
rendering each page in a JS-disabled Playwright page.
"""

from __future__ import annotations

import collections
import contextlib
import logging
from typing import Awaitable, Callable, Iterable, List, NamedTuple, Optional, Sequence, Set

from playwright.async_api import BrowserContext, Error as PlaywrightError, Page

from .reliability.cancellation import CancellationToken
from .reliability.errors import JobCancelledError
from .utils import is_probably_file_url, is_same_origin, matches_any, normalize_url, url_path


LinkFetcher = Callable[[str], Awaitable[List[str]]]
CrawlProgress = Callable[[int, int, str], None]

HARD_MAX_PAGES = 60
HARD_MAX_DEPTH = 5
DEFAULT_MAX_PAGES = 25
DEFAULT_MAX_DEPTH = 2
QUEUE_FACTOR = 3


class FrontierEntry(NamedTuple):
    url: str
    depth: int


def clamp_limits(
    max_pages: Optional[int],
    max_depth: Optional[int],
    *,
    hard_max_pages: int = HARD_MAX_PAGES,
    hard_max_depth: int = HARD_MAX_DEPTH,
) -> tuple:
    """Caller values clamped to [1, hard_max_pages] and [0, hard_max_depth]."""
    try:
        pages = int(max_pages) if max_pages is not None else DEFAULT_MAX_PAGES
    except (TypeError, ValueError):
        pages = DEFAULT_MAX_PAGES
    try:
        depth = int(max_depth) if max_depth is not None else DEFAULT_MAX_DEPTH
    except (TypeError, ValueError):
        depth = DEFAULT_MAX_DEPTH
    return max(1, min(pages, hard_max_pages)), max(0, min(depth, hard_max_depth))


def extract_internal_links(hrefs: Iterable[Optional[str]], base_url: str) -> List[str]:
    """Normalized same-origin page links, file downloads skipped."""
    out: List[str] = []
    seen: Set[str] = set()
    for href in hrefs:
        if not href:
            continue
        href = href.strip()
        if href.startswith(("#", "javascript:", "mailto:", "tel:")):
            continue
        link = normalize_url(href, base_url)
        if not link or not is_same_origin(link, base_url) or is_probably_file_url(link):
            continue
        if link not in seen:
            seen.add(link)
            out.append(link)
    return out


class SiteCrawler:
    """BFS over same-origin links with page, depth and queue ceilings."""

    def __init__(
        self,
        fetch_links: LinkFetcher,
        *,
        token: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
        hard_max_pages: int = HARD_MAX_PAGES,
        hard_max_depth: int = HARD_MAX_DEPTH,
    ):
        self.fetch_links = fetch_links
        self.token = token
        self.logger = logger or logging.getLogger("sitepress.crawler")
        self.hard_max_pages = hard_max_pages
        self.hard_max_depth = hard_max_depth

    def _passes_filters(self, url: str, include: Sequence[str], exclude: Sequence[str]) -> bool:
        path = url_path(url)
        if exclude and matches_any(path, exclude):
            return False
        if include and not matches_any(path, include):
            return False
        return True

    async def crawl(
        self,
        start_url: str,
        max_pages: Optional[int] = None,
        max_depth: Optional[int] = None,
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        on_progress: Optional[CrawlProgress] = None,
    ) -> List[str]:
        """Accepted page URLs in discovery order."""
        max_pages, max_depth = clamp_limits(
            max_pages, max_depth,
            hard_max_pages=self.hard_max_pages,
            hard_max_depth=self.hard_max_depth,
        )
        start = normalize_url(start_url)
        if not start:
            return []

        queue = collections.deque([FrontierEntry(start, 0)])
        visited: Set[str] = set()
        enqueued: Set[str] = {start}
        results: List[str] = []

        while queue and len(results) < max_pages:
            if self.token:
                self.token.raise_if_cancelled()

            url, depth = queue.popleft()
            if url in visited:
                continue
            visited.add(url)

            if not self._passes_filters(url, include, exclude):
                continue

            results.append(url)
            if on_progress:
                on_progress(len(results), max_pages, f"Found page {len(results)}/{max_pages}")

            if depth >= max_depth:
                continue

            try:
                links = await self.fetch_links(url)
            except JobCancelledError:
                raise
            except Exception as e:
                self.logger.debug(f"Link fetch failed for {url}: {e}")
                continue

            for link in links:
                if len(results) + len(queue) >= max_pages * QUEUE_FACTOR:
                    break
                link = normalize_url(link)
                if not link or link in visited or link in enqueued:
                    continue
                if not is_same_origin(link, start):
                    continue
                if not self._passes_filters(link, include, exclude):
                    continue
                enqueued.add(link)
                queue.append(FrontierEntry(link, depth + 1))

        self.logger.info(f"Crawl of {start} accepted {len(results)} page(s), visited {len(visited)}")
        return results


_HREFS_SCRIPT = "() => Array.from(document.querySelectorAll('a[href]')).map(a => a.getAttribute('href'))"


class PageLinkFetcher:
    """Renders pages in one reusable Playwright page and returns their internal links."""

    def __init__(self, context: BrowserContext, *, timeout_ms: int = 20000,
                 token: Optional[CancellationToken] = None):
        self.context = context
        self.timeout_ms = timeout_ms
        self.token = token
        self._page: Optional[Page] = None

    async def __call__(self, url: str) -> List[str]:
        if self._page is None:
            self._page = await self.context.new_page()
        navigation = self._page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
        if self.token:
            await self.token.guard(navigation)
        else:
            await navigation
        hrefs = await self._page.evaluate(_HREFS_SCRIPT)
        return extract_internal_links(hrefs, self._page.url or url)

    async def close(self) -> None:
        if self._page is not None:
            with contextlib.suppress(PlaywrightError):
                await self._page.close()
            self._page = None
