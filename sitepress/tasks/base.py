"""
Shared plumbing for the export pipelines: services bundle, target resolution
and the interstitial wait.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, NamedTuple

from playwright.async_api import Error as PlaywrightError, Page

from ..config.production import ProductionConfig
from ..crawler import PageLinkFetcher, SiteCrawler
from ..extraction import is_interstitial
from ..jobs import Artifact, Job, StartJobRequest
from ..reliability.cancellation import CancellationToken
from ..reliability.errors import NoContentError, ValidationError
from ..runtime import configure_blocking
from ..security import assert_url_allowed
from ..utils import dedupe, normalize_url, parse_patterns
from ..workers import BrowserContextManager, WorkerPool


def _log(logger: logging.Logger, level: str, message: str):
    """Centralized logging utility for all tasks."""
    getattr(logger, level.lower())(message)


@dataclass
class PipelineServices:
    """What a pipeline needs from the running service."""
    contexts: BrowserContextManager
    pool: WorkerPool
    config: ProductionConfig


@dataclass
class PipelineResult:
    artifact: Artifact
    message: str


class Targets(NamedTuple):
    mode: str
    urls: List[str]
    origin_url: str


def resolve_mode(request: StartJobRequest) -> str:
    mode = (request.mode or "").strip().lower()
    if not mode:
        if request.url:
            return "single"
        if request.urls:
            return "list"
        if request.start_url:
            return "site"
        raise ValidationError("Missing mode or url")
    if mode not in ("single", "list", "site"):
        raise ValidationError(f"Unsupported mode '{request.mode}'")
    return mode


async def resolve_targets(job: Job, request: StartJobRequest, services: PipelineServices) -> Targets:
    """Validate the request and produce the page list to process.

    Every URL passes the admission policy before the service touches it.
    Site mode crawls here, reporting progress between 6% and 22%.
    """
    limits = services.config.limits
    mode = resolve_mode(request)

    if mode == "single":
        url = normalize_url(request.url or "")
        if not url:
            raise ValidationError("Invalid URL")
        await assert_url_allowed(url)
        job.update(percent=8, message="1 page queued", total=1, current=0)
        return Targets(mode, [url], url)

    if mode == "list":
        if not isinstance(request.urls, list):
            raise ValidationError("Missing urls (list)")
        urls = dedupe(normalize_url(str(u)) for u in request.urls)[: limits.max_list_urls]
        if not urls:
            raise ValidationError("Empty URL list")
        for url in urls:
            await assert_url_allowed(url)
        job.update(percent=8, message=f"List ready ({len(urls)})", total=len(urls), current=0)
        return Targets(mode, urls, urls[0])

    start_url = normalize_url(request.start_url or request.url or "")
    if not start_url:
        raise ValidationError("Invalid startUrl")
    await assert_url_allowed(start_url)

    job.update(percent=6, message="Scanning site links...")

    def on_progress(current: int, total: int, message: str) -> None:
        job.update(
            percent=6 + min(16, round(current / max(1, total) * 16)),
            message=message,
            current=current,
            total=total,
        )

    async with services.contexts.get_context(job.job_id, java_script_enabled=False) as context:
        await configure_blocking(context, "fast")
        fetcher = PageLinkFetcher(
            context,
            timeout_ms=services.config.extraction.crawl_goto_timeout_ms,
            token=job.token,
        )
        crawler = SiteCrawler(
            fetcher,
            token=job.token,
            logger=job.logger,
            hard_max_pages=limits.hard_max_pages,
            hard_max_depth=limits.hard_max_depth,
        )
        try:
            urls = await crawler.crawl(
                start_url,
                max_pages=limits.default_max_pages if request.max_pages is None else request.max_pages,
                max_depth=limits.default_max_depth if request.max_depth is None else request.max_depth,
                include=parse_patterns(request.include_patterns),
                exclude=parse_patterns(request.exclude_patterns),
                on_progress=on_progress,
            )
        finally:
            await fetcher.close()

    if not urls:
        raise NoContentError("the crawl found no pages")
    job.update(percent=22, message=f"Found {len(urls)} pages", total=len(urls), current=0)
    return Targets(mode, urls, start_url)


async def wait_out_challenge(
    page: Page,
    token: CancellationToken,
    max_seconds: float,
    *,
    poll_seconds: float = 1.0,
) -> str:
    """Poll a bot-verification page until it clears or ``max_seconds`` pass.

    Returns the last page HTML seen.
    """
    deadline = time.monotonic() + max_seconds
    html = ""
    while True:
        try:
            html = await page.content()
            title = await page.title()
        except PlaywrightError:
            # challenge pages reload themselves; the document may be mid-navigation
            title = "just a moment"
        if not is_interstitial(html, title) or time.monotonic() >= deadline:
            return html
        await token.sleep(poll_seconds)
