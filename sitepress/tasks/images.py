"""
Image pipeline: collect every image a page shows or references, keep the
best variant of each, and pack the survivors into a ZIP.

Sources per page:
- image responses observed while the page loads (bytes captured directly)
- <picture>/<img> srcset and lazy-load attributes, icons, social meta tags
- computed background images, including ::before/::after
- stylesheets and scripts scanned for image URLs
- inline data:image URIs
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import pathlib
from typing import List, Optional, Set

import httpx
from playwright.async_api import BrowserContext, Error as PlaywrightError, Page, Response
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..builders import ArchiveBuilder
from ..config.production import ProductionConfig
from ..extraction import (
    decode_data_uri, extract_asset_image_urls, extract_image_refs,
    is_interstitial, resolve_image_ref,
)
from ..fetcher import build_client, download_image, fetch_text_asset
from ..jobs import Artifact, Job, StartJobRequest
from ..observability.metrics import IMAGES_STORED, PAGES_PROCESSED
from ..registry import ImageCandidateRegistry
from ..reliability.cancellation import CancellationToken
from ..reliability.errors import JobCancelledError, NoContentError, ValidationError
from ..runtime import configure_blocking
from ..security import assert_url_allowed
from ..utils import is_image_content_type, safe_filename, safe_zip_name
from .base import PipelineResult, PipelineServices, _log, resolve_targets, wait_out_challenge


MAX_ASSETS_PER_PAGE = 25
SCROLL_PAUSE_SECONDS = 0.25
CAROUSEL_PAUSE_SECONDS = 0.35

CAROUSEL_NEXT_SELECTORS = [
    ".swiper-button-next",
    ".slick-next",
    ".carousel-control-next",
    ".splide__arrow--next",
    ".glide__arrow--right",
    ".flickity-prev-next-button.next",
    ".owl-next",
    "[data-slide='next']",
    "button[aria-label*='next' i]",
    "a[aria-label*='next' i]",
]

SCROLL_STEP_JS = """
() => {
  window.scrollBy(0, Math.max(400, Math.floor(window.innerHeight * 0.9)));
  const el = document.scrollingElement || document.documentElement;
  return window.innerHeight + window.scrollY >= el.scrollHeight - 2;
}
"""

# no check that a new slide actually appeared; the click budget bounds it
CLICK_NEXT_JS = """
(selectors) => {
  const visible = (el) => {
    const r = el.getBoundingClientRect();
    return r.width > 0 && r.height > 0;
  };
  for (const sel of selectors) {
    const el = Array.from(document.querySelectorAll(sel)).find(visible);
    if (el) { el.click(); return true; }
  }
  const labels = new Set(["next", "→", "›", "»", ">"]);
  const el = Array.from(document.querySelectorAll("button, a, [role='button']"))
    .find((e) => visible(e) && labels.has((e.textContent || "").trim().toLowerCase()));
  if (el) { el.click(); return true; }
  return false;
}
"""

COMPUTED_BACKGROUNDS_JS = """
() => {
  const out = [];
  const re = /url\\(["']?([^"')]+)["']?\\)/g;
  const els = document.querySelectorAll("*");
  for (let i = 0; i < els.length && i < 5000; i++) {
    for (const pseudo of [null, "::before", "::after"]) {
      const bg = getComputedStyle(els[i], pseudo).backgroundImage;
      if (!bg || bg === "none") continue;
      let m;
      while ((m = re.exec(bg))) out.push(m[1]);
    }
  }
  return out;
}
"""

ASSET_URLS_JS = """
() => [
  ...Array.from(document.querySelectorAll('link[rel~="stylesheet"][href]')).map((l) => l.href),
  ...Array.from(document.querySelectorAll('script[src]')).map((s) => s.src),
]
"""


class ImageScanner:
    """Feeds one job's registry from rendered pages."""

    def __init__(
        self,
        context: BrowserContext,
        registry: ImageCandidateRegistry,
        client: httpx.AsyncClient,
        config: ProductionConfig,
        token: CancellationToken,
        logger: logging.Logger,
    ):
        self.context = context
        self.registry = registry
        self.client = client
        self.settings = config.extraction
        self.max_asset_bytes = config.limits.max_asset_bytes
        self.token = token
        self.logger = logger
        self._seen_assets: Set[str] = set()
        self.captured = 0

    async def add_reference(self, ref: str) -> None:
        if ref.startswith("data:"):
            decoded = decode_data_uri(ref)
            if decoded:
                await self.registry.add_buffer(ref, decoded[0], decoded[1])
        else:
            self.registry.add_url(ref)

    async def _capture(self, response: Response) -> None:
        try:
            content_type = response.headers.get("content-type", "")
            if not response.ok or not is_image_content_type(content_type):
                return
            body = await response.body()
            if await self.registry.add_buffer(response.url, body, content_type):
                self.captured += 1
        except PlaywrightError as e:
            self.logger.debug(f"Could not capture {response.url}: {e}")

    async def _scroll(self, page: Page) -> None:
        for _ in range(self.settings.scroll_steps):
            at_bottom = await page.evaluate(SCROLL_STEP_JS)
            await self.token.sleep(SCROLL_PAUSE_SECONDS)
            if at_bottom:
                break
        await page.evaluate("() => window.scrollTo(0, 0)")

    async def _advance_carousels(self, page: Page) -> None:
        for _ in range(self.settings.carousel_clicks):
            try:
                clicked = await page.evaluate(CLICK_NEXT_JS, CAROUSEL_NEXT_SELECTORS)
            except PlaywrightError:
                break
            if not clicked:
                break
            await self.token.sleep(CAROUSEL_PAUSE_SECONDS)

    async def _scan_assets(self, asset_urls: List[str]) -> None:
        fresh = [u for u in asset_urls if u and u not in self._seen_assets][:MAX_ASSETS_PER_PAGE]
        for asset_url in fresh:
            self._seen_assets.add(asset_url)
            self.token.raise_if_cancelled()
            try:
                await assert_url_allowed(asset_url)
            except ValidationError:
                continue
            text = await self.token.guard(
                fetch_text_asset(self.client, asset_url, max_bytes=self.max_asset_bytes)
            )
            if not text:
                continue
            for ref in extract_asset_image_urls(text, asset_url):
                await self.add_reference(ref)

    async def scan(self, url: str) -> None:
        """Collect candidates from one page; failures only end this page early."""
        self.token.raise_if_cancelled()
        page = await self.context.new_page()
        captures: List[asyncio.Future] = []

        def on_response(response: Response) -> None:
            if response.request.resource_type == "image" or is_image_content_type(
                response.headers.get("content-type", "")
            ):
                captures.append(asyncio.ensure_future(self._capture(response)))

        page.on("response", on_response)
        try:
            await self.token.guard(
                page.goto(url, wait_until="domcontentloaded", timeout=self.settings.goto_timeout_safe_ms)
            )
            with contextlib.suppress(PlaywrightTimeoutError):
                await self.token.guard(
                    page.wait_for_load_state("networkidle", timeout=self.settings.network_idle_ms)
                )

            html = await page.content()
            if is_interstitial(html, await page.title()):
                html = await wait_out_challenge(page, self.token, self.settings.challenge_wait_seconds)

            await self._scroll(page)
            await self._advance_carousels(page)

            html = await page.content()
            base_url = page.url or url
            for ref in extract_image_refs(html, base_url):
                await self.add_reference(ref)

            for raw in await page.evaluate(COMPUTED_BACKGROUNDS_JS):
                ref = resolve_image_ref(raw, base_url)
                if ref:
                    await self.add_reference(ref)

            await self._scan_assets(await page.evaluate(ASSET_URLS_JS))
        except JobCancelledError:
            raise
        except Exception as e:
            self.token.raise_if_cancelled()
            _log(self.logger, "warning", f"Image scan incomplete for {url}: {e}")
        finally:
            page.remove_listener("response", on_response)
            if self.token.cancelled:
                for capture in captures:
                    capture.cancel()
            await asyncio.gather(*captures, return_exceptions=True)
            with contextlib.suppress(PlaywrightError):
                await page.close()


async def run_image_job(job: Job, request: StartJobRequest, services: PipelineServices) -> PipelineResult:
    """Scan every target page, download the best candidates and build the ZIP."""
    config = services.config
    min_kb = max(0.0, float(request.min_kb or 0))
    min_bytes = int(min_kb * 1024)

    targets = await resolve_targets(job, request, services)
    urls = targets.urls
    total = len(urls)
    name_base = "list" if targets.mode == "list" else safe_zip_name(targets.origin_url)
    zip_name = f"{safe_filename(name_base, default='site')}.zip"

    registry = ImageCandidateRegistry(
        config.system.work_dir,
        max_url_candidates=config.limits.max_url_candidates,
        min_bytes=min_bytes,
        logger=job.logger,
    )
    archive: Optional[ArchiveBuilder] = None
    try:
        async with build_client({"user-agent": config.browser.user_agent}) as client:
            async with services.contexts.get_context(job.job_id, java_script_enabled=True) as context:
                await configure_blocking(context, "images")
                scanner = ImageScanner(context, registry, client, config, job.token, job.logger)
                scanned = 0

                async def scan(url: str, index: int, worker_id: int) -> None:
                    nonlocal scanned
                    job.token.raise_if_cancelled()
                    job.update(
                        message=f"Scanning images {scanned + 1}/{total}...",
                        percent=22 + 35 * scanned / total,
                        current=scanned,
                        total=total,
                    )
                    try:
                        await scanner.scan(url)
                    finally:
                        scanned += 1
                    PAGES_PROCESSED.labels("images", "ok").inc()

                await services.pool.map(urls, scan)

            job.token.raise_if_cancelled()
            pending = registry.pending_urls()
            found = registry.logical_count()
            if not found:
                raise NoContentError(f"no images on {total} page(s)")

            job.update(
                message=f"Found {found} images. Downloading (min {min_kb:g}KB)...",
                percent=60,
                current=0,
                total=len(pending),
            )
            processed = 0
            downloaded = 0

            async def fetch(url: str, index: int, worker_id: int) -> None:
                nonlocal processed, downloaded
                job.token.raise_if_cancelled()
                job.update(
                    message=f"Downloading images {processed + 1}/{len(pending)}... (saved: {downloaded})",
                    percent=60 + 35 * processed / max(1, len(pending)),
                    current=processed,
                )
                try:
                    await assert_url_allowed(url)
                    result = await job.token.guard(download_image(
                        client, url,
                        min_bytes=min_bytes,
                        head_timeout=config.extraction.head_timeout_seconds,
                        get_timeout=config.extraction.get_timeout_seconds,
                        logger=job.logger,
                    ))
                    if result and await registry.add_buffer(url, result[0], result[1]):
                        downloaded += 1
                except ValidationError as e:
                    job.logger.info(f"Skipping image {url}: {e.message}")
                finally:
                    processed += 1

            await services.pool.map(pending, fetch)

        entries = registry.entries()
        if not entries:
            raise NoContentError(f"no image reached the {min_kb:g}KB minimum")

        job.token.raise_if_cancelled()
        job.update(percent=96, message=f"Building ZIP ({len(entries)} images)...")
        zip_path = pathlib.Path(config.system.work_dir) / f"{job.job_id}-{zip_name}"
        archive = ArchiveBuilder(zip_path, safe_filename(name_base, default="site"), min_bytes=min_bytes,
                                 logger=job.logger).open()
        await asyncio.to_thread(archive.add_all, entries)
        await asyncio.to_thread(archive.close)
        if not archive.count:
            raise NoContentError("no image could be archived")
        IMAGES_STORED.inc(archive.count)
        job.token.raise_if_cancelled()
    except BaseException:
        if archive is not None:
            archive.abort()
        raise
    finally:
        registry.cleanup()

    artifact = Artifact(filename=zip_name, media_type="application/zip", path=zip_path)
    return PipelineResult(
        artifact=artifact,
        message=f"ZIP ready ({archive.count}/{found} images saved)",
    )
