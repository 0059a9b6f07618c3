"""
Text pipeline: readable main content of every target page, combined into one PDF.

Each page gets a cheap pass first (no JavaScript, scripts and styles blocked).
If that yields too little text or a verification page, a second pass runs
with JavaScript on, waits for the network to settle and for any challenge
to clear, and whichever pass produced more text wins.
"""
from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from playwright.async_api import BrowserContext, Error as PlaywrightError, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..builders import build_combined_html, render_pdf
from ..config.production import ExtractionConfig
from ..extraction import extract_main_content, is_interstitial, render_clean_html, text_length
from ..jobs import Artifact, Job, StartJobRequest
from ..observability.metrics import PAGES_PROCESSED
from ..reliability.cancellation import CancellationToken
from ..reliability.errors import JobCancelledError, NoContentError, TargetBlockedError
from ..runtime import configure_blocking
from ..utils import safe_filename
from .base import PipelineResult, PipelineServices, _log, resolve_targets, wait_out_challenge


@dataclass
class Section:
    title: str
    url: str
    html: str


@dataclass
class PassResult:
    title: str
    content: str
    blocked: bool

    @property
    def length(self) -> int:
        return text_length(self.content)


EMPTY_PASS = PassResult(title="", content="", blocked=False)


class TextExtractor:
    """Two-pass main-content extractor bound to one job's browser contexts."""

    def __init__(
        self,
        fast_context: BrowserContext,
        safe_context: BrowserContext,
        settings: ExtractionConfig,
        token: CancellationToken,
        logger: logging.Logger,
    ):
        self.fast_context = fast_context
        self.safe_context = safe_context
        self.settings = settings
        self.token = token
        self.logger = logger
        self._pages: Dict[Tuple[str, int], Page] = {}
        self.blocked_pages = 0

    async def _page(self, which: str, worker_id: int) -> Page:
        key = (which, worker_id)
        if key not in self._pages:
            context = self.fast_context if which == "fast" else self.safe_context
            self._pages[key] = await context.new_page()
        return self._pages[key]

    async def _fast_pass(self, url: str, worker_id: int) -> PassResult:
        page = await self._page("fast", worker_id)
        await self.token.guard(
            page.goto(url, wait_until="domcontentloaded", timeout=self.settings.goto_timeout_fast_ms)
        )
        html = await page.content()
        title, content = extract_main_content(html)
        return PassResult(title=title, content=content, blocked=is_interstitial(html, title))

    async def _safe_pass(self, url: str, worker_id: int) -> PassResult:
        page = await self._page("safe", worker_id)
        await self.token.guard(
            page.goto(url, wait_until="domcontentloaded", timeout=self.settings.goto_timeout_safe_ms)
        )
        with contextlib.suppress(PlaywrightTimeoutError):
            await self.token.guard(
                page.wait_for_load_state("networkidle", timeout=self.settings.network_idle_ms)
            )
        await self.token.sleep(self.settings.settle_ms / 1000)

        html = await page.content()
        if is_interstitial(html, await page.title()):
            _log(self.logger, "info", f"Verification page on {url}, waiting up to {self.settings.challenge_wait_seconds}s")
            html = await wait_out_challenge(page, self.token, self.settings.challenge_wait_seconds)
        title, content = extract_main_content(html)
        return PassResult(title=title, content=content, blocked=is_interstitial(html, title))

    async def _run_pass(self, which: str, url: str, worker_id: int) -> PassResult:
        try:
            if which == "fast":
                return await self._fast_pass(url, worker_id)
            return await self._safe_pass(url, worker_id)
        except JobCancelledError:
            raise
        except Exception as e:
            self.token.raise_if_cancelled()
            _log(self.logger, "warning", f"{which} pass failed for {url}: {e}")
            return EMPTY_PASS

    async def extract(self, url: str, worker_id: int = 0) -> Optional[Section]:
        """Section for ``url``, or None when no readable text was found."""
        self.token.raise_if_cancelled()
        fast = await self._run_pass("fast", url, worker_id)
        if fast.length >= self.settings.min_text_chars and not fast.blocked:
            chosen = fast
        else:
            self.token.raise_if_cancelled()
            safe = await self._run_pass("safe", url, worker_id)
            if safe.blocked and (fast.blocked or not fast.length):
                self.blocked_pages += 1
                _log(self.logger, "warning", f"Verification page never cleared on {url}")
                return None
            chosen = safe if safe.length > fast.length else fast

        if not chosen.length:
            return None
        return Section(
            title=chosen.title or "Page",
            url=url,
            html=render_clean_html(chosen.content),
        )

    async def close(self) -> None:
        for page in self._pages.values():
            with contextlib.suppress(PlaywrightError):
                await page.close()
        self._pages.clear()


def _pdf_filename(mode: str, first: Section) -> str:
    if mode == "single":
        return safe_filename(first.title) + ".pdf"
    return safe_filename("pages" if mode == "list" else "site") + ".pdf"


async def run_text_job(job: Job, request: StartJobRequest, services: PipelineServices) -> PipelineResult:
    """Extract every target page and print the combined document."""
    targets = await resolve_targets(job, request, services)
    urls = targets.urls
    total = len(urls)
    settings = services.config.extraction
    job.token.raise_if_cancelled()

    async with services.contexts.get_context(job.job_id, java_script_enabled=False) as fast_ctx, \
            services.contexts.get_context(job.job_id, java_script_enabled=True) as safe_ctx:
        await configure_blocking(fast_ctx, "fast")
        await configure_blocking(safe_ctx, "safe")
        extractor = TextExtractor(fast_ctx, safe_ctx, settings, job.token, job.logger)
        completed = 0

        async def work(url: str, index: int, worker_id: int) -> Optional[Section]:
            nonlocal completed
            job.token.raise_if_cancelled()
            job.update(
                message=f"Extracting text {completed + 1}/{total}...",
                percent=22 + 60 * completed / total,
                current=completed,
                total=total,
            )
            try:
                section = await extractor.extract(url, worker_id)
            finally:
                completed += 1
            PAGES_PROCESSED.labels("pdf", "ok" if section else "empty").inc()
            job.update(percent=22 + 60 * completed / total, current=completed)
            return section

        try:
            results = await services.pool.map(urls, work)
        finally:
            await extractor.close()

        sections = [s for s in results if s is not None]
        if not sections:
            if extractor.blocked_pages and extractor.blocked_pages == total:
                raise TargetBlockedError(f"{total} page(s) behind a verification wall")
            raise NoContentError(f"no readable text on {total} page(s)")

        job.token.raise_if_cancelled()
        job.update(percent=85, message="Generating PDF...", current=total, total=total)
        pdf_bytes = await job.token.guard(render_pdf(safe_ctx, build_combined_html(sections)))

    artifact = Artifact(
        filename=_pdf_filename(targets.mode, sections[0]),
        media_type="application/pdf",
        data=pdf_bytes,
    )
    return PipelineResult(
        artifact=artifact,
        message=f"PDF ready ({len(sections)}/{total} pages)",
    )
