"""Bounded worker pool and per-job browser context management.

- ``run_with_worker_pool`` runs an async function over a list with at most W
  coroutines in flight and returns results in input order
- ``WorkerPool`` applies the configured width ceiling and keeps stats
- ``BrowserContextManager`` owns every browser context a job opens so a
  cancellation can force-close them
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from playwright.async_api import Browser, BrowserContext


T = TypeVar("T")
R = TypeVar("R")

ItemFunc = Callable[[T, int, int], Awaitable[R]]


async def run_with_worker_pool(
    items: Sequence[T],
    worker_count: int,
    fn: ItemFunc,
) -> List[R]:
    """Apply ``fn(item, index, worker_id)`` to every item, ``results[i]`` for ``items[i]``.

    Workers pull the next index from a shared cursor, so completion order is
    arbitrary but result order is not. Exceptions are not caught: the first
    one to escape ``fn`` cancels the remaining workers and propagates.
    """
    items = list(items)
    total = len(items)
    if total == 0:
        return []

    width = max(1, min(int(worker_count or 1), total))
    results: List[Any] = [None] * total
    cursor = 0

    async def worker(worker_id: int) -> None:
        nonlocal cursor
        while cursor < total:
            index = cursor
            cursor += 1
            results[index] = await fn(items[index], index, worker_id)

    tasks = [asyncio.ensure_future(worker(w)) for w in range(width)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return results


class WorkerPool:
    """Configured-width front end for ``run_with_worker_pool``."""

    def __init__(self, max_workers: int, logger: Optional[logging.Logger] = None, hard_max: int = 8):
        self.hard_max = hard_max
        self.max_workers = max(1, min(hard_max, int(max_workers)))
        self.logger = logger or logging.getLogger("sitepress.workers")
        self._active_runs = 0
        self._items_processed = 0

    def width_for(self, total: int, requested: Optional[int] = None) -> int:
        width = self.max_workers if requested is None else max(1, min(self.max_workers, requested))
        return max(1, min(width, total)) if total else 0

    async def map(self, items: Sequence[T], fn: ItemFunc, width: Optional[int] = None) -> List[R]:
        items = list(items)
        workers = self.width_for(len(items), width)
        self._active_runs += 1
        try:
            results = await run_with_worker_pool(items, workers, fn)
            self._items_processed += len(items)
            return results
        finally:
            self._active_runs -= 1

    def get_stats(self) -> Dict[str, Any]:
        return {
            "max_workers": self.max_workers,
            "active_runs": self._active_runs,
            "items_processed": self._items_processed,
        }


class BrowserContextManager:
    """Manages browser contexts with proper lifecycle and cleanup."""

    def __init__(self, browser: Browser, logger: logging.Logger, **default_options):
        self.browser = browser
        self.logger = logger
        self.default_options = default_options
        self._active_contexts: Dict[str, List[BrowserContext]] = {}

    @asynccontextmanager
    async def get_context(self, job_id: str, **context_options):
        """Get a dedicated browser context for a job with guaranteed cleanup."""
        context = None
        try:
            options = {**self.default_options, **context_options}
            context = await self.browser.new_context(**options)
            self._active_contexts.setdefault(job_id, []).append(context)
            self.logger.debug(f"Created browser context for job {job_id}")
            yield context
        finally:
            if context:
                await self._safe_close_context(job_id, context)
                contexts = self._active_contexts.get(job_id)
                if contexts is not None:
                    if context in contexts:
                        contexts.remove(context)
                    if not contexts:
                        self._active_contexts.pop(job_id, None)

    async def close_job_contexts(self, job_id: str) -> None:
        """Force-close every context a job still holds (cancellation teardown)."""
        contexts = self._active_contexts.pop(job_id, [])
        if contexts:
            self.logger.info(f"Force-closing {len(contexts)} browser context(s) for job {job_id}")
        await asyncio.gather(
            *(self._safe_close_context(job_id, c) for c in contexts),
            return_exceptions=True,
        )

    async def cleanup_all_contexts(self) -> None:
        """Emergency cleanup of all active contexts."""
        if not self._active_contexts:
            return

        self.logger.warning(f"Emergency cleanup of contexts for {len(self._active_contexts)} job(s)")
        for job_id in list(self._active_contexts):
            await self.close_job_contexts(job_id)

    async def _safe_close_context(self, job_id: str, context: BrowserContext) -> None:
        """Safely close a browser context with error handling."""
        try:
            await context.close()
            self.logger.debug(f"Closed browser context for job {job_id}")
        except Exception as e:
            self.logger.warning(f"Error closing context for job {job_id}: {e}")

    def get_active_context_count(self) -> int:
        """Get the number of active browser contexts."""
        return sum(len(c) for c in self._active_contexts.values())
