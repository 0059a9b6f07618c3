"""Job-scoped cancellation token.

The token is passed down every stage of a pipeline. Stages call
``raise_if_cancelled()`` around each suspension point and wrap in-flight
network or render operations in ``guard()`` so a stop request aborts them.
Teardown callbacks registered on the token run exactly once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

from .errors import JobCancelledError


Teardown = Callable[[], Any]


class CancellationToken:
    """Idempotent cancel flag with an abort signal and teardown hooks."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._event = asyncio.Event()
        self._callbacks: List[Teardown] = []
        self._pending: Set[asyncio.Task] = set()
        self.reason: str = "Job cancelled."
        self.logger = logger or logging.getLogger("sitepress.cancellation")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_teardown(self, callback: Teardown) -> None:
        """Register a callback; runs immediately if the token is already cancelled."""
        if self.cancelled:
            self._run_callback(callback)
        else:
            self._callbacks.append(callback)

    def cancel(self, reason: str = "Job cancelled.") -> bool:
        """Set the flag and run teardown once. Returns False on repeat calls."""
        if self.cancelled:
            return False
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run_callback(callback)
        return True

    def _run_callback(self, callback: Teardown) -> None:
        try:
            result = callback()
        except Exception as e:
            self.logger.warning(f"Teardown callback failed: {e}")
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_teardown_done)

    def _on_teardown_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.warning(f"Teardown task failed: {task.exception()}")

    async def wait_teardown(self) -> None:
        """Wait for asynchronous teardown callbacks to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelledError(self.reason)

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless the token fires first, in which case abort it."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise JobCancelledError(self.reason)

    async def sleep(self, seconds: float) -> None:
        """Cancellable settle delay."""
        await self.guard(asyncio.sleep(seconds))
