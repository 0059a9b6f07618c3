"""Job state, progress publication and the in-memory job registry.

A ``Job`` is a small state machine: it starts ``running`` and ends in exactly
one of ``done`` or ``error``. Once terminal, every further write is refused.
While running, ``percent`` never decreases. Every accepted change is pushed
to all subscribers as a ``ProgressEvent`` snapshot.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import pathlib
import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field

from .reliability.cancellation import CancellationToken
from .utils import remove_quietly


class JobStatus(str, Enum):
    """Job lifecycle states."""
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class JobKind(str, Enum):
    PDF = "pdf"
    IMAGES = "images"


class StartJobRequest(BaseModel):
    """Body of the start endpoints; camelCase aliases match the web client."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mode: Optional[str] = None
    url: Optional[str] = None
    urls: Optional[List[str]] = None
    start_url: Optional[str] = Field(default=None, alias="startUrl")
    max_pages: Optional[int] = Field(default=None, alias="maxPages")
    max_depth: Optional[int] = Field(default=None, alias="maxDepth")
    include_patterns: Union[List[str], str, None] = Field(default=None, alias="includePatterns")
    exclude_patterns: Union[List[str], str, None] = Field(default=None, alias="excludePatterns")
    min_kb: Optional[float] = Field(default=None, alias="minKB")


class ProgressEvent(BaseModel):
    """Snapshot pushed on the progress stream."""
    status: JobStatus
    percent: int
    message: str
    current: int = 0
    total: int = 0

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json()}\n\n"


@dataclass
class Artifact:
    """Finished job output, held in memory or as a file on disk."""
    filename: str
    media_type: str
    data: Optional[bytes] = None
    path: Optional[pathlib.Path] = None
    freed: bool = False

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path is not None and self.path.exists():
            return self.path.stat().st_size
        return 0

    def release(self) -> None:
        """Drop the bytes or delete the file."""
        self.data = None
        if self.path is not None:
            remove_quietly(self.path)
        self.freed = True


class ProgressSubscriber:
    """One open progress stream; a bounded queue of snapshots."""

    def __init__(self, maxsize: int = 64):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, event: ProgressEvent) -> None:
        if self.closed:
            raise RuntimeError("subscriber closed")
        if self._queue.full():
            # slow reader: only the newest snapshots matter
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class Job:
    """Mutable job state; all writes go through update/finish/fail."""

    def __init__(self, kind: JobKind, job_id: Optional[str] = None, logger: Optional[logging.Logger] = None):
        self.job_id = job_id or secrets.token_hex(8)
        self.kind = JobKind(kind)
        self.logger = logger or logging.getLogger(f"sitepress.job.{self.job_id}")
        self.status = JobStatus.RUNNING
        self.percent = 1
        self.message = "Job created"
        self.current = 0
        self.total = 0
        self.created_at = datetime.datetime.utcnow()
        self._created_monotonic = time.monotonic()
        self.finished_at: Optional[datetime.datetime] = None
        self.token = CancellationToken(self.logger)
        self.artifact: Optional[Artifact] = None
        self.error: Optional[str] = None
        self.task: Optional[asyncio.Task] = None
        self._subscribers: Set[ProgressSubscriber] = set()

    # ── state ──

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.RUNNING

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self._created_monotonic

    def snapshot(self) -> ProgressEvent:
        return ProgressEvent(
            status=self.status,
            percent=self.percent,
            message=self.message,
            current=self.current,
            total=self.total,
        )

    def update(
        self,
        *,
        percent: Optional[float] = None,
        message: Optional[str] = None,
        current: Optional[int] = None,
        total: Optional[int] = None,
    ) -> bool:
        """Apply a progress change while running. Percent only moves forward."""
        if self.is_terminal:
            return False
        if percent is not None:
            self.percent = max(self.percent, min(100, int(round(percent))))
        if message is not None:
            self.message = message
        if current is not None:
            self.current = int(current)
        if total is not None:
            self.total = int(total)
        self.publish()
        return True

    def finish(self, artifact: Artifact, message: str) -> bool:
        """running -> done."""
        if self.is_terminal:
            return False
        self.artifact = artifact
        self.status = JobStatus.DONE
        self.percent = 100
        self.message = message
        self.current = self.total
        self.finished_at = datetime.datetime.utcnow()
        self.logger.info(f"Job {self.job_id} done: {message}")
        self.publish()
        self.close_subscribers()
        return True

    def fail(self, message: str) -> bool:
        """running -> error. Any artifact produced so far is deleted."""
        if self.is_terminal:
            return False
        self.status = JobStatus.ERROR
        self.error = message
        self.message = message
        self.percent = 100
        self.finished_at = datetime.datetime.utcnow()
        self.release_artifact()
        self.logger.info(f"Job {self.job_id} failed: {message}")
        self.publish()
        self.close_subscribers()
        return True

    def release_artifact(self) -> None:
        if self.artifact is not None:
            self.artifact.release()

    # ── pub/sub ──

    def subscribe(self) -> ProgressSubscriber:
        """New subscriber primed with the current snapshot; closed at once if terminal."""
        subscriber = ProgressSubscriber()
        subscriber.push(self.snapshot())
        if self.is_terminal:
            subscriber.close()
        else:
            self._subscribers.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: ProgressSubscriber) -> None:
        self._subscribers.discard(subscriber)

    def publish(self) -> None:
        event = self.snapshot()
        for subscriber in list(self._subscribers):
            try:
                subscriber.push(event)
            except Exception as e:
                self.logger.debug(f"Dropping progress subscriber: {e}")
                self._subscribers.discard(subscriber)

    def close_subscribers(self) -> None:
        for subscriber in list(self._subscribers):
            subscriber.close()
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class JobStore:
    """In-memory job registry keyed by job id."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    def add(self, job: Job) -> None:
        self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[Job]:
        return self._jobs.pop(job_id, None)

    def all(self) -> List[Job]:
        return list(self._jobs.values())

    def expired(self, retention_seconds: float) -> List[Job]:
        return [job for job in self._jobs.values() if job.age_seconds > retention_seconds]

    def get_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        stats["total"] = len(self._jobs)
        return stats

    def __len__(self) -> int:
        return len(self._jobs)
