"""Job controller: owns every job from start to removal.

- ``start_job`` registers a job and runs its pipeline in the background
- ``cancel`` sets the job's token, tears down its browser contexts and
  forces the error state; repeated or late cancels are no-ops
- ``claim_artifact`` tells the download endpoint what to answer
- a periodic sweep drops jobs older than the retention window
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .config.production import ProductionConfig, get_config
from .jobs import Job, JobKind, JobStatus, JobStore, ProgressSubscriber, StartJobRequest
from .observability.metrics import ACTIVE_JOBS, JOB_COUNT, JOB_DURATION
from .reliability.errors import ErrorContext, ErrorHandler, JobCancelledError
from .tasks import Pipeline, PipelineServices, normalise_task, task_registry


CANCEL_MESSAGE = "Job cancelled."


class UnknownTaskError(KeyError):
    """No pipeline registered under the requested name."""


class ArtifactState(str, Enum):
    UNKNOWN = "unknown"
    NOT_READY = "not_ready"
    FAILED = "failed"
    FREED = "freed"
    READY = "ready"


class JobController:
    """High-level job management interface."""

    def __init__(
        self,
        services: Optional[PipelineServices] = None,
        *,
        pipelines: Optional[Dict[str, Pipeline]] = None,
        config: Optional[ProductionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.services = services
        self.pipelines = pipelines if pipelines is not None else task_registry
        self.config = config or (services.config if services else get_config())
        self.logger = logger or logging.getLogger("sitepress.controller")
        self.store = JobStore()
        self.error_handler = ErrorHandler(self.logger)
        self._cleanup_task: Optional[asyncio.Task] = None

    # ── lifecycle ──

    async def start(self) -> None:
        """Start the periodic sweep."""
        self._cleanup_task = asyncio.create_task(self._periodic_cleanup())
        self.logger.info("Job controller started with periodic cleanup")

    async def stop(self) -> None:
        """Cancel running jobs, stop the sweep and free every artifact."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        tasks = []
        for job in self.store.all():
            if not job.is_terminal:
                self.cancel(job.job_id)
            if job.task is not None:
                tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for job in self.store.all():
            job.release_artifact()
            job.close_subscribers()
        self.logger.info("Job controller stopped")

    # ── jobs ──

    def start_job(self, kind: str, request: StartJobRequest) -> Job:
        """Register a job and schedule its pipeline; returns immediately."""
        name = normalise_task(kind)
        pipeline = self.pipelines.get(name)
        if pipeline is None:
            raise UnknownTaskError(kind)

        job = Job(JobKind(name))
        self.store.add(job)
        job.token.add_teardown(lambda: self._teardown(job))
        job.task = asyncio.create_task(self._run(job, pipeline, request))
        ACTIVE_JOBS.inc()
        self.logger.info(f"Started {name} job {job.job_id} (mode={request.mode or 'auto'})")
        return job

    async def _teardown(self, job: Job) -> None:
        if self.services is not None:
            await self.services.contexts.close_job_contexts(job.job_id)

    async def _run(self, job: Job, pipeline: Pipeline, request: StartJobRequest) -> None:
        started = time.monotonic()
        try:
            job.update(percent=2, message="Starting browser...")
            result = await pipeline(job=job, request=request, services=self.services)
            # a stop that raced the last stage has already made the job terminal
            if not job.finish(result.artifact, result.message):
                result.artifact.release()
        except JobCancelledError as e:
            job.fail(e.user_message())
        except asyncio.CancelledError:
            job.token.cancel(CANCEL_MESSAGE)
            job.fail(CANCEL_MESSAGE)
            raise
        except Exception as e:
            context = ErrorContext(job_id=job.job_id, kind=job.kind.value)
            enhanced = self.error_handler.handle_error(e, context)
            job.fail(enhanced.user_message())
        finally:
            if job.status != JobStatus.DONE:
                job.release_artifact()
            JOB_COUNT.labels(job.kind.value, job.status.value).inc()
            JOB_DURATION.labels(job.kind.value).observe(time.monotonic() - started)
            ACTIVE_JOBS.dec()

    def get(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def subscribe(self, job_id: str) -> Optional[ProgressSubscriber]:
        job = self.store.get(job_id)
        return job.subscribe() if job else None

    def cancel(self, job_id: str) -> Optional[Job]:
        """Stop a running job. Unknown id returns None; terminal jobs are left alone."""
        job = self.store.get(job_id)
        if job is None:
            return None
        if job.is_terminal:
            return job
        self.logger.info(f"Cancelling job {job_id}")
        job.token.cancel(CANCEL_MESSAGE)
        job.fail(CANCEL_MESSAGE)
        return job

    def claim_artifact(self, job_id: str) -> Tuple[ArtifactState, Optional[Job]]:
        job = self.store.get(job_id)
        if job is None:
            return ArtifactState.UNKNOWN, None
        if job.status == JobStatus.RUNNING:
            return ArtifactState.NOT_READY, job
        if job.status == JobStatus.ERROR:
            return ArtifactState.FAILED, job
        if job.artifact is None or job.artifact.freed:
            return ArtifactState.FREED, job
        return ArtifactState.READY, job

    def after_download(self, job: Job) -> None:
        """Free the artifact once served, when configured to."""
        if self.config.jobs.free_after_download and job.artifact is not None:
            job.artifact.release()
            self.logger.info(f"Freed artifact of job {job.job_id} after download")

    # ── retention ──

    def sweep_expired(self) -> int:
        """Remove jobs older than the retention window."""
        expired = self.store.expired(self.config.jobs.retention_seconds)
        for job in expired:
            if not job.is_terminal:
                self.cancel(job.job_id)
            job.release_artifact()
            job.close_subscribers()
            self.store.remove(job.job_id)
        return len(expired)

    async def _periodic_cleanup(self) -> None:
        """Periodic cleanup of expired jobs."""
        interval = self.config.jobs.sweep_interval_seconds
        while True:
            try:
                await asyncio.sleep(interval)
                removed = self.sweep_expired()

                if removed:
                    self.logger.info(f"Cleaned up {removed} expired jobs")

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in periodic cleanup: {e}")

    def get_stats(self) -> Dict[str, Any]:
        jobs = self.store.all()
        return {
            "jobs": self.store.get_stats(),
            "subscribers": sum(job.subscriber_count for job in jobs),
            "errors": self.error_handler.get_error_stats(),
        }
