"""Site export micro-service.

This FastAPI app exposes:
- POST /api/pdf/start, /api/images/start    start a job, returns {"jobId"}
- GET  /api/events/{job_id}                  progress stream (Server-Sent Events)
- POST /api/stop/{job_id}                    cancel a running job
- GET  /api/pdf/download/{job_id}            the combined PDF
- GET  /api/images/download/{job_id}         the image ZIP
- /metrics for Prometheus, /healthz for liveness, /stats for job counts

Jobs run in the background on a shared Chromium instance, one set of
browser contexts per job.
"""

from __future__ import annotations

import datetime
import logging
import pathlib
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.background import BackgroundTask

from . import __version__
from .config.production import get_config
from .controller import ArtifactState, JobController, UnknownTaskError
from .jobs import JobKind, StartJobRequest
from .observability.metrics import REQUEST_COUNT, REQUEST_LATENCY, endpoint_label
from .runtime import BrowserRuntime
from .tasks import PipelineServices
from .workers import BrowserContextManager, WorkerPool

config = get_config()

# ----------------------------------------------------------------------------
# Logging
# ----------------------------------------------------------------------------

def init_service_logger() -> logging.Logger:
    """Initialize the service logger: daily file under LOG_ROOT plus stderr."""
    today = datetime.date.today().isoformat()
    root = pathlib.Path(config.system.log_root)
    base_dir = root / "service"

    handlers: list[logging.Handler] = []
    try:
        base_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(base_dir / f"{today}.log"))
    except OSError:
        pass
    handlers.append(logging.StreamHandler())

    return config.setup_logging(handlers)


service_logger = init_service_logger()

# ----------------------------------------------------------------------------
# App + global runtime
# ----------------------------------------------------------------------------

app = FastAPI(title="Site Export Service", version=__version__)

# Global components
job_controller: JobController | None = None
browser_runtime: BrowserRuntime | None = None
context_manager: BrowserContextManager | None = None
worker_pool: WorkerPool | None = None
startup_time = datetime.datetime.utcnow()


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Collect Prometheus metrics for each request."""
    if not config.monitoring.prometheus_enabled:
        return await call_next(request)
    endpoint = endpoint_label(request.url.path)
    method = request.method
    with REQUEST_LATENCY.labels(endpoint).time():
        response = await call_next(request)
    REQUEST_COUNT.labels(endpoint, method, response.status_code).inc()
    return response


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    """Liveness probe with component health checks."""
    components = {
        "browser": "ok" if browser_runtime and browser_runtime.is_running else "error",
        "controller": "ok" if job_controller else "error",
    }
    all_healthy = all(status == "ok" for status in components.values())
    return {
        "status": "ok" if all_healthy else "degraded",
        "components": components,
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    if not config.monitoring.prometheus_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/stats")
async def get_stats():
    """Job counts, worker pool and browser context usage."""
    if not job_controller:
        raise HTTPException(status_code=503, detail="Service not fully initialized")

    uptime_seconds = (datetime.datetime.utcnow() - startup_time).total_seconds()
    return {
        "timestamp": datetime.datetime.utcnow().isoformat(),
        **job_controller.get_stats(),
        "workers": worker_pool.get_stats() if worker_pool else {},
        "browser": {
            "active_contexts": context_manager.get_active_context_count() if context_manager else 0,
        },
        "service": {
            "version": __version__,
            "uptime_seconds": uptime_seconds,
        },
    }

# ----------------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------------

def _require_controller() -> JobController:
    if not job_controller:
        raise HTTPException(status_code=503, detail="Job controller not initialized")
    return job_controller


def _start(kind: str, body: StartJobRequest) -> Dict[str, str]:
    controller = _require_controller()
    try:
        job = controller.start_job(kind, body)
    except UnknownTaskError:
        raise HTTPException(status_code=404, detail=f"Unknown job kind '{kind}'")
    return {"jobId": job.job_id}


@app.post("/api/pdf/start")
async def start_pdf_job(body: StartJobRequest):
    """Start a text job; the PDF is built in the background."""
    return _start(JobKind.PDF.value, body)


@app.post("/api/images/start")
async def start_images_job(body: StartJobRequest):
    """Start an image job; the ZIP is built in the background."""
    return _start(JobKind.IMAGES.value, body)


@app.get("/api/events/{job_id}")
async def job_events(job_id: str):
    """Progress stream. The latest snapshot is sent first; the stream ends with the job."""
    controller = _require_controller()
    job = controller.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    subscriber = job.subscribe()

    async def stream():
        try:
            async for event in subscriber.events():
                yield event.to_sse()
        finally:
            job.unsubscribe(subscriber)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/api/stop/{job_id}")
async def stop_job(job_id: str):
    """Cancel a job. Already finished jobs are left as they are."""
    controller = _require_controller()
    job = controller.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"ok": True, "status": job.status.value}


def _download(kind: JobKind, job_id: str):
    controller = _require_controller()
    state, job = controller.claim_artifact(job_id)
    if state == ArtifactState.UNKNOWN or job.kind != kind:
        return JSONResponse(status_code=404, content={"error": "Job not found"})
    if state == ArtifactState.NOT_READY:
        return JSONResponse(status_code=425, content={"error": "Not ready yet", "percent": job.percent})
    if state == ArtifactState.FAILED:
        return JSONResponse(status_code=500, content={"error": job.error or "Job failed"})
    if state == ArtifactState.FREED:
        return JSONResponse(status_code=410, content={"error": "Artifact already downloaded"})

    artifact = job.artifact
    if artifact.data is not None:
        response = Response(
            content=artifact.data,
            media_type=artifact.media_type,
            headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
        )
        controller.after_download(job)
        return response

    return FileResponse(
        artifact.path,
        media_type=artifact.media_type,
        filename=artifact.filename,
        background=BackgroundTask(controller.after_download, job),
    )


@app.get("/api/pdf/download/{job_id}")
async def download_pdf(job_id: str):
    """The finished PDF."""
    return _download(JobKind.PDF, job_id)


@app.get("/api/images/download/{job_id}")
async def download_images(job_id: str):
    """The finished ZIP."""
    return _download(JobKind.IMAGES, job_id)

# ----------------------------------------------------------------------------
# Startup / shutdown
# ----------------------------------------------------------------------------

@app.on_event("startup")
async def startup():
    global job_controller, browser_runtime, context_manager, worker_pool

    service_logger.info(f"Starting site export service: {config.get_configuration_summary()}")

    browser_runtime = BrowserRuntime(
        headless=config.browser.headless,
        args=list(config.browser.launch_args),
        logger=service_logger.getChild("browser"),
    )
    await browser_runtime.start()

    context_manager = BrowserContextManager(
        browser_runtime.browser,
        service_logger.getChild("contexts"),
        viewport={"width": config.browser.viewport_width, "height": config.browser.viewport_height},
        user_agent=config.browser.user_agent,
    )
    worker_pool = WorkerPool(
        config.scaling.concurrency,
        logger=service_logger.getChild("workers"),
        hard_max=config.scaling.max_concurrency,
    )
    job_controller = JobController(
        PipelineServices(contexts=context_manager, pool=worker_pool, config=config),
        config=config,
        logger=service_logger.getChild("controller"),
    )
    await job_controller.start()
    service_logger.info("Site export service started")


@app.on_event("shutdown")
async def shutdown():
    if job_controller:
        await job_controller.stop()
    if context_manager:
        await context_manager.cleanup_all_contexts()
    if browser_runtime:
        await browser_runtime.stop()
    service_logger.info("Site export service stopped")
