# Export pipelines
from typing import Awaitable, Callable, Dict

from ..jobs import Job, StartJobRequest
from .base import PipelineResult, PipelineServices
from .images import run_image_job
from .text import run_text_job


Pipeline = Callable[..., Awaitable[PipelineResult]]


class TaskRegistry:
    def __init__(self) -> None:
        self._tasks: Dict[str, Pipeline] = {}

    def register(self, name: str):
        def deco(fn):
            self._tasks[name] = fn
            return fn
        return deco

    def resolve(self, name: str) -> str:
        variants = [name, name.lower(), name.replace("-", "_"), name.replace("_", "-")]
        for v in variants:
            if v in self._tasks:
                return v
        return name

    @property
    def tasks(self) -> Dict[str, Pipeline]:
        return self._tasks


_registry = TaskRegistry()


@_registry.register("pdf")
async def pdf_pipeline(*, job: Job, request: StartJobRequest, services: PipelineServices) -> PipelineResult:
    return await run_text_job(job, request, services)


@_registry.register("images")
async def images_pipeline(*, job: Job, request: StartJobRequest, services: PipelineServices) -> PipelineResult:
    return await run_image_job(job, request, services)


# Exports for the controller
task_registry = _registry.tasks


def normalise_task(name: str) -> str:
    return _registry.resolve(name)
