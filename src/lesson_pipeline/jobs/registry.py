"""Worker interface and job-type registry."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from lesson_pipeline.jobs.budget import TickBudget
from lesson_pipeline.jobs.models import JobView
from lesson_pipeline.jobs.outcomes import Outcome


class PayloadError(ValueError):
    """Job payload does not match the schema of its job type."""


@dataclass(slots=True)
class TickContext:
    """Per-tick handles passed to a worker."""

    worker_id: str
    budget: TickBudget
    heartbeat: Callable[[], bool]


class JobWorker(Protocol):
    """Protocol implemented by job-type workers.

    ``stages`` is the forward order of the worker's stages; the first entry
    is the stage new jobs start in. ``parse_payload`` raises
    :class:`PayloadError` for malformed payloads.
    """

    job_type: str
    stages: tuple[str, ...]
    propagates_failure: bool

    def parse_payload(self, payload: dict[str, Any]) -> Any:
        """Validate a raw payload into the worker's typed payload."""

    def tick(self, job: JobView, payload: Any, context: TickContext) -> Outcome:
        """Run one bounded unit of work."""


class WorkerRegistry:
    """Maps ``job_type`` to the worker that handles it."""

    def __init__(self, workers: Iterable[JobWorker] = ()) -> None:
        self._workers: dict[str, JobWorker] = {}
        for worker in workers:
            self.register(worker)

    def register(self, worker: JobWorker) -> None:
        if not worker.stages:
            raise ValueError(f"Worker for {worker.job_type!r} must declare at least one stage.")
        if worker.job_type in self._workers:
            raise ValueError(f"Worker already registered for job type {worker.job_type!r}.")
        self._workers[worker.job_type] = worker

    def get(self, job_type: str) -> JobWorker | None:
        return self._workers.get(job_type)

    def job_types(self) -> tuple[str, ...]:
        return tuple(self._workers)

    def is_forward_transition(self, *, job_type: str, current: str, target: str) -> bool:
        """True when ``target`` is ``current`` or a later stage of ``job_type``."""

        stages = self._workers[job_type].stages
        if target not in stages:
            return False
        if current not in stages:
            return True
        return stages.index(target) >= stages.index(current)
