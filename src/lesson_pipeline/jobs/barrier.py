"""Fan-in barrier: a job that waits for its siblings before merging."""

from __future__ import annotations

import logging
from typing import Any

from lesson_pipeline.jobs.models import JobStatus, JobView
from lesson_pipeline.jobs.outcomes import Advance, Outcome
from lesson_pipeline.jobs.registry import TickContext
from lesson_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


class BarrierWorker:
    """Base for workers that aggregate the results of sibling jobs.

    Each tick counts siblings of ``sibling_types`` for the same owner that
    are still pending or processing. While any remain, the barrier yields
    with ``poll_seconds`` delay. Once none remain and at least
    ``expected_siblings`` exist, :meth:`merge` runs with the completed and
    permanently failed siblings split apart. Failed siblings do not block
    the barrier.
    """

    job_type: str = ""
    stages: tuple[str, ...] = ("wait",)
    propagates_failure: bool = True
    sibling_types: tuple[str, ...] = ()

    def __init__(self, *, repository: JobRepository, poll_seconds: float) -> None:
        self.repository = repository
        self.poll_seconds = poll_seconds

    def expected_siblings(self, payload: Any) -> int:
        raise NotImplementedError

    def merge(
        self,
        job: JobView,
        payload: Any,
        completed: list[JobView],
        failed: list[JobView],
        context: TickContext,
    ) -> Outcome:
        raise NotImplementedError

    def parse_payload(self, payload: dict[str, Any]) -> Any:
        return payload

    def tick(self, job: JobView, payload: Any, context: TickContext) -> Outcome:
        outstanding = self.repository.count_outstanding(
            owner_ref=job.owner_ref,
            job_types=self.sibling_types,
        )
        if outstanding:
            logger.debug(
                "Barrier %s waiting on %d sibling(s) of owner %s",
                job.id,
                outstanding,
                job.owner_ref,
            )
            return self._wait(job)

        siblings = self.repository.list_owner_jobs(
            owner_ref=job.owner_ref,
            job_types=self.sibling_types,
        )
        expected = self.expected_siblings(payload)
        if len(siblings) < expected:
            logger.debug(
                "Barrier %s sees %d of %d expected siblings",
                job.id,
                len(siblings),
                expected,
            )
            return self._wait(job)

        completed = [row for row in siblings if row.status == JobStatus.COMPLETED]
        failed = [row for row in siblings if row.status == JobStatus.FAILED]
        if failed:
            logger.warning(
                "Barrier %s merging without %d failed sibling(s)",
                job.id,
                len(failed),
            )
        return self.merge(job, payload, completed, failed, context)

    def _wait(self, job: JobView) -> Advance:
        return Advance(
            next_stage=job.stage,
            progress=job.progress,
            payload=job.payload,
            cursor=job.checkpoint_cursor,
            delay_seconds=self.poll_seconds,
        )
