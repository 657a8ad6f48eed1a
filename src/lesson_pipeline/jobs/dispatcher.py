"""Dispatcher: claims runnable jobs, runs one tick each and applies outcomes."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any

from lesson_pipeline.jobs.budget import TickBudget
from lesson_pipeline.jobs.failure_classifier import classify_exception
from lesson_pipeline.jobs.models import FailureClass, JobView
from lesson_pipeline.jobs.outcomes import Advance, Complete, Fail, Outcome, Retry
from lesson_pipeline.jobs.registry import JobWorker, PayloadError, TickContext, WorkerRegistry
from lesson_pipeline.jobs.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchReport:
    """Aggregate dispatcher counters for CLI and HTTP reporting."""

    claimed: int = 0
    completed: int = 0
    advanced: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    lost_claims: int = 0
    orphans_recovered: int = 0
    cycles: int = 0

    def add(self, other: DispatchReport) -> None:
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @property
    def idle(self) -> bool:
        return self.claimed == 0


class Dispatcher:
    """Stateless between cycles; every fact it needs lives in the job store."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: WorkerRegistry,
        worker_id: str,
        claim_batch_size: int = 1,
        tick_time_budget_seconds: float = 8.5,
        staleness_threshold_seconds: float = 180.0,
        type_limits: Mapping[str, int] | None = None,
        poll_interval_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.claim_batch_size = claim_batch_size
        self.tick_time_budget_seconds = tick_time_budget_seconds
        self.staleness_threshold_seconds = staleness_threshold_seconds
        self.type_limits = dict(type_limits or {})
        self.poll_interval_seconds = poll_interval_seconds
        self._clock = clock
        self._stop_requested = False

    def run_once(self, *, job_types: Sequence[str] | None = None) -> DispatchReport:
        """Sweep orphans, claim one batch and tick every claimed job once."""

        report = DispatchReport(cycles=1)
        budget = TickBudget(self.tick_time_budget_seconds, clock=self._clock)

        if self.staleness_threshold_seconds > 0:
            report.orphans_recovered = self.repository.sweep_orphans(
                staleness_threshold=timedelta(seconds=self.staleness_threshold_seconds),
            )

        candidate_types = self._candidate_types(job_types)
        jobs = self.repository.claim(
            worker_id=self.worker_id,
            limit=self.claim_batch_size,
            job_types=candidate_types,
            type_quotas=self._type_quotas(),
        )
        report.claimed = len(jobs)
        if not jobs:
            logger.debug("[%s] No runnable jobs.", self.worker_id)
            return report

        for job in jobs:
            if budget.expired:
                if self.repository.release(
                    job_id=job.id,
                    worker_id=self.worker_id,
                    reason="invocation budget exhausted before tick",
                ):
                    report.deferred += 1
                else:
                    report.lost_claims += 1
                continue
            self._run_job(job=job, budget=budget, report=report)

        logger.info("[%s] Dispatch cycle: %s", self.worker_id, report.to_dict())
        return report

    def run_loop(
        self,
        *,
        max_cycles: int | None = None,
        max_idle_cycles: int = 1,
        job_types: Sequence[str] | None = None,
    ) -> DispatchReport:
        """Repeat :meth:`run_once` until the queue stays idle or ``max_cycles`` is hit.

        Args:
            max_cycles: Stop after this many cycles (None = unlimited).
            max_idle_cycles: How many consecutive idle cycles before exiting.
                Jobs waiting on ``next_retry_at`` count as idle.
            job_types: Optional subset of registered job types to run.
        """

        aggregate = DispatchReport()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                report = self.run_once(job_types=job_types)
                aggregate.add(report)
                if report.idle:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_cycles:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def _candidate_types(self, job_types: Sequence[str] | None) -> list[str]:
        registered = self.registry.job_types()
        if job_types is None:
            return list(registered)
        return [job_type for job_type in job_types if job_type in registered]

    def _type_quotas(self) -> dict[str, int]:
        """Headroom per limited type: its limit minus jobs already processing."""

        if not self.type_limits:
            return {}
        active = self.repository.count_processing_by_type()
        return {
            job_type: limit - active.get(job_type, 0)
            for job_type, limit in self.type_limits.items()
        }

    def _run_job(self, *, job: JobView, budget: TickBudget, report: DispatchReport) -> None:
        worker = self.registry.get(job.job_type)
        if worker is None:
            raise RuntimeError(f"Claimed job of unregistered type: {job.job_type}")

        logger.info(
            "[%s] Ticking %s job %s (owner=%s stage=%s cursor=%s)",
            self.worker_id,
            job.job_type,
            job.id,
            job.owner_ref,
            job.stage,
            job.checkpoint_cursor,
        )
        try:
            payload = worker.parse_payload(job.payload)
        except PayloadError as error:
            logger.error("[%s] Job %s has invalid payload: %s", self.worker_id, job.id, error)
            self._record(
                report,
                "failed",
                self.repository.fail(
                    job_id=job.id,
                    worker_id=self.worker_id,
                    reason=f"Invalid payload: {error}",
                    failure_class=FailureClass.INPUT_CONTRACT_ERROR,
                    propagate=worker.propagates_failure,
                    dead_letter=True,
                ),
            )
            return

        context = TickContext(
            worker_id=self.worker_id,
            budget=budget,
            heartbeat=lambda: self.repository.heartbeat(job_id=job.id, worker_id=self.worker_id),
        )
        try:
            outcome = worker.tick(job, payload, context)
        except Exception as error:  # noqa: BLE001
            outcome = self._outcome_for_exception(job=job, error=error)
        self._apply_outcome(job=job, worker=worker, outcome=outcome, report=report)

    def _outcome_for_exception(self, *, job: JobView, error: Exception) -> Outcome:
        classification = classify_exception(error)
        reason = f"{type(error).__name__}: {error}"
        if classification.failure_class == FailureClass.TIMEOUT:
            logger.info("[%s] Job %s yielded on its tick budget: %s", self.worker_id, job.id, error)
            return Advance(
                next_stage=job.stage,
                progress=job.progress,
                payload=job.payload,
                cursor=job.checkpoint_cursor,
            )
        if classification.retryable:
            logger.warning(
                "[%s] Job %s raised transient error %s: %s",
                self.worker_id,
                job.id,
                classification.to_event_details(),
                reason,
            )
            return Retry(reason=reason)
        logger.exception(
            "[%s] Job %s raised permanent error %s",
            self.worker_id,
            job.id,
            classification.to_event_details(),
        )
        return Fail(reason=reason)

    def _apply_outcome(
        self,
        *,
        job: JobView,
        worker: JobWorker,
        outcome: Outcome,
        report: DispatchReport,
    ) -> None:
        if isinstance(outcome, Advance):
            if not self.registry.is_forward_transition(
                job_type=job.job_type,
                current=job.stage,
                target=outcome.next_stage,
            ):
                self._record(
                    report,
                    "failed",
                    self.repository.fail(
                        job_id=job.id,
                        worker_id=self.worker_id,
                        reason=f"Illegal stage transition {job.stage!r} -> {outcome.next_stage!r}",
                        failure_class=FailureClass.ILLEGAL_STAGE_TRANSITION,
                        propagate=worker.propagates_failure,
                    ),
                )
                return
            self._record(
                report,
                "advanced",
                self.repository.advance(
                    job_id=job.id,
                    worker_id=self.worker_id,
                    stage=outcome.next_stage,
                    progress=max(job.progress, outcome.progress),
                    payload=outcome.payload,
                    checkpoint_cursor=outcome.cursor,
                    delay_seconds=outcome.delay_seconds,
                    owner_stage=outcome.owner_stage,
                ),
            )
            return

        if isinstance(outcome, Complete):
            self._record(
                report,
                "completed",
                self.repository.complete(
                    job_id=job.id,
                    worker_id=self.worker_id,
                    result=outcome.result,
                    spawns=outcome.spawns,
                    owner_status=outcome.owner_status,
                    owner_stage=outcome.owner_stage,
                ),
            )
            return

        if isinstance(outcome, Retry):
            decision = self.repository.retry(
                job_id=job.id,
                worker_id=self.worker_id,
                reason=outcome.reason,
                propagate=worker.propagates_failure,
            )
            if not decision.applied:
                self._record(report, "retried", applied=False)
                return
            if decision.exhausted:
                logger.error(
                    "[%s] Job %s exhausted %d attempts: %s",
                    self.worker_id,
                    job.id,
                    decision.attempt_count,
                    outcome.reason,
                )
                report.failed += 1
                return
            logger.warning(
                "[%s] Job %s retry %d scheduled in %.1fs: %s",
                self.worker_id,
                job.id,
                decision.attempt_count,
                decision.delay_seconds or 0.0,
                outcome.reason,
            )
            report.retried += 1
            return

        propagate = worker.propagates_failure if outcome.propagate is None else outcome.propagate
        logger.error("[%s] Job %s failed: %s", self.worker_id, job.id, outcome.reason)
        self._record(
            report,
            "failed",
            self.repository.fail(
                job_id=job.id,
                worker_id=self.worker_id,
                reason=outcome.reason,
                propagate=propagate,
            ),
        )

    def _record(self, report: DispatchReport, counter: str, applied: bool) -> None:
        if applied:
            setattr(report, counter, getattr(report, counter) + 1)
            return
        logger.warning("[%s] Claim lost before recording %s outcome.", self.worker_id, counter)
        report.lost_claims += 1

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: Any) -> None:
            logger.info("[%s] Stop requested by signal %s.", self.worker_id, signum)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
