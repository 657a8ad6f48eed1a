from __future__ import annotations

from typing import Any

import allure

from lesson_pipeline.jobs.barrier import BarrierWorker
from lesson_pipeline.jobs.budget import TickBudget
from lesson_pipeline.jobs.dispatcher import Dispatcher
from lesson_pipeline.jobs.models import JobSpawn, JobStatus, JobView, OwnerStatus, dedupe_key_for
from lesson_pipeline.jobs.outcomes import Advance, Complete, Fail, Outcome
from lesson_pipeline.jobs.registry import TickContext, WorkerRegistry
from lesson_pipeline.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Fan-out / Fan-in Barrier"),
]


class CollectBarrier(BarrierWorker):
    job_type = "collect"
    sibling_types = ("part",)

    def __init__(self, repository: JobRepository) -> None:
        super().__init__(repository=repository, poll_seconds=0.0)
        self.merges: list[tuple[list[int], list[int]]] = []

    def expected_siblings(self, payload: dict[str, Any]) -> int:
        return int(payload["expected"])

    def merge(
        self,
        job: JobView,
        payload: dict[str, Any],
        completed: list[JobView],
        failed: list[JobView],
        context: TickContext,
    ) -> Outcome:
        done = sorted(row.payload["n"] for row in completed)
        missing = sorted(row.payload["n"] for row in failed)
        self.merges.append((done, missing))
        return Complete(
            result={"parts": done, "missing": missing},
            owner_status=OwnerStatus.COMPLETED,
            owner_stage="completed",
        )


class PartWorker:
    job_type = "part"
    stages = ("run",)
    propagates_failure = False

    def __init__(self, failing: set[int] | None = None) -> None:
        self.failing = failing or set()

    def parse_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        return payload

    def tick(self, job: JobView, payload: dict[str, Any], context: TickContext) -> Outcome:
        if payload["n"] in self.failing:
            return Fail(reason=f"part {payload['n']} unreadable")
        return Complete(result={"n": payload["n"]})


def _spawn_graph(repository: JobRepository, *, parts: int, expected: int) -> str:
    barrier_id = repository.start_owner(
        owner_ref="lesson-1",
        root=JobSpawn(
            job_type="collect",
            owner_ref="lesson-1",
            stage="wait",
            payload={"expected": expected},
            dedupe_key=dedupe_key_for("lesson-1", "collect"),
        ),
        pipeline_stage="analyzing_segments",
    )
    repository.spawn_many(
        [
            JobSpawn(
                job_type="part",
                owner_ref="lesson-1",
                stage="run",
                payload={"n": index},
                dedupe_key=dedupe_key_for("lesson-1", "part", str(index)),
            )
            for index in range(parts)
        ],
    )
    return barrier_id


def _context() -> TickContext:
    return TickContext(worker_id="w", budget=TickBudget(10.0), heartbeat=lambda: True)


def test_barrier_waits_for_all_five_siblings(repository: JobRepository) -> None:
    barrier = CollectBarrier(repository)
    barrier_id = _spawn_graph(repository, parts=5, expected=5)
    dispatcher = Dispatcher(
        repository=repository,
        registry=WorkerRegistry([barrier, PartWorker()]),
        worker_id="w",
        claim_batch_size=10,
        poll_interval_seconds=0.0,
    )

    first = dispatcher.run_once()
    assert first.claimed == 6
    assert first.advanced == 1
    assert first.completed == 5
    assert barrier.merges == []

    second = dispatcher.run_once()
    assert second.completed == 1
    assert barrier.merges == [([0, 1, 2, 3, 4], [])]

    job = repository.get_job(job_id=barrier_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.payload["result"] == {"parts": [0, 1, 2, 3, 4], "missing": []}
    owner = repository.get_owner(owner_ref="lesson-1")
    assert owner is not None
    assert owner.status == OwnerStatus.COMPLETED


def test_barrier_waits_until_expected_siblings_exist(repository: JobRepository) -> None:
    barrier = CollectBarrier(repository)
    _spawn_graph(repository, parts=3, expected=5)
    for job in repository.claim(worker_id="w", limit=10, job_types=["part"]):
        repository.complete(job_id=job.id, worker_id="w")
    [barrier_job] = repository.claim(worker_id="w", limit=1, job_types=["collect"])

    outcome = barrier.tick(barrier_job, barrier_job.payload, _context())

    assert isinstance(outcome, Advance)
    assert outcome.next_stage == "wait"
    assert barrier.merges == []


def test_failed_siblings_do_not_block_the_barrier(repository: JobRepository) -> None:
    barrier = CollectBarrier(repository)
    _spawn_graph(repository, parts=5, expected=5)
    dispatcher = Dispatcher(
        repository=repository,
        registry=WorkerRegistry([barrier, PartWorker(failing={3})]),
        worker_id="w",
        claim_batch_size=10,
        poll_interval_seconds=0.0,
    )

    report = dispatcher.run_loop(max_idle_cycles=1)

    assert report.failed == 1
    assert barrier.merges == [([0, 1, 2, 4], [3])]
    owner = repository.get_owner(owner_ref="lesson-1")
    assert owner is not None
    assert owner.status == OwnerStatus.COMPLETED


def test_barrier_polls_with_configured_delay(repository: JobRepository) -> None:
    barrier = CollectBarrier(repository)
    barrier.poll_seconds = 15.0
    _spawn_graph(repository, parts=2, expected=2)
    [barrier_job] = repository.claim(worker_id="w", limit=1, job_types=["collect"])

    outcome = barrier.tick(barrier_job, barrier_job.payload, _context())

    assert isinstance(outcome, Advance)
    assert outcome.delay_seconds == 15.0
    assert outcome.payload == {"expected": 2}
