"""Wiring of store, collaborators, registry and dispatcher from settings."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from lesson_pipeline.config import Settings
from lesson_pipeline.jobs.dispatcher import Dispatcher
from lesson_pipeline.jobs.models import JobSpawn, OwnerStatus, dedupe_key_for
from lesson_pipeline.jobs.registry import WorkerRegistry
from lesson_pipeline.jobs.repository import JobRepository
from lesson_pipeline.jobs.retry_policy import BackoffPolicy
from lesson_pipeline.pipeline.collaborators import (
    ContentAnalyzer,
    ContentExtractor,
    HeuristicAnalyzer,
    LocalBlobStore,
    PlainTextExtractor,
)
from lesson_pipeline.pipeline.payloads import IngestPayload
from lesson_pipeline.pipeline.workers import (
    INGEST,
    DetectSegmentsWorker,
    FinalizeWorker,
    IngestWorker,
    SegmentExtractWorker,
)
from lesson_pipeline.storage.content_store import ContentStore

logger = logging.getLogger(__name__)


class OwnerExistsError(ValueError):
    """Ingest requested for an owner that already has a job graph."""


@dataclass(slots=True)
class Runtime:
    settings: Settings
    repository: JobRepository
    content_store: ContentStore
    blob_store: LocalBlobStore
    registry: WorkerRegistry

    def dispatcher(self) -> Dispatcher:
        jobs = self.settings.jobs
        return Dispatcher(
            repository=self.repository,
            registry=self.registry,
            worker_id=jobs.worker_id,
            claim_batch_size=jobs.claim_batch_size,
            tick_time_budget_seconds=jobs.tick_time_budget_seconds,
            staleness_threshold_seconds=jobs.staleness_threshold_seconds,
            type_limits=jobs.type_limits,
            poll_interval_seconds=jobs.poll_interval_seconds,
        )


def build_registry(  # noqa: PLR0913
    *,
    settings: Settings,
    repository: JobRepository,
    content_store: ContentStore,
    blob_store: LocalBlobStore,
    extractor: ContentExtractor | None = None,
    analyzer: ContentAnalyzer | None = None,
) -> WorkerRegistry:
    extractor = extractor or PlainTextExtractor()
    analyzer = analyzer or HeuristicAnalyzer()
    return WorkerRegistry(
        [
            IngestWorker(blob_store=blob_store, extractor=extractor),
            DetectSegmentsWorker(blob_store=blob_store, extractor=extractor),
            SegmentExtractWorker(
                blob_store=blob_store,
                analyzer=analyzer,
                content_store=content_store,
                max_words=settings.chunking.max_words,
                overlap_words=settings.chunking.overlap_words,
            ),
            FinalizeWorker(
                repository=repository,
                content_store=content_store,
                poll_seconds=settings.jobs.barrier_poll_seconds,
            ),
        ],
    )


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    extractor: ContentExtractor | None = None,
    analyzer: ContentAnalyzer | None = None,
) -> Iterator[Runtime]:
    """Migrate the store, build the worker registry and close engines on exit."""

    settings.validate()
    repository = JobRepository(
        settings.db_path,
        backoff=BackoffPolicy(
            max_attempts=settings.jobs.max_attempts,
            base_seconds=settings.jobs.backoff_base_seconds,
            cap_seconds=settings.jobs.backoff_cap_seconds,
        ),
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        alembic_ini=settings.alembic_ini,
    )
    repository.init_schema()
    content_store = ContentStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    blob_store = LocalBlobStore(settings.blob_root)
    try:
        yield Runtime(
            settings=settings,
            repository=repository,
            content_store=content_store,
            blob_store=blob_store,
            registry=build_registry(
                settings=settings,
                repository=repository,
                content_store=content_store,
                blob_store=blob_store,
                extractor=extractor,
                analyzer=analyzer,
            ),
        )
    finally:
        content_store.close()
        repository.close()


def submit_ingest(
    runtime: Runtime,
    *,
    owner_ref: str,
    source: Path | bytes,
    content_type: str,
    filename: str | None = None,
) -> str:
    """Store the source blob and create the owner with its root ``ingest`` job.

    Raises:
        OwnerExistsError: the owner already has a job graph. Failed owners are
            resumed with ``retry_failed_for_owner`` instead.
    """

    existing = runtime.repository.get_owner(owner_ref=owner_ref)
    if existing is not None and existing.status != OwnerStatus.PENDING:
        raise OwnerExistsError(f"Owner {owner_ref!r} already exists ({existing.status.value}).")

    name = filename or (source.name if isinstance(source, Path) else "source")
    source_key = f"{owner_ref}/source/{Path(name).name}"
    target = runtime.blob_store.path(source_key)
    target.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(source, Path):
        shutil.copyfile(source, target)
    else:
        target.write_bytes(source)

    job_id = runtime.repository.start_owner(
        owner_ref=owner_ref,
        root=JobSpawn(
            job_type=INGEST,
            owner_ref=owner_ref,
            stage=IngestWorker.stages[0],
            payload=IngestPayload(source_key=source_key, content_type=content_type).to_payload(),
            dedupe_key=dedupe_key_for(owner_ref, INGEST),
        ),
        pipeline_stage="extracting_text",
    )
    logger.info("Owner %s: ingest job %s queued for %s", owner_ref, job_id, source_key)
    return job_id
