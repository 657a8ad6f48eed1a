"""Workers of the reference lesson pipeline.

Job graph per owner::

    ingest -> detect_segments -> segment_extract x N -> (barrier) finalize

``detect_segments`` spawns the N segment jobs and the ``finalize`` barrier
in the transaction that completes it, all dedupe-keyed, so a re-run never
duplicates work.
"""

from __future__ import annotations

import logging
from typing import Any

from lesson_pipeline.jobs.barrier import BarrierWorker
from lesson_pipeline.jobs.models import JobSpawn, JobView, OwnerStatus, dedupe_key_for
from lesson_pipeline.jobs.outcomes import Advance, Complete, Fail, Outcome
from lesson_pipeline.jobs.registry import TickContext
from lesson_pipeline.jobs.repository import JobRepository
from lesson_pipeline.pipeline.chunker import chunk_words
from lesson_pipeline.pipeline.collaborators import ContentAnalyzer, ContentExtractor, LocalBlobStore
from lesson_pipeline.pipeline.payloads import (
    DetectSegmentsPayload,
    FinalizePayload,
    IngestPayload,
    SegmentExtractPayload,
)
from lesson_pipeline.pipeline.segments import detect_segments, normalize_title
from lesson_pipeline.storage.content_store import ArtifactView, ContentStore

logger = logging.getLogger(__name__)

INGEST = "ingest"
DETECT_SEGMENTS = "detect_segments"
SEGMENT_EXTRACT = "segment_extract"
FINALIZE = "finalize"


def _yield_same_stage(job: JobView, payload: dict[str, Any], cursor: int | None) -> Advance:
    return Advance(
        next_stage=job.stage,
        progress=job.progress,
        payload=payload,
        cursor=cursor,
    )


class IngestWorker:
    job_type = INGEST
    stages = ("validate",)
    propagates_failure = True

    def __init__(self, *, blob_store: LocalBlobStore, extractor: ContentExtractor) -> None:
        self.blob_store = blob_store
        self.extractor = extractor

    def parse_payload(self, payload: dict[str, Any]) -> IngestPayload:
        return IngestPayload.from_payload(payload)

    def tick(self, job: JobView, payload: IngestPayload, context: TickContext) -> Outcome:
        if payload.content_type not in self.extractor.supported_types:
            return Fail(reason=f"Unsupported content type: {payload.content_type}")
        if not self.blob_store.exists(payload.source_key):
            return Fail(reason=f"Source blob not found: {payload.source_key}")
        return Complete(
            result={"source_key": payload.source_key},
            spawns=(
                JobSpawn(
                    job_type=DETECT_SEGMENTS,
                    owner_ref=job.owner_ref,
                    stage=DetectSegmentsWorker.stages[0],
                    payload=DetectSegmentsPayload(
                        source_key=payload.source_key,
                        content_type=payload.content_type,
                    ).to_payload(),
                    dedupe_key=dedupe_key_for(job.owner_ref, DETECT_SEGMENTS),
                ),
            ),
            owner_stage="extracting_text",
        )


class DetectSegmentsWorker:
    job_type = DETECT_SEGMENTS
    stages = ("extract", "detect")
    propagates_failure = True

    def __init__(self, *, blob_store: LocalBlobStore, extractor: ContentExtractor) -> None:
        self.blob_store = blob_store
        self.extractor = extractor

    def parse_payload(self, payload: dict[str, Any]) -> DetectSegmentsPayload:
        return DetectSegmentsPayload.from_payload(payload)

    def tick(self, job: JobView, payload: DetectSegmentsPayload, context: TickContext) -> Outcome:
        if job.stage == "extract":
            return self._extract(job, payload, context)
        return self._detect(job, payload)

    def _extract(
        self,
        job: JobView,
        payload: DetectSegmentsPayload,
        context: TickContext,
    ) -> Outcome:
        if not context.budget.allows(self.extractor.estimated_seconds) or not context.heartbeat():
            return _yield_same_stage(job, payload.to_payload(), job.checkpoint_cursor)
        text = self.extractor.extract(
            self.blob_store.path(payload.source_key),
            payload.content_type,
        )
        payload.text_key = f"{job.owner_ref}/extracted.txt"
        self.blob_store.write_text(payload.text_key, text)
        return Advance(
            next_stage="detect",
            progress=40,
            payload=payload.to_payload(),
            owner_stage="segmenting_content",
        )

    def _detect(self, job: JobView, payload: DetectSegmentsPayload) -> Outcome:
        if payload.text_key is None:
            return Fail(reason="Extracted text missing before segment detection")
        segments = detect_segments(self.blob_store.read_text(payload.text_key))
        if not segments:
            return Fail(reason="No content detected in source")

        spawns: list[JobSpawn] = []
        for segment in segments:
            text_key = f"{job.owner_ref}/segments/{segment.key}.txt"
            self.blob_store.write_text(text_key, segment.text)
            spawns.append(
                JobSpawn(
                    job_type=SEGMENT_EXTRACT,
                    owner_ref=job.owner_ref,
                    stage=SegmentExtractWorker.stages[0],
                    payload=SegmentExtractPayload(
                        segment_key=segment.key,
                        position=segment.position,
                        title=segment.title,
                        text_key=text_key,
                    ).to_payload(),
                    dedupe_key=dedupe_key_for(job.owner_ref, SEGMENT_EXTRACT, segment.key),
                ),
            )
        spawns.append(
            JobSpawn(
                job_type=FINALIZE,
                owner_ref=job.owner_ref,
                stage=FinalizeWorker.stages[0],
                payload=FinalizePayload(
                    expected_segments=len(segments),
                    segment_keys=[segment.key for segment in segments],
                ).to_payload(),
                dedupe_key=dedupe_key_for(job.owner_ref, FINALIZE),
            ),
        )
        logger.info("Owner %s: detected %d segment(s)", job.owner_ref, len(segments))
        return Complete(
            result={"segment_count": len(segments)},
            spawns=tuple(spawns),
            owner_stage="analyzing_segments",
        )


class SegmentExtractWorker:
    """Analyzes one segment chunk by chunk, resuming from the stored cursor.

    Failure does not fail the owner: the finalize barrier records the
    segment as missing instead.
    """

    job_type = SEGMENT_EXTRACT
    stages = ("chunk", "analyze")
    propagates_failure = False

    def __init__(  # noqa: PLR0913
        self,
        *,
        blob_store: LocalBlobStore,
        analyzer: ContentAnalyzer,
        content_store: ContentStore,
        max_words: int = 800,
        overlap_words: int = 80,
    ) -> None:
        self.blob_store = blob_store
        self.analyzer = analyzer
        self.content_store = content_store
        self.max_words = max_words
        self.overlap_words = overlap_words

    def parse_payload(self, payload: dict[str, Any]) -> SegmentExtractPayload:
        return SegmentExtractPayload.from_payload(payload)

    def tick(self, job: JobView, payload: SegmentExtractPayload, context: TickContext) -> Outcome:
        chunks = chunk_words(
            self.blob_store.read_text(payload.text_key),
            max_words=self.max_words,
            overlap_words=self.overlap_words,
        )
        if not chunks:
            return Fail(reason=f"Segment {payload.segment_key} has no text")

        if job.stage == "chunk":
            payload.chunk_count = len(chunks)
            payload.partials = []
            return Advance(next_stage="analyze", progress=10, payload=payload.to_payload(), cursor=0)

        if payload.chunk_count != len(chunks):
            return Fail(reason=f"Segment {payload.segment_key} text changed after chunking")

        cursor = job.checkpoint_cursor or 0
        partials = payload.partials[:cursor]
        while cursor < len(chunks):
            if not context.budget.allows(self.analyzer.estimated_seconds) or not context.heartbeat():
                payload.partials = partials
                return Advance(
                    next_stage="analyze",
                    progress=10 + 85 * cursor // len(chunks),
                    payload=payload.to_payload(),
                    cursor=cursor,
                )
            partials.append(self.analyzer.analyze(chunks[cursor].content, title=payload.title))
            cursor += 1

        self.content_store.upsert_artifact(
            owner_ref=job.owner_ref,
            segment_key=payload.segment_key,
            position=payload.position,
            title=payload.title,
            content=_merge_partials(partials),
        )
        return Complete(result={"segment_key": payload.segment_key, "chunks": len(chunks)})


class FinalizeWorker(BarrierWorker):
    """Barrier over ``segment_extract``; writes the owner's aggregate result."""

    job_type = FINALIZE
    stages = ("wait",)
    propagates_failure = True
    sibling_types = (SEGMENT_EXTRACT,)

    def __init__(
        self,
        *,
        repository: JobRepository,
        content_store: ContentStore,
        poll_seconds: float,
    ) -> None:
        super().__init__(repository=repository, poll_seconds=poll_seconds)
        self.content_store = content_store

    def parse_payload(self, payload: dict[str, Any]) -> FinalizePayload:
        return FinalizePayload.from_payload(payload)

    def expected_siblings(self, payload: FinalizePayload) -> int:
        return payload.expected_segments

    def merge(
        self,
        job: JobView,
        payload: FinalizePayload,
        completed: list[JobView],
        failed: list[JobView],
        context: TickContext,
    ) -> Outcome:
        if not completed:
            return Fail(reason="All segments failed")
        self.repository.set_owner_stage(owner_ref=job.owner_ref, pipeline_stage="aggregating")

        completed_keys = {row.payload.get("segment_key") for row in completed}
        artifacts = [
            artifact
            for artifact in self.content_store.list_artifacts(owner_ref=job.owner_ref)
            if artifact.segment_key in completed_keys
        ]
        missing = sorted(str(row.payload.get("segment_key")) for row in failed)
        aggregate = _aggregate(artifacts, missing_segments=missing)
        self.content_store.write_aggregate(owner_ref=job.owner_ref, result=aggregate)
        return Complete(
            result={
                "segment_count": len(aggregate["segments"]),
                "missing_segments": missing,
            },
            owner_status=OwnerStatus.COMPLETED,
            owner_stage="completed",
        )


def _merge_partials(partials: list[dict[str, Any]]) -> dict[str, Any]:
    focus_points: list[dict[str, Any]] = []
    seen_focus: set[str] = set()
    quizzes: list[dict[str, Any]] = []
    for partial in partials:
        for point in partial.get("focus_points", []):
            key = normalize_title(str(point.get("title", "")))
            if key and key not in seen_focus:
                seen_focus.add(key)
                focus_points.append(point)
        quizzes.extend(partial.get("quizzes", []))
    return {
        "summary": " ".join(str(p.get("summary", "")) for p in partials if p.get("summary")),
        "focus_points": focus_points,
        "quizzes": quizzes,
        "chunks": len(partials),
    }


def _aggregate(artifacts: list[ArtifactView], *, missing_segments: list[str]) -> dict[str, Any]:
    """One entry per normalized title; same-titled segments merge in position order."""

    by_title: dict[str, dict[str, Any]] = {}
    for artifact in sorted(artifacts, key=lambda item: (item.position, item.segment_key)):
        key = normalize_title(artifact.title)
        entry = by_title.get(key)
        if entry is None:
            by_title[key] = {
                "title": artifact.title,
                "segment_keys": [artifact.segment_key],
                "summary": artifact.content.get("summary", ""),
                "focus_points": list(artifact.content.get("focus_points", [])),
                "quizzes": list(artifact.content.get("quizzes", [])),
            }
            continue
        entry["segment_keys"].append(artifact.segment_key)
        summary = artifact.content.get("summary", "")
        if summary:
            entry["summary"] = f"{entry['summary']} {summary}".strip()
        entry["focus_points"].extend(artifact.content.get("focus_points", []))
        entry["quizzes"].extend(artifact.content.get("quizzes", []))

    segments = list(by_title.values())
    return {
        "segments": segments,
        "segment_count": len(segments),
        "quiz_count": sum(len(segment["quizzes"]) for segment in segments),
        "missing_segments": missing_segments,
    }
