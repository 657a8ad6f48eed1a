"""Controllers for lesson-pipeline CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from lesson_pipeline.config import Settings
from lesson_pipeline.jobs.models import JobStatus
from lesson_pipeline.pipeline.runtime import open_runtime, submit_ingest


@dataclass(slots=True)
class DispatchCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    blob_root: Path | None
    once: bool
    max_cycles: int | None = None
    max_idle_cycles: int = 1


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    owner_ref: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class SweepCommand:
    """CLI input for a manual orphan sweep."""

    db_path: Path | None
    staleness_seconds: float | None


@dataclass(slots=True)
class DeadLettersCommand:
    db_path: Path | None
    owner_ref: str | None
    limit: int


@dataclass(slots=True)
class IngestCommand:
    """CLI input for creating an owner and its root job."""

    db_path: Path | None
    blob_root: Path | None
    owner_ref: str
    file_path: Path
    content_type: str


@dataclass(slots=True)
class OwnerCommand:
    db_path: Path | None
    owner_ref: str
    output_format: str = "table"


class PipelineCliController:
    """Command handlers; each returns printable lines."""

    def dispatch(self, command: DispatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, blob_root=command.blob_root)
        with open_runtime(settings) as runtime:
            dispatcher = runtime.dispatcher()
            report = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_cycles=command.max_cycles,
                    max_idle_cycles=command.max_idle_cycles,
                )
            )
        return [
            "Dispatch summary: "
            f"cycles={report.cycles} claimed={report.claimed} "
            f"completed={report.completed} advanced={report.advanced} "
            f"retried={report.retried} failed={report.failed} "
            f"deferred={report.deferred} lost_claims={report.lost_claims} "
            f"orphans_recovered={report.orphans_recovered}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status.lower()) if command.status else None
        with open_runtime(settings) as runtime:
            jobs = runtime.repository.list_jobs(
                status=status,
                owner_ref=command.owner_ref,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.id} owner={job.owner_ref} type={job.job_type} "
                f"status={job.status.value} stage={job.stage} progress={job.progress} "
                f"attempts={job.attempt_count}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            details = runtime.repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.id}",
            f"Owner: {job.owner_ref}",
            f"Type: {job.job_type}",
            f"Status: {job.status.value}",
            f"Stage: {job.stage}",
            f"Progress: {job.progress}",
            f"Cursor: {job.checkpoint_cursor if job.checkpoint_cursor is not None else '-'}",
            f"Attempts: {job.attempt_count}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Dedupe key: {job.dedupe_key or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        staleness = command.staleness_seconds or settings.jobs.staleness_threshold_seconds
        with open_runtime(settings) as runtime:
            recovered = runtime.repository.sweep_orphans(
                staleness_threshold=timedelta(seconds=staleness),
            )
        return [f"Orphans recovered: {recovered}"]

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            letters = runtime.repository.list_dead_letters(
                owner_ref=command.owner_ref,
                limit=command.limit,
            )

        lines = [f"Dead letters: {len(letters)}"]
        for letter in letters:
            lines.append(
                f"  {letter.created_at.isoformat()} job={letter.job_id} "
                f"owner={letter.owner_ref} type={letter.job_type} "
                f"class={letter.failure_class.value} attempts={letter.attempt_count} "
                f"reason={letter.reason}",
            )
        return lines

    def ingest(self, command: IngestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path, blob_root=command.blob_root)
        with open_runtime(settings) as runtime:
            job_id = submit_ingest(
                runtime,
                owner_ref=command.owner_ref,
                source=command.file_path,
                content_type=command.content_type,
            )
        return [f"Owner queued: {command.owner_ref}", f"Root job: {job_id}"]

    def owner_status(self, command: OwnerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            owner = runtime.repository.get_owner(owner_ref=command.owner_ref)
            jobs = runtime.repository.list_owner_jobs(owner_ref=command.owner_ref)
        if owner is None:
            return [f"Owner not found: {command.owner_ref}"]
        if command.output_format == "json":
            return [
                json.dumps(
                    {**owner.to_dict(), "jobs": [job.to_dict() for job in jobs]},
                    ensure_ascii=False,
                    indent=2,
                ),
            ]

        lines = [
            f"Owner: {owner.owner_ref}",
            f"Status: {owner.status.value}",
            f"Stage: {owner.pipeline_stage or '-'}",
            f"Error: {owner.error_message or '-'}",
            f"Jobs: {len(jobs)}",
        ]
        for job in jobs:
            lines.append(
                f"  {job.job_type} {job.status.value} stage={job.stage} "
                f"progress={job.progress} attempts={job.attempt_count}",
            )
        if owner.result is not None:
            lines.append(
                f"Result: segments={owner.result.get('segment_count', 0)} "
                f"quizzes={owner.result.get('quiz_count', 0)} "
                f"missing={','.join(owner.result.get('missing_segments', [])) or '-'}",
            )
        return lines

    def retry_failed(self, command: OwnerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            job_ids = runtime.repository.retry_failed_for_owner(owner_ref=command.owner_ref)
        lines = [f"Jobs re-queued: {len(job_ids)}"]
        lines.extend(f"  {job_id}" for job_id in job_ids)
        return lines
