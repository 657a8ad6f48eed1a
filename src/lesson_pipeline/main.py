"""CLI entrypoint for lesson-pipeline."""

import logging
from pathlib import Path

import rich_click as click

from lesson_pipeline import __version__
from lesson_pipeline.config import Settings
from lesson_pipeline.controllers import (
    DeadLettersCommand,
    DispatchCommand,
    IngestCommand,
    InspectJobCommand,
    ListJobsCommand,
    OwnerCommand,
    PipelineCliController,
    SweepCommand,
)
from lesson_pipeline.pipeline.runtime import OwnerExistsError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_BLOB_ROOT_OPTION = click.option(
    "--blob-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Blob store root directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="lesson-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
def lesson_pipeline(log_level: str) -> None:
    """Checkpointed job pipeline for lesson ingestion.

    Jobs live in SQLite; `jobs dispatch` drains them one bounded tick at a time.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@lesson_pipeline.group()
def jobs() -> None:
    """Job store and dispatcher commands."""


@jobs.command("dispatch")
@_DB_PATH_OPTION
@_BLOB_ROOT_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one dispatch cycle or loop until idle.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for dispatch cycles in loop mode.",
)
@click.option(
    "--max-idle-cycles",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive idle cycles before the loop exits.",
)
def jobs_dispatch(
    db_path: Path | None,
    blob_root: Path | None,
    once: bool,
    max_cycles: int | None,
    max_idle_cycles: int,
) -> None:
    """Claim runnable jobs and run one tick each."""

    _emit_lines(
        CONTROLLER.dispatch(
            DispatchCommand(
                db_path=db_path,
                blob_root=blob_root,
                once=once,
                max_cycles=max_cycles,
                max_idle_cycles=max_idle_cycles,
            ),
        ),
    )


@jobs.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--owner", "owner_ref", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, owner_ref: str | None, limit: int) -> None:
    """List jobs in creation order."""

    _emit_lines(
        CONTROLLER.list_jobs(
            ListJobsCommand(db_path=db_path, status=status, owner_ref=owner_ref, limit=limit),
        ),
    )


@jobs.command("inspect")
@_DB_PATH_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _emit_lines(CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("sweep")
@_DB_PATH_OPTION
@click.option(
    "--staleness-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override the staleness threshold.",
)
def jobs_sweep(db_path: Path | None, staleness_seconds: float | None) -> None:
    """Return stale processing jobs to pending."""

    _emit_lines(
        CONTROLLER.sweep(SweepCommand(db_path=db_path, staleness_seconds=staleness_seconds)),
    )


@jobs.command("dead-letters")
@_DB_PATH_OPTION
@click.option("--owner", "owner_ref", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max records to print.",
)
def jobs_dead_letters(db_path: Path | None, owner_ref: str | None, limit: int) -> None:
    """List jobs that need operator attention."""

    _emit_lines(
        CONTROLLER.dead_letters(
            DeadLettersCommand(db_path=db_path, owner_ref=owner_ref, limit=limit),
        ),
    )


@lesson_pipeline.group()
def owners() -> None:
    """Owner (lesson) commands."""


@owners.command("ingest")
@_DB_PATH_OPTION
@_BLOB_ROOT_OPTION
@click.option("--owner", "owner_ref", required=True, help="Owner reference.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Source document.",
)
@click.option(
    "--content-type",
    default="text/plain",
    show_default=True,
    help="Declared content type of the source.",
)
def owners_ingest(
    db_path: Path | None,
    blob_root: Path | None,
    owner_ref: str,
    file_path: Path,
    content_type: str,
) -> None:
    """Store a source document and queue its root job."""

    try:
        lines = CONTROLLER.ingest(
            IngestCommand(
                db_path=db_path,
                blob_root=blob_root,
                owner_ref=owner_ref,
                file_path=file_path,
                content_type=content_type,
            ),
        )
    except OwnerExistsError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@owners.command("status")
@_DB_PATH_OPTION
@click.option("--owner", "owner_ref", required=True, help="Owner reference.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
def owners_status(db_path: Path | None, owner_ref: str, output_format: str) -> None:
    """Show owner status, its jobs and the aggregate result."""

    _emit_lines(
        CONTROLLER.owner_status(
            OwnerCommand(db_path=db_path, owner_ref=owner_ref, output_format=output_format.lower()),
        ),
    )


@owners.command("retry-failed")
@_DB_PATH_OPTION
@click.option("--owner", "owner_ref", required=True, help="Owner reference.")
def owners_retry_failed(db_path: Path | None, owner_ref: str) -> None:
    """Re-queue every failed job of an owner."""

    _emit_lines(CONTROLLER.retry_failed(OwnerCommand(db_path=db_path, owner_ref=owner_ref)))


@lesson_pipeline.command("serve")
@_DB_PATH_OPTION
@_BLOB_ROOT_OPTION
@click.option("--host", default=None, help="Bind host (default from settings).")
@click.option("--port", type=click.IntRange(min=1, max=65_535), default=None, help="Bind port.")
def serve(db_path: Path | None, blob_root: Path | None, host: str | None, port: int | None) -> None:
    """Run the HTTP trigger."""

    import uvicorn

    from lesson_pipeline.http_app import create_app

    settings = Settings.from_env(db_path=db_path, blob_root=blob_root)
    uvicorn.run(
        create_app(settings),
        host=host or settings.http.host,
        port=port or settings.http.port,
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    lesson_pipeline()
