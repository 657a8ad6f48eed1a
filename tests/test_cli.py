from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from lesson_pipeline.main import lesson_pipeline

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LESSON_PIPELINE_BLOB_ROOT", str(tmp_path / "blobs"))
    monkeypatch.setenv("LESSON_PIPELINE_BACKOFF_BASE_SECONDS", "0")
    monkeypatch.setenv("LESSON_PIPELINE_BACKOFF_CAP_SECONDS", "0")
    monkeypatch.setenv("LESSON_PIPELINE_BARRIER_POLL_SECONDS", "0")
    monkeypatch.setenv("LESSON_PIPELINE_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("LESSON_PIPELINE_CLAIM_BATCH_SIZE", "10")
    monkeypatch.setenv("LESSON_PIPELINE_TYPE_LIMITS", "")
    return tmp_path / "cli.db"


def test_cli_ingest_dispatch_and_status(cli_env: Path, tmp_path: Path, source_text: str) -> None:
    source = tmp_path / "biology.md"
    source.write_text(source_text, encoding="utf-8")
    db = ["--db-path", str(cli_env)]
    runner = CliRunner()

    ingest = runner.invoke(
        lesson_pipeline,
        [
            "owners",
            "ingest",
            *db,
            "--owner",
            "bio-1",
            "--file",
            str(source),
            "--content-type",
            "text/markdown",
        ],
    )
    assert ingest.exit_code == 0, ingest.output
    assert "Owner queued: bio-1" in ingest.output
    match = re.search(r"Root job: (\S+)", ingest.output)
    assert match is not None
    root_job_id = match.group(1)

    again = runner.invoke(
        lesson_pipeline,
        ["owners", "ingest", *db, "--owner", "bio-1", "--file", str(source)],
    )
    assert again.exit_code != 0
    assert "already exists" in again.output

    dispatch = runner.invoke(lesson_pipeline, ["jobs", "dispatch", *db, "--loop"])
    assert dispatch.exit_code == 0, dispatch.output
    assert "Dispatch summary:" in dispatch.output
    assert "failed=0" in dispatch.output

    status = runner.invoke(lesson_pipeline, ["owners", "status", *db, "--owner", "bio-1"])
    assert status.exit_code == 0, status.output
    assert "Status: completed" in status.output
    assert "Result: segments=3" in status.output

    as_json = runner.invoke(
        lesson_pipeline,
        ["owners", "status", *db, "--owner", "bio-1", "--format", "json"],
    )
    payload = json.loads(as_json.output)
    assert payload["status"] == "completed"
    assert len(payload["jobs"]) == 6

    listed = runner.invoke(lesson_pipeline, ["jobs", "list", *db, "--status", "completed"])
    assert "Jobs: 6" in listed.output

    inspect = runner.invoke(lesson_pipeline, ["jobs", "inspect", *db, "--job-id", root_job_id])
    assert "Type: ingest" in inspect.output
    assert "Dedupe key: owner:bio-1:ingest" in inspect.output
    assert "spawned - -> pending" in inspect.output


def test_cli_failed_owner_can_be_retried(cli_env: Path, tmp_path: Path) -> None:
    source = tmp_path / "scan.pdf"
    source.write_bytes(b"%PDF-1.7")
    db = ["--db-path", str(cli_env)]
    owner = ["--owner", "pdf-1"]
    runner = CliRunner()

    runner.invoke(
        lesson_pipeline,
        ["owners", "ingest", *db, *owner, "--file", str(source), "--content-type", "application/pdf"],
    )
    runner.invoke(lesson_pipeline, ["jobs", "dispatch", *db, "--once"])

    status = runner.invoke(lesson_pipeline, ["owners", "status", *db, *owner])
    assert "Status: failed" in status.output
    assert "Error: ingest failed: Unsupported content type: application/pdf" in status.output

    retried = runner.invoke(lesson_pipeline, ["owners", "retry-failed", *db, *owner])
    assert "Jobs re-queued: 1" in retried.output
    status = runner.invoke(lesson_pipeline, ["owners", "status", *db, *owner])
    assert "Status: processing" in status.output


def test_cli_empty_store_reports(cli_env: Path) -> None:
    db = ["--db-path", str(cli_env)]
    runner = CliRunner()

    assert "Dead letters: 0" in runner.invoke(lesson_pipeline, ["jobs", "dead-letters", *db]).output
    assert "Orphans recovered: 0" in runner.invoke(lesson_pipeline, ["jobs", "sweep", *db]).output
    assert "Owner not found: nobody" in runner.invoke(
        lesson_pipeline,
        ["owners", "status", *db, "--owner", "nobody"],
    ).output
    assert "Job not found: missing" in runner.invoke(
        lesson_pipeline,
        ["jobs", "inspect", *db, "--job-id", "missing"],
    ).output
    idle = runner.invoke(lesson_pipeline, ["jobs", "dispatch", *db])
    assert "claimed=0" in idle.output


def test_cli_version() -> None:
    result = CliRunner().invoke(lesson_pipeline, ["--version"])

    assert result.exit_code == 0
    assert "lesson-pipeline" in result.output
