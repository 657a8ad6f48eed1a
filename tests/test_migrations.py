import shutil
from pathlib import Path

import allure
import pytest
from sqlalchemy import inspect, text

from lesson_pipeline.jobs.repository import JobRepository
from lesson_pipeline.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Job Store & Claim Protocol"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        versions = connection.execute(text("SELECT version_num FROM alembic_version")).all()
    assert [row[0] for row in versions] == ["20261014_0002"]

    inspector = inspect(repository.engine)
    assert {"owners", "jobs", "job_events", "dead_letters", "segment_artifacts"} <= set(
        inspector.get_table_names(),
    )
    job_columns = {column["name"] for column in inspector.get_columns("jobs")}
    assert {
        "dedupe_key",
        "checkpoint_cursor",
        "locked_by",
        "locked_at",
        "attempt_count",
        "next_retry_at",
    } <= job_columns
    unique_columns = [
        constraint["column_names"] for constraint in inspector.get_unique_constraints("jobs")
    ]
    assert ["dedupe_key"] in unique_columns
    repository.close()


def test_migrations_use_the_configured_alembic_ini(tmp_path: Path) -> None:
    project_root = Path(__file__).resolve().parents[1]
    config_dir = tmp_path / "deploy"
    config_dir.mkdir()
    shutil.copy(project_root / "alembic.ini", config_dir / "alembic.ini")
    shutil.copytree(project_root / "alembic", config_dir / "alembic")

    db_path = tmp_path / "configured.db"
    repository = JobRepository(db_path, alembic_ini=config_dir / "alembic.ini")
    repository.init_schema()
    repository.close()

    assert current_revision(db_path) == "20261014_0002"


def test_missing_alembic_ini_is_reported(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "unmigrated.db", alembic_ini=tmp_path / "alembic.ini")
    with pytest.raises(FileNotFoundError, match="Alembic config not found"):
        repository.init_schema()
    repository.close()
    assert current_revision(tmp_path / "unmigrated.db") is None
