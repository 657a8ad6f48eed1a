"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from lesson_pipeline.config import ChunkingSettings, JobSettings, Settings
from lesson_pipeline.jobs.repository import JobRepository
from lesson_pipeline.jobs.retry_policy import BackoffPolicy


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(
        tmp_path / "jobs.db",
        backoff=BackoffPolicy(max_attempts=3, base_seconds=10.0, cap_seconds=60.0),
    )
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with zero delays so a whole job graph drains in one loop."""

    return Settings(
        db_path=tmp_path / "pipeline.db",
        blob_root=tmp_path / "blobs",
        jobs=JobSettings(
            max_attempts=5,
            backoff_base_seconds=0.0,
            backoff_cap_seconds=0.0,
            staleness_threshold_seconds=180.0,
            claim_batch_size=10,
            tick_time_budget_seconds=8.5,
            barrier_poll_seconds=0.0,
            poll_interval_seconds=0.0,
            type_limits={},
            worker_id="test-worker",
        ),
        chunking=ChunkingSettings(max_words=40, overlap_words=5),
    )


@pytest.fixture()
def source_text() -> str:
    sections = {
        "Photosynthesis": (
            "Plants convert sunlight into chemical energy. Chlorophyll absorbs light "
            "inside the chloroplast. Photosynthesis releases oxygen as a product."
        ),
        "Cell Respiration": (
            "Cells break glucose down to release energy. Mitochondria host most of "
            "respiration. Respiration consumes oxygen and produces carbon dioxide."
        ),
        "Ecosystems": (
            "Ecosystems link producers and consumers. Energy flows through food chains. "
            "Decomposers return nutrients to the soil."
        ),
    }
    return "\n\n".join(f"# {title}\n\n{body}" for title, body in sections.items())
