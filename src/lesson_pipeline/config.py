"""Runtime configuration for the job engine and the lesson pipeline."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

_ENV_PREFIX = "LESSON_PIPELINE_"
_DEFAULT_TYPE_LIMITS = "segment_extract=5,finalize=4"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class JobSettings:
    """Claim, retry and dispatch settings."""

    max_attempts: int = 5
    backoff_base_seconds: float = 15.0
    backoff_cap_seconds: float = 900.0
    staleness_threshold_seconds: float = 180.0
    claim_batch_size: int = 1
    tick_time_budget_seconds: float = 8.5
    barrier_poll_seconds: float = 15.0
    poll_interval_seconds: float = 2.0
    type_limits: dict[str, int] = field(
        default_factory=lambda: _parse_type_limits(_DEFAULT_TYPE_LIMITS),
    )
    worker_id: str = field(default_factory=default_worker_id)


@dataclass(slots=True)
class ChunkingSettings:
    """Word-window chunking of segment text."""

    max_words: int = 800
    overlap_words: int = 80


@dataclass(slots=True)
class HttpSettings:
    """HTTP trigger bind address."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".lesson_pipeline.db")
    blob_root: Path = Path(".lesson_pipeline_blobs")
    sqlite_busy_timeout_ms: int = 5_000
    alembic_ini: Path | None = None
    jobs: JobSettings = field(default_factory=JobSettings)
    chunking: ChunkingSettings = field(default_factory=ChunkingSettings)
    http: HttpSettings = field(default_factory=HttpSettings)

    @classmethod
    def from_env(
        cls,
        db_path: Path | None = None,
        blob_root: Path | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".lesson_pipeline.db")),
            blob_root=blob_root or Path(_env("BLOB_ROOT", ".lesson_pipeline_blobs")),
            sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5_000),
            alembic_ini=_env_path("ALEMBIC_INI"),
            jobs=JobSettings(
                max_attempts=_env_int("MAX_ATTEMPTS", 5),
                backoff_base_seconds=_env_float("BACKOFF_BASE_SECONDS", 15.0),
                backoff_cap_seconds=_env_float("BACKOFF_CAP_SECONDS", 900.0),
                staleness_threshold_seconds=_env_float("STALENESS_THRESHOLD_SECONDS", 180.0),
                claim_batch_size=_env_int("CLAIM_BATCH_SIZE", 1),
                tick_time_budget_seconds=_env_float("TICK_TIME_BUDGET_SECONDS", 8.5),
                barrier_poll_seconds=_env_float("BARRIER_POLL_SECONDS", 15.0),
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 2.0),
                type_limits=_parse_type_limits(_env("TYPE_LIMITS", _DEFAULT_TYPE_LIMITS)),
                worker_id=_env("WORKER_ID", "").strip() or default_worker_id(),
            ),
            chunking=ChunkingSettings(
                max_words=_env_int("CHUNK_MAX_WORDS", 800),
                overlap_words=_env_int("CHUNK_OVERLAP_WORDS", 80),
            ),
            http=HttpSettings(
                host=_env("HTTP_HOST", "127.0.0.1"),
                port=_env_int("HTTP_PORT", 8080),
            ),
        )

    def validate(self) -> None:
        jobs = self.jobs
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("LESSON_PIPELINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if jobs.max_attempts <= 0:
            raise ValueError("LESSON_PIPELINE_MAX_ATTEMPTS must be > 0.")
        if jobs.backoff_base_seconds < 0:
            raise ValueError("LESSON_PIPELINE_BACKOFF_BASE_SECONDS must be >= 0.")
        if jobs.backoff_cap_seconds < jobs.backoff_base_seconds:
            raise ValueError(
                "LESSON_PIPELINE_BACKOFF_CAP_SECONDS must be >= "
                "LESSON_PIPELINE_BACKOFF_BASE_SECONDS.",
            )
        if jobs.claim_batch_size <= 0:
            raise ValueError("LESSON_PIPELINE_CLAIM_BATCH_SIZE must be > 0.")
        if jobs.tick_time_budget_seconds <= 0:
            raise ValueError("LESSON_PIPELINE_TICK_TIME_BUDGET_SECONDS must be > 0.")
        if jobs.staleness_threshold_seconds <= jobs.tick_time_budget_seconds:
            raise ValueError(
                "LESSON_PIPELINE_STALENESS_THRESHOLD_SECONDS must be greater than "
                "LESSON_PIPELINE_TICK_TIME_BUDGET_SECONDS.",
            )
        if jobs.barrier_poll_seconds < 0:
            raise ValueError("LESSON_PIPELINE_BARRIER_POLL_SECONDS must be >= 0.")
        if jobs.poll_interval_seconds < 0:
            raise ValueError("LESSON_PIPELINE_POLL_INTERVAL_SECONDS must be >= 0.")
        for job_type, limit in jobs.type_limits.items():
            if limit <= 0:
                raise ValueError(
                    f"LESSON_PIPELINE_TYPE_LIMITS value for {job_type!r} must be > 0.",
                )
        if self.chunking.max_words <= 0:
            raise ValueError("LESSON_PIPELINE_CHUNK_MAX_WORDS must be > 0.")
        if not 0 <= self.chunking.overlap_words < self.chunking.max_words:
            raise ValueError(
                "LESSON_PIPELINE_CHUNK_OVERLAP_WORDS must be >= 0 and smaller than "
                "LESSON_PIPELINE_CHUNK_MAX_WORDS.",
            )
        if not 0 < self.http.port < 65_536:
            raise ValueError("LESSON_PIPELINE_HTTP_PORT must be in 1..65535.")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_ENV_PREFIX}{name}", default)


def _env_path(name: str) -> Path | None:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return None
    return Path(raw.strip())


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {_ENV_PREFIX}{name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {_ENV_PREFIX}{name}: {raw!r}") from error


def _parse_type_limits(raw: str) -> dict[str, int]:
    limits: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(
                "Invalid LESSON_PIPELINE_TYPE_LIMITS entry: "
                f"{token!r}. Expected format '<job_type>=<limit>'.",
            )
        job_type, limit_raw = token.split("=", 1)
        job_type = job_type.strip()
        limit_raw = limit_raw.strip()
        try:
            limits[job_type] = int(limit_raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid LESSON_PIPELINE_TYPE_LIMITS value for {job_type!r}: {limit_raw!r}",
            ) from error
    return limits
