"""Domain models for the job store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OwnerStatus(str, Enum):
    """Status of the aggregate a job graph contributes to."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    PERMANENT = "permanent"
    INPUT_CONTRACT_ERROR = "input_contract_error"
    RETRIES_EXHAUSTED = "retries_exhausted"
    ILLEGAL_STAGE_TRANSITION = "illegal_stage_transition"


ACTIVE_STATUSES: tuple[JobStatus, ...] = (JobStatus.PENDING, JobStatus.PROCESSING)


def dedupe_key_for(owner_ref: str, job_type: str, sub_unit: str | None = None) -> str:
    """Deterministic dedupe key for one logical unit of work."""

    key = f"owner:{owner_ref}:{job_type}"
    if sub_unit is not None:
        key = f"{key}:{sub_unit}"
    return key


@dataclass(slots=True)
class JobSpawn:
    """Input for creating one job."""

    job_type: str
    owner_ref: str
    stage: str
    payload: dict[str, Any] = field(default_factory=dict)
    dedupe_key: str | None = None
    next_retry_at: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job snapshot for workers, CLI and HTTP."""

    id: str
    owner_ref: str
    job_type: str
    status: JobStatus
    stage: str
    progress: int
    payload: dict[str, Any]
    checkpoint_cursor: int | None
    dedupe_key: str | None
    locked_by: str | None
    locked_at: datetime | None
    attempt_count: int
    failure_class: FailureClass | None
    error_message: str | None
    next_retry_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_ref": self.owner_ref,
            "job_type": self.job_type,
            "status": self.status.value,
            "stage": self.stage,
            "progress": self.progress,
            "checkpoint_cursor": self.checkpoint_cursor,
            "dedupe_key": self.dedupe_key,
            "locked_by": self.locked_by,
            "attempt_count": self.attempt_count,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "error_message": self.error_message,
            "next_retry_at": _iso(self.next_retry_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class OwnerView:
    """Polled status of one owner aggregate."""

    owner_ref: str
    status: OwnerStatus
    pipeline_stage: str | None
    error_message: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_ref": self.owner_ref,
            "status": self.status.value,
            "pipeline_stage": self.pipeline_stage,
            "error_message": self.error_message,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True)
class DeadLetterView:
    """Job that needs operator attention."""

    id: int
    job_id: str
    owner_ref: str
    job_type: str
    reason: str
    failure_class: FailureClass
    attempt_count: int
    payload: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class RetryDecision:
    """Result of applying a transient failure to a job."""

    applied: bool
    exhausted: bool
    attempt_count: int
    delay_seconds: float | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
