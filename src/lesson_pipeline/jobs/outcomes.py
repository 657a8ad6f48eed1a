"""Outcomes a worker tick returns to the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from lesson_pipeline.jobs.models import JobSpawn, OwnerStatus


@dataclass(slots=True, frozen=True)
class Advance:
    """Checkpoint and yield; the job is re-claimed later at ``next_stage``."""

    next_stage: str
    progress: int
    payload: dict[str, Any]
    cursor: int | None = None
    delay_seconds: float = 0.0
    owner_stage: str | None = None


@dataclass(slots=True, frozen=True)
class Complete:
    """Finish the job, optionally spawning successors and settling the owner."""

    result: dict[str, Any] | None = None
    spawns: tuple[JobSpawn, ...] = field(default_factory=tuple)
    owner_status: OwnerStatus | None = None
    owner_stage: str | None = None


@dataclass(slots=True, frozen=True)
class Retry:
    """Transient failure, re-attempt after backoff."""

    reason: str


@dataclass(slots=True, frozen=True)
class Fail:
    """Permanent failure.

    ``propagate=None`` defers to the worker's declared policy; ``False`` keeps
    the owner alive when a sibling path can still produce the result.
    """

    reason: str
    propagate: bool | None = None


Outcome = Advance | Complete | Retry | Fail
