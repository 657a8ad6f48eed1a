"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import case, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from lesson_pipeline.jobs.models import (
    ACTIVE_STATUSES,
    DeadLetterView,
    FailureClass,
    JobDetails,
    JobEventView,
    JobSpawn,
    JobStatus,
    JobView,
    OwnerStatus,
    OwnerView,
    RetryDecision,
)
from lesson_pipeline.jobs.retry_policy import BackoffPolicy
from lesson_pipeline.storage.alembic_runner import upgrade_head
from lesson_pipeline.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from lesson_pipeline.storage.sqlmodel_models import DeadLetter, Job, JobEvent, Owner

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


class JobRepository:
    """Job store facade: claim protocol, transitions, spawning and sweeping.

    Every transition that releases or finishes a claimed job is a single
    conditional update guarded by ``status = 'processing' AND locked_by =
    <worker_id>``. A worker that lost its claim (orphan sweep, operator
    retry) gets ``False`` back and nothing is written.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        backoff: BackoffPolicy | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
        alembic_ini: Path | None = None,
    ) -> None:
        self.db_path = db_path
        self.alembic_ini = alembic_ini
        self.backoff = backoff or BackoffPolicy()
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path, alembic_ini=self.alembic_ini)

    # -- owners ---------------------------------------------------------

    def start_owner(self, *, owner_ref: str, root: JobSpawn, pipeline_stage: str) -> str:
        """Mark an owner as processing and spawn its root job atomically."""

        now = utc_now()
        with Session(self.engine) as session:
            self._ensure_owner(session=session, owner_ref=owner_ref, now=now)
            session.exec(
                sa_update(Owner)
                .where(col(Owner.owner_ref) == owner_ref)
                .values(
                    status=OwnerStatus.PROCESSING.value,
                    pipeline_stage=pipeline_stage,
                    error_message=None,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(**_NO_SYNC),
            )
            job_ids = self._insert_spawns(session=session, spawns=[root], now=now)
            session.commit()
        return job_ids[0]

    def get_owner(self, *, owner_ref: str) -> OwnerView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Owner).where(Owner.owner_ref == owner_ref)).one_or_none()
        return _to_owner_view(row) if row is not None else None

    def set_owner_stage(self, *, owner_ref: str, pipeline_stage: str) -> None:
        now = utc_now()
        with Session(self.engine) as session:
            self._update_owner(
                session=session,
                owner_ref=owner_ref,
                now=now,
                status=None,
                pipeline_stage=pipeline_stage,
            )
            session.commit()

    # -- spawning -------------------------------------------------------

    def spawn(self, spawn: JobSpawn) -> str:
        """Create a job, or return the existing id when its dedupe key is taken."""

        return self.spawn_many([spawn])[0]

    def spawn_many(self, spawns: Sequence[JobSpawn]) -> list[str]:
        """Create several jobs in one transaction with insert-or-ignore semantics."""

        if not spawns:
            return []
        with Session(self.engine) as session:
            job_ids = self._insert_spawns(session=session, spawns=spawns, now=utc_now())
            session.commit()
        return job_ids

    # -- claim protocol -------------------------------------------------

    def claim(
        self,
        *,
        worker_id: str,
        limit: int,
        job_types: Sequence[str] | None = None,
        exclude_types: Sequence[str] = (),
        type_quotas: Mapping[str, int] | None = None,
    ) -> list[JobView]:
        """Atomically move up to ``limit`` runnable jobs from pending to processing.

        Candidates are selected FIFO by ``created_at`` inside the same
        ``UPDATE`` statement that claims them, and the update is re-guarded
        by ``status = 'pending'``; only the ids returned by this statement
        were won by this call.

        ``type_quotas`` caps how many jobs of a given type this call may
        take; a quota of zero or less excludes the type.
        """

        if limit <= 0:
            return []
        if job_types is not None and not job_types:
            return []

        quotas = {job_type: quota for job_type, quota in (type_quotas or {}).items() if quota > 0}
        excluded = [
            *exclude_types,
            *(job_type for job_type, quota in (type_quotas or {}).items() if quota <= 0),
        ]

        now = utc_now()
        now_db = to_db_datetime(now)
        candidate = aliased(Job)
        runnable = select(
            col(candidate.id).label("id"),
            col(candidate.created_at).label("created_at"),
            func.row_number()
            .over(
                partition_by=col(candidate.job_type),
                order_by=(col(candidate.created_at).asc(), col(candidate.id).asc()),
            )
            .label("type_rank"),
            col(candidate.job_type).label("job_type"),
        ).where(
            col(candidate.status) == JobStatus.PENDING.value,
            or_(
                col(candidate.next_retry_at).is_(None),
                col(candidate.next_retry_at) <= now_db,
            ),
        )
        if job_types is not None:
            runnable = runnable.where(col(candidate.job_type).in_(list(job_types)))
        if excluded:
            runnable = runnable.where(col(candidate.job_type).not_in(excluded))
        ranked = runnable.subquery("ranked")
        candidates = (
            select(ranked.c.id)
            .order_by(ranked.c.created_at.asc(), ranked.c.id.asc())
            .limit(limit)
        )
        if quotas:
            candidates = candidates.where(
                ranked.c.type_rank <= case(quotas, value=ranked.c.job_type, else_=limit),
            )

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id).in_(candidates),
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    locked_by=worker_id,
                    locked_at=now_db,
                    updated_at=now_db,
                )
                .returning(col(Job.id))
                .execution_options(**_NO_SYNC),
            )
            claimed_ids = [str(job_id) for job_id in result.scalars().all()]
            for job_id in claimed_ids:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="claimed",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.PROCESSING,
                    details={"worker_id": worker_id},
                    now=now,
                )
            session.commit()

            if not claimed_ids:
                return []
            rows = session.exec(
                select(Job)
                .where(col(Job.id).in_(claimed_ids))
                .order_by(col(Job.created_at).asc(), col(Job.id).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def heartbeat(self, *, job_id: str, worker_id: str) -> bool:
        """Touch ``updated_at`` of a claimed job without changing its state."""

        now_db = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*_held_by(job_id=job_id, worker_id=worker_id))
                .values(updated_at=now_db)
                .execution_options(**_NO_SYNC),
            )
            session.commit()
            return result.rowcount == 1

    # -- transitions ----------------------------------------------------

    def advance(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        stage: str,
        progress: int,
        payload: dict[str, Any],
        checkpoint_cursor: int | None,
        delay_seconds: float = 0.0,
        owner_stage: str | None = None,
    ) -> bool:
        """Persist a checkpoint, release the claim and return the job to pending."""

        now = utc_now()
        next_retry_at = now + timedelta(seconds=delay_seconds) if delay_seconds > 0 else None
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*_held_by(job_id=job_id, worker_id=worker_id))
                .values(
                    status=JobStatus.PENDING.value,
                    stage=stage,
                    progress=func.max(col(Job.progress), _clamp_progress(progress)),
                    payload_json=_dump_json(payload),
                    checkpoint_cursor=checkpoint_cursor,
                    locked_by=None,
                    locked_at=None,
                    next_retry_at=(
                        to_db_datetime(next_retry_at) if next_retry_at is not None else None
                    ),
                    updated_at=to_db_datetime(now),
                )
                .returning(col(Job.owner_ref))
                .execution_options(**_NO_SYNC),
            )
            owner_ref = result.scalar_one_or_none()
            if owner_ref is None:
                session.rollback()
                return False
            if owner_stage is not None:
                self._update_owner(
                    session=session,
                    owner_ref=owner_ref,
                    now=now,
                    status=None,
                    pipeline_stage=owner_stage,
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="advanced",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={
                    "stage": stage,
                    "progress": progress,
                    "checkpoint_cursor": checkpoint_cursor,
                    "delay_seconds": delay_seconds,
                },
                now=now,
            )
            session.commit()
            return True

    def release(self, *, job_id: str, worker_id: str, reason: str) -> bool:
        """Give a claimed job back untouched (invocation budget ran out before its tick)."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*_held_by(job_id=job_id, worker_id=worker_id))
                .values(
                    status=JobStatus.PENDING.value,
                    locked_by=None,
                    locked_at=None,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(**_NO_SYNC),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="released",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={"reason": reason},
                now=now,
            )
            session.commit()
            return True

    def complete(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        result: dict[str, Any] | None = None,
        spawns: Sequence[JobSpawn] = (),
        owner_status: OwnerStatus | None = None,
        owner_stage: str | None = None,
    ) -> bool:
        """Finish a claimed job and insert its successors in the same transaction."""

        now = utc_now()
        now_db = to_db_datetime(now)
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "progress": 100,
            "locked_by": None,
            "locked_at": None,
            "next_retry_at": None,
            "error_message": None,
            "failure_class": None,
            "completed_at": now_db,
            "updated_at": now_db,
        }
        if result is not None:
            values["payload_json"] = func.json_set(
                col(Job.payload_json),
                "$.result",
                func.json(_dump_json(result)),
            )
        with Session(self.engine) as session:
            updated = session.exec(
                sa_update(Job)
                .where(*_held_by(job_id=job_id, worker_id=worker_id))
                .values(**values)
                .returning(col(Job.owner_ref))
                .execution_options(**_NO_SYNC),
            )
            owner_ref = updated.scalar_one_or_none()
            if owner_ref is None:
                session.rollback()
                return False
            spawned_ids = self._insert_spawns(session=session, spawns=spawns, now=now)
            if owner_status is not None or owner_stage is not None:
                self._update_owner(
                    session=session,
                    owner_ref=owner_ref,
                    now=now,
                    status=owner_status,
                    pipeline_stage=owner_stage,
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={"spawned": spawned_ids} if spawned_ids else {},
                now=now,
            )
            session.commit()
            return True

    def retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        reason: str,
        failure_class: FailureClass = FailureClass.TRANSIENT,
        propagate: bool = True,
        owner_stage_on_failure: str = "failed",
    ) -> RetryDecision:
        """Apply a transient failure: schedule backoff, or fail once attempts run out."""

        now = utc_now()
        with Session(self.engine) as session:
            bumped = session.exec(
                sa_update(Job)
                .where(*_held_by(job_id=job_id, worker_id=worker_id))
                .values(
                    attempt_count=col(Job.attempt_count) + 1,
                    updated_at=to_db_datetime(now),
                )
                .returning(col(Job.attempt_count))
                .execution_options(**_NO_SYNC),
            )
            attempt_count = bumped.scalar_one_or_none()
            if attempt_count is None:
                session.rollback()
                return RetryDecision(
                    applied=False,
                    exhausted=False,
                    attempt_count=0,
                    delay_seconds=None,
                )

            if self.backoff.is_exhausted(attempt_count):
                self._fail_held(
                    session=session,
                    job_id=job_id,
                    reason=reason,
                    failure_class=FailureClass.RETRIES_EXHAUSTED,
                    propagate=propagate,
                    dead_letter=True,
                    owner_stage=owner_stage_on_failure,
                    now=now,
                )
                session.commit()
                return RetryDecision(
                    applied=True,
                    exhausted=True,
                    attempt_count=attempt_count,
                    delay_seconds=None,
                )

            delay_seconds = self.backoff.delay_for(attempt_count)
            run_after = now + timedelta(seconds=delay_seconds)
            session.exec(
                sa_update(Job)
                .where(col(Job.id) == job_id)
                .values(
                    status=JobStatus.PENDING.value,
                    locked_by=None,
                    locked_at=None,
                    next_retry_at=to_db_datetime(run_after),
                    failure_class=failure_class.value,
                    error_message=reason,
                )
                .execution_options(**_NO_SYNC),
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={
                    "attempt_count": attempt_count,
                    "delay_seconds": delay_seconds,
                    "next_retry_at": run_after.isoformat(),
                    "failure_class": failure_class.value,
                },
                now=now,
            )
            session.commit()
            return RetryDecision(
                applied=True,
                exhausted=False,
                attempt_count=attempt_count,
                delay_seconds=delay_seconds,
            )

    def fail(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        worker_id: str,
        reason: str,
        failure_class: FailureClass = FailureClass.PERMANENT,
        propagate: bool = True,
        dead_letter: bool = False,
        owner_stage: str = "failed",
    ) -> bool:
        """Mark a claimed job as permanently failed."""

        now = utc_now()
        with Session(self.engine) as session:
            touched = session.exec(
                sa_update(Job)
                .where(*_held_by(job_id=job_id, worker_id=worker_id))
                .values(updated_at=to_db_datetime(now))
                .execution_options(**_NO_SYNC),
            )
            if touched.rowcount != 1:
                session.rollback()
                return False
            self._fail_held(
                session=session,
                job_id=job_id,
                reason=reason,
                failure_class=failure_class,
                propagate=propagate,
                dead_letter=dead_letter,
                owner_stage=owner_stage,
                now=now,
            )
            session.commit()
            return True

    # -- self-healing ---------------------------------------------------

    def sweep_orphans(self, *, staleness_threshold: timedelta) -> int:
        """Return processing jobs with a dead worker to pending, keeping attempt_count."""

        now = utc_now()
        cutoff = to_db_datetime(now - staleness_threshold)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.status) == JobStatus.PROCESSING.value,
                    or_(col(Job.locked_at).is_(None), col(Job.locked_at) < cutoff),
                    col(Job.updated_at) < cutoff,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    locked_by=None,
                    locked_at=None,
                    updated_at=to_db_datetime(now),
                )
                .returning(col(Job.id))
                .execution_options(**_NO_SYNC),
            )
            recovered = [str(job_id) for job_id in result.scalars().all()]
            for job_id in recovered:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="orphan_recovered",
                    status_from=JobStatus.PROCESSING,
                    status_to=JobStatus.PENDING,
                    details={"staleness_seconds": staleness_threshold.total_seconds()},
                    now=now,
                )
            session.commit()
        if recovered:
            logger.warning("Recovered %d orphaned job(s): %s", len(recovered), recovered)
        return len(recovered)

    def retry_failed_for_owner(self, *, owner_ref: str) -> list[str]:
        """Operator action: re-queue every failed job of an owner.

        Attempts and errors are reset; stage, checkpoint cursor and payload are
        kept, so each job resumes from its last checkpoint.
        """

        now = utc_now()
        now_db = to_db_datetime(now)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.owner_ref) == owner_ref,
                    col(Job.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempt_count=0,
                    error_message=None,
                    failure_class=None,
                    locked_by=None,
                    locked_at=None,
                    next_retry_at=None,
                    updated_at=now_db,
                )
                .returning(col(Job.id))
                .execution_options(**_NO_SYNC),
            )
            retried = [str(job_id) for job_id in result.scalars().all()]
            for job_id in retried:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="manual_retry",
                    status_from=JobStatus.FAILED,
                    status_to=JobStatus.PENDING,
                    details={},
                    now=now,
                )
            if retried:
                self._update_owner(
                    session=session,
                    owner_ref=owner_ref,
                    now=now,
                    status=OwnerStatus.PROCESSING,
                    pipeline_stage="retrying_failed",
                    clear_error=True,
                )
            session.commit()
        return retried

    # -- queries --------------------------------------------------------

    def count_outstanding(
        self,
        *,
        owner_ref: str,
        job_types: Sequence[str],
        include_failed: bool = False,
    ) -> int:
        """Count sibling jobs an aggregation step still has to wait for."""

        statuses = [status.value for status in ACTIVE_STATUSES]
        if include_failed:
            statuses.append(JobStatus.FAILED.value)
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(Job)
                    .where(
                        col(Job.owner_ref) == owner_ref,
                        col(Job.job_type).in_(list(job_types)),
                        col(Job.status).in_(statuses),
                    ),
                ).one(),
            )

    def count_processing_by_type(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.job_type, func.count())
                .where(col(Job.status) == JobStatus.PROCESSING.value)
                .group_by(col(Job.job_type)),
            ).all()
        return {str(job_type): int(count) for job_type, count in rows}

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        owner_ref: str | None = None,
        job_types: Sequence[str] | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List jobs in creation order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).asc(), col(Job.id).asc())
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if owner_ref is not None:
                statement = statement.where(Job.owner_ref == owner_ref)
            if job_types is not None:
                statement = statement.where(col(Job.job_type).in_(list(job_types)))
            rows = session.exec(statement.limit(limit)).all()
        return [_to_job_view(row) for row in rows]

    def list_owner_jobs(
        self,
        *,
        owner_ref: str,
        job_types: Sequence[str] | None = None,
    ) -> list[JobView]:
        """Every job of one owner in creation order."""

        with Session(self.engine) as session:
            statement = (
                select(Job)
                .where(Job.owner_ref == owner_ref)
                .order_by(col(Job.created_at).asc(), col(Job.id).asc())
            )
            if job_types is not None:
                statement = statement.where(col(Job.job_type).in_(list(job_types)))
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_load_json_object(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=_to_job_view(job), events=events)

    def list_dead_letters(
        self,
        *,
        owner_ref: str | None = None,
        limit: int = 50,
    ) -> list[DeadLetterView]:
        with Session(self.engine) as session:
            statement = select(DeadLetter).order_by(col(DeadLetter.created_at).desc())
            if owner_ref is not None:
                statement = statement.where(DeadLetter.owner_ref == owner_ref)
            rows = session.exec(statement.limit(limit)).all()
        return [
            DeadLetterView(
                id=row.id or 0,
                job_id=row.job_id,
                owner_ref=row.owner_ref,
                job_type=row.job_type,
                reason=row.reason,
                failure_class=FailureClass(row.failure_class),
                attempt_count=row.attempt_count,
                payload=_load_json_object(row.payload_json),
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    # -- internals ------------------------------------------------------

    def _insert_spawns(
        self,
        *,
        session: Session,
        spawns: Sequence[JobSpawn],
        now: datetime,
    ) -> list[str]:
        now_db = to_db_datetime(now)
        job_ids: list[str] = []
        for spawn in spawns:
            self._ensure_owner(session=session, owner_ref=spawn.owner_ref, now=now)
            job_id = str(uuid4())
            inserted = session.exec(
                sqlite_insert(Job)
                .values(
                    id=job_id,
                    owner_ref=spawn.owner_ref,
                    job_type=spawn.job_type,
                    status=JobStatus.PENDING.value,
                    stage=spawn.stage,
                    progress=0,
                    payload_json=_dump_json(spawn.payload),
                    checkpoint_cursor=None,
                    dedupe_key=spawn.dedupe_key,
                    attempt_count=0,
                    next_retry_at=(
                        to_db_datetime(spawn.next_retry_at)
                        if spawn.next_retry_at is not None
                        else None
                    ),
                    created_at=now_db,
                    updated_at=now_db,
                )
                .on_conflict_do_nothing(index_elements=["dedupe_key"]),
            )
            if inserted.rowcount == 1:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="spawned",
                    status_from=None,
                    status_to=JobStatus.PENDING,
                    details={"job_type": spawn.job_type, "dedupe_key": spawn.dedupe_key},
                    now=now,
                )
                job_ids.append(job_id)
                continue

            existing = session.exec(
                select(Job.id).where(Job.dedupe_key == spawn.dedupe_key),
            ).one()
            logger.debug("Spawn of %s skipped, dedupe key taken", spawn.dedupe_key)
            job_ids.append(str(existing))
        return job_ids

    def _fail_held(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        reason: str,
        failure_class: FailureClass,
        propagate: bool,
        dead_letter: bool,
        owner_stage: str,
        now: datetime,
    ) -> None:
        now_db = to_db_datetime(now)
        result = session.exec(
            sa_update(Job)
            .where(col(Job.id) == job_id)
            .values(
                status=JobStatus.FAILED.value,
                failure_class=failure_class.value,
                error_message=reason,
                locked_by=None,
                locked_at=None,
                next_retry_at=None,
                updated_at=now_db,
            )
            .returning(
                col(Job.owner_ref),
                col(Job.job_type),
                col(Job.attempt_count),
                col(Job.payload_json),
            )
            .execution_options(**_NO_SYNC),
        )
        owner_ref, job_type, attempt_count, payload_json = result.one()
        if dead_letter:
            session.add(
                DeadLetter(
                    job_id=job_id,
                    owner_ref=owner_ref,
                    job_type=job_type,
                    reason=reason,
                    failure_class=failure_class.value,
                    attempt_count=attempt_count,
                    payload_json=payload_json,
                    created_at=now_db,
                ),
            )
        if propagate:
            self._update_owner(
                session=session,
                owner_ref=owner_ref,
                now=now,
                status=OwnerStatus.FAILED,
                pipeline_stage=owner_stage,
                error_message=f"{job_type} failed: {reason}",
            )
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="failed",
            status_from=JobStatus.PROCESSING,
            status_to=JobStatus.FAILED,
            details={
                "failure_class": failure_class.value,
                "attempt_count": attempt_count,
                "propagated": propagate,
                "dead_lettered": dead_letter,
            },
            now=now,
        )

    def _ensure_owner(self, *, session: Session, owner_ref: str, now: datetime) -> None:
        now_db = to_db_datetime(now)
        session.exec(
            sqlite_insert(Owner)
            .values(
                owner_ref=owner_ref,
                status=OwnerStatus.PENDING.value,
                created_at=now_db,
                updated_at=now_db,
            )
            .on_conflict_do_nothing(index_elements=["owner_ref"]),
        )

    def _update_owner(  # noqa: PLR0913
        self,
        *,
        session: Session,
        owner_ref: str,
        now: datetime,
        status: OwnerStatus | None,
        pipeline_stage: str | None,
        error_message: str | None = None,
        clear_error: bool = False,
    ) -> None:
        values: dict[str, Any] = {"updated_at": to_db_datetime(now)}
        if status is not None:
            values["status"] = status.value
        if pipeline_stage is not None:
            values["pipeline_stage"] = pipeline_stage
        if error_message is not None:
            values["error_message"] = error_message
        elif clear_error:
            values["error_message"] = None
        statement = sa_update(Owner).where(col(Owner.owner_ref) == owner_ref)
        if status != OwnerStatus.COMPLETED:
            # Completed owners are final.
            statement = statement.where(col(Owner.status) != OwnerStatus.COMPLETED.value)
        session.exec(statement.values(**values).execution_options(**_NO_SYNC))

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
        now: datetime,
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(now),
            ),
        )


def _held_by(*, job_id: str, worker_id: str) -> tuple[Any, ...]:
    return (
        col(Job.id) == job_id,
        col(Job.status) == JobStatus.PROCESSING.value,
        col(Job.locked_by) == worker_id,
    )


def _clamp_progress(value: int) -> int:
    return max(0, min(100, int(value)))


def _dump_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_json_object(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: Job) -> JobView:
    return JobView(
        id=row.id,
        owner_ref=row.owner_ref,
        job_type=row.job_type,
        status=JobStatus(row.status),
        stage=row.stage,
        progress=row.progress,
        payload=_load_json_object(row.payload_json),
        checkpoint_cursor=row.checkpoint_cursor,
        dedupe_key=row.dedupe_key,
        locked_by=row.locked_by,
        locked_at=optional_utc(row.locked_at),
        attempt_count=row.attempt_count,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_message=row.error_message,
        next_retry_at=optional_utc(row.next_retry_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=optional_utc(row.completed_at),
    )


def _to_owner_view(row: Owner) -> OwnerView:
    result = json.loads(row.result_json) if row.result_json else None
    return OwnerView(
        owner_ref=row.owner_ref,
        status=OwnerStatus(row.status),
        pipeline_stage=row.pipeline_stage,
        error_message=row.error_message,
        result=result if isinstance(result, dict) else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
