"""SQLModel ORM tables for the job store and its collaborators."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Owner(SQLModel, table=True):
    __tablename__ = "owners"  # type: ignore[bad-override]

    owner_ref: str = Field(primary_key=True)
    status: str = Field(index=True)
    pipeline_stage: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim", "status", "next_retry_at", "created_at"),
        Index("idx_jobs_owner_type_status", "owner_ref", "job_type", "status"),
    )

    id: str = Field(primary_key=True)
    owner_ref: str = Field(
        sa_column=Column(
            ForeignKey("owners.owner_ref", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    stage: str
    progress: int = Field(default=0)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    checkpoint_cursor: int | None = None
    dedupe_key: str | None = Field(default=None, unique=True)
    locked_by: str | None = Field(default=None, index=True)
    locked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    attempt_count: int = Field(default=0)
    failure_class: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    next_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetter(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    owner_ref: str = Field(index=True)
    job_type: str
    reason: str = Field(sa_column=Column(Text, nullable=False))
    failure_class: str
    attempt_count: int
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SegmentArtifact(SQLModel, table=True):
    __tablename__ = "segment_artifacts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("owner_ref", "segment_key", name="uq_segment_artifacts_owner_segment"),
    )

    id: int | None = Field(default=None, primary_key=True)
    owner_ref: str = Field(
        sa_column=Column(
            ForeignKey("owners.owner_ref", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    segment_key: str
    position: int = Field(default=0)
    title: str
    content_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
