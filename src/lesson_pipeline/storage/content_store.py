"""Segment artifacts and owner aggregate results."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from lesson_pipeline.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from lesson_pipeline.storage.sqlmodel_models import Owner, SegmentArtifact


@dataclass(slots=True)
class ArtifactView:
    """Stored analysis of one segment."""

    owner_ref: str
    segment_key: str
    position: int
    title: str
    content: dict[str, Any]
    updated_at: datetime


class ContentStore:
    """Overwrite-based writes: re-running a job rewrites the same rows."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        self.engine.dispose()

    def upsert_artifact(  # noqa: PLR0913
        self,
        *,
        owner_ref: str,
        segment_key: str,
        position: int,
        title: str,
        content: dict[str, Any],
    ) -> None:
        now_db = to_db_datetime(utc_now())
        content_json = json.dumps(content, ensure_ascii=True, sort_keys=True)
        statement = (
            sqlite_insert(SegmentArtifact)
            .values(
                owner_ref=owner_ref,
                segment_key=segment_key,
                position=position,
                title=title,
                content_json=content_json,
                updated_at=now_db,
            )
            .on_conflict_do_update(
                index_elements=["owner_ref", "segment_key"],
                set_={
                    "position": position,
                    "title": title,
                    "content_json": content_json,
                    "updated_at": now_db,
                },
            )
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def list_artifacts(self, *, owner_ref: str) -> list[ArtifactView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SegmentArtifact)
                .where(SegmentArtifact.owner_ref == owner_ref)
                .order_by(col(SegmentArtifact.position).asc(), col(SegmentArtifact.segment_key)),
            ).all()
        return [
            ArtifactView(
                owner_ref=row.owner_ref,
                segment_key=row.segment_key,
                position=row.position,
                title=row.title,
                content=json.loads(row.content_json),
                updated_at=to_utc_aware_datetime(row.updated_at),
            )
            for row in rows
        ]

    def write_aggregate(self, *, owner_ref: str, result: dict[str, Any]) -> bool:
        """Store the owner's final result. Returns False for unknown owners."""

        with Session(self.engine) as session:
            updated = session.exec(
                sa_update(Owner)
                .where(col(Owner.owner_ref) == owner_ref)
                .values(
                    result_json=json.dumps(result, ensure_ascii=True, sort_keys=True),
                    updated_at=to_db_datetime(utc_now()),
                )
                .execution_options(synchronize_session=False),
            )
            session.commit()
        return bool(updated.rowcount)
