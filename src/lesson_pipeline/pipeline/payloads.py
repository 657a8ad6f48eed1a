"""Typed payload schemas per job type, validated when a job is claimed."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from lesson_pipeline.jobs.registry import PayloadError


def _require_str(payload: dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value.strip():
        raise PayloadError(f"{name!r} must be a non-empty string")
    return value


def _optional_str(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadError(f"{name!r} must be a string")
    return value


def _require_int(payload: dict[str, Any], name: str, *, minimum: int = 0) -> int:
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise PayloadError(f"{name!r} must be an integer >= {minimum}")
    return value


def _str_list(payload: dict[str, Any], name: str) -> list[str]:
    value = payload.get(name, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise PayloadError(f"{name!r} must be a list of strings")
    return list(value)


@dataclass(slots=True)
class IngestPayload:
    source_key: str
    content_type: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> IngestPayload:
        return cls(
            source_key=_require_str(payload, "source_key"),
            content_type=_require_str(payload, "content_type"),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class DetectSegmentsPayload:
    source_key: str
    content_type: str
    text_key: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> DetectSegmentsPayload:
        return cls(
            source_key=_require_str(payload, "source_key"),
            content_type=_require_str(payload, "content_type"),
            text_key=_optional_str(payload, "text_key"),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SegmentExtractPayload:
    """``partials`` holds one analysis per chunk already processed."""

    segment_key: str
    position: int
    title: str
    text_key: str
    chunk_count: int | None = None
    partials: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SegmentExtractPayload:
        chunk_count = payload.get("chunk_count")
        if chunk_count is not None:
            chunk_count = _require_int(payload, "chunk_count")
        partials = payload.get("partials", [])
        if not isinstance(partials, list) or not all(isinstance(item, dict) for item in partials):
            raise PayloadError("'partials' must be a list of objects")
        return cls(
            segment_key=_require_str(payload, "segment_key"),
            position=_require_int(payload, "position"),
            title=_require_str(payload, "title"),
            text_key=_require_str(payload, "text_key"),
            chunk_count=chunk_count,
            partials=list(partials),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class FinalizePayload:
    expected_segments: int
    segment_keys: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FinalizePayload:
        return cls(
            expected_segments=_require_int(payload, "expected_segments", minimum=1),
            segment_keys=_str_list(payload, "segment_keys"),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)
