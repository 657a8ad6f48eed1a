"""Deterministic classification of worker exceptions for retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from lesson_pipeline.jobs.models import FailureClass

JOB_FAILURE_CLASSIFIER_VERSION = 2

_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "resource_exhausted",
    "please retry",
    "try again later",
)
_UPSTREAM_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "overloaded",
)
_NETWORK_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "connection aborted",
    "network error",
    "timed out",
    "could not resolve host",
    "database is locked",
)
# Status codes count only next to an HTTP/status marker, never as bare numbers.
_HTTP_STATUS_RE = re.compile(
    r"\b(?:http(?:/\d(?:\.\d)?)?|status(?: code)?|error code|response)\b[\s:=#]*(\d{3})\b",
)
_RATE_LIMIT_STATUS_CODES = ("429",)
_UPSTREAM_STATUS_CODES = ("500", "502", "503", "504")


class JobError(Exception):
    """Base class for errors raised from worker ticks."""


class TransientJobError(JobError):
    """Failure expected to go away on retry (rate limit, 5xx, network)."""


class PermanentJobError(JobError):
    """Failure that will not improve on retry (missing input, bad state)."""


class TickTimeout(JobError):
    """The tick ran out of its own time budget; resume the same stage later."""


@dataclass(slots=True)
class JobFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": JOB_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_exception(error: BaseException) -> JobFailureClassification:
    """Classify an exception escaping a worker tick."""

    if isinstance(error, TickTimeout):
        return JobFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="tick_timeout",
            matched_pattern=None,
        )
    if isinstance(error, TransientJobError):
        return JobFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            matched_rule="transient_error_type",
            matched_pattern=None,
        )
    if isinstance(error, PermanentJobError):
        return JobFailureClassification(
            failure_class=FailureClass.PERMANENT,
            matched_rule="permanent_error_type",
            matched_pattern=None,
        )
    if isinstance(error, (ConnectionError, TimeoutError)):
        return JobFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            matched_rule="network_error_type",
            matched_pattern=None,
        )
    if isinstance(error, (FileNotFoundError, LookupError)):
        return JobFailureClassification(
            failure_class=FailureClass.PERMANENT,
            matched_rule="missing_input_type",
            matched_pattern=None,
        )

    haystack = str(error).lower()
    for rule, patterns, codes in (
        ("rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS, _RATE_LIMIT_STATUS_CODES),
        ("upstream_transient", _UPSTREAM_TRANSIENT_PATTERNS, _UPSTREAM_STATUS_CODES),
        ("network_transient", _NETWORK_TRANSIENT_PATTERNS, ()),
    ):
        pattern = _first_match(haystack, patterns) or _status_code_match(haystack, codes)
        if pattern is not None:
            return JobFailureClassification(
                failure_class=FailureClass.TRANSIENT,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return JobFailureClassification(
        failure_class=FailureClass.PERMANENT,
        matched_rule="fallback_permanent",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _status_code_match(haystack: str, codes: tuple[str, ...]) -> str | None:
    match = _HTTP_STATUS_RE.search(haystack)
    if match is not None and match.group(1) in codes:
        return match.group(1)
    return None
