from __future__ import annotations

import allure
import pytest

from lesson_pipeline.jobs.failure_classifier import (
    JOB_FAILURE_CLASSIFIER_VERSION,
    PermanentJobError,
    TickTimeout,
    TransientJobError,
    classify_exception,
)
from lesson_pipeline.jobs.models import FailureClass

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Retry, Backoff & Dead Letters"),
]


def test_classifier_version_is_stable() -> None:
    assert JOB_FAILURE_CLASSIFIER_VERSION == 2


def test_explicit_error_types_win_over_message_patterns() -> None:
    classified = classify_exception(PermanentJobError("HTTP 503 from upstream"))
    assert classified.failure_class == FailureClass.PERMANENT
    assert classified.matched_rule == "permanent_error_type"
    assert classified.retryable is False

    classified = classify_exception(TransientJobError("source missing"))
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.retryable is True


def test_tick_timeout_is_its_own_class() -> None:
    classified = classify_exception(TickTimeout("analyzer exceeded budget"))
    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.matched_rule == "tick_timeout"
    assert classified.retryable is False


@pytest.mark.parametrize(
    ("error", "rule", "pattern"),
    [
        (RuntimeError("HTTP 429 Too Many Requests"), "rate_limit_transient", "too many requests"),
        (RuntimeError("502 Bad Gateway"), "upstream_transient", "bad gateway"),
        (RuntimeError("upstream returned status 503"), "upstream_transient", "503"),
        (RuntimeError("HTTP 429"), "rate_limit_transient", "429"),
        (RuntimeError("HTTP/1.1 504"), "upstream_transient", "504"),
        (OSError("database is locked"), "network_transient", "database is locked"),
    ],
)
def test_transient_message_patterns(error: Exception, rule: str, pattern: str) -> None:
    classified = classify_exception(error)
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == rule
    assert classified.matched_pattern == pattern


def test_network_exceptions_are_transient() -> None:
    assert classify_exception(ConnectionResetError()).matched_rule == "network_error_type"
    assert classify_exception(TimeoutError()).failure_class == FailureClass.TRANSIENT


def test_unknown_errors_fall_back_to_permanent() -> None:
    classified = classify_exception(ValueError("unexpected token in payload"))
    assert classified.failure_class == FailureClass.PERMANENT
    assert classified.to_event_details() == {
        "classifier_version": 2,
        "failure_class": "permanent",
        "matched_rule": "fallback_permanent",
        "matched_pattern": None,
    }


@pytest.mark.parametrize(
    ("error", "rule"),
    [
        (
            FileNotFoundError(2, "No such file or directory", "/blobs/lesson-500/source/book.pdf"),
            "missing_input_type",
        ),
        (KeyError("seg-429"), "missing_input_type"),
        (RuntimeError("segment seg-503 missing"), "fallback_permanent"),
        (ValueError("lesson-502 has 500 words"), "fallback_permanent"),
    ],
)
def test_bare_numbers_in_messages_do_not_look_like_status_codes(
    error: Exception,
    rule: str,
) -> None:
    classified = classify_exception(error)
    assert classified.failure_class == FailureClass.PERMANENT
    assert classified.matched_rule == rule
    assert classified.retryable is False
