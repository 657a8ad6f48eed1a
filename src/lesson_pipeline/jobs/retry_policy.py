"""Exponential backoff policy for transient job failures."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Capped exponential backoff without jitter.

    Delays are deterministic so successive retries of one job never shrink.
    ``attempt_count`` is the value after the increment for the retry being
    scheduled.
    """

    max_attempts: int = 5
    base_seconds: float = 15.0
    cap_seconds: float = 900.0

    def is_exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts

    def delay_for(self, attempt_count: int) -> float:
        exponent = max(attempt_count, 0)
        if self.base_seconds <= 0:
            return 0.0
        if exponent >= 63:
            return float(self.cap_seconds)
        return float(min(self.base_seconds * (2**exponent), self.cap_seconds))
