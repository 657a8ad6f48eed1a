"""Wall-clock budget for one dispatcher invocation."""

from __future__ import annotations

import time
from collections.abc import Callable


class TickBudget:
    """Tracks how much of the invocation's execution time is left.

    Workers consult :meth:`allows` before any call whose duration they do
    not control. When it returns ``False`` the worker must checkpoint and
    yield instead of starting the call.
    """

    def __init__(
        self,
        seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def allows(self, estimated_seconds: float) -> bool:
        """True when an operation of ``estimated_seconds`` fits in what is left."""

        return self.remaining() > estimated_seconds
