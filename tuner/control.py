"""Cooperative cancellation and wall-clock budget shared by a run."""
from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class CancellationToken:
    """Explicit stop flag passed through every phase and oracle wait."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` as soon as cancellation is requested."""

        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


class RunBudget:
    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if seconds <= 0:
            raise ValueError("Run budget must be positive")
        self.seconds = float(seconds)
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, self.seconds - self.elapsed)

    @property
    def remaining_fraction(self) -> float:
        return self.remaining_seconds / self.seconds

    @property
    def exhausted(self) -> bool:
        return self.remaining_seconds <= 0.0

    def allows(self, min_remaining: Optional[float] = None) -> bool:
        if min_remaining is None:
            return not self.exhausted
        return self.remaining_fraction > min_remaining


__all__ = ["CancellationToken", "RunBudget"]
