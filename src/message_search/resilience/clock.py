"""Injectable clock and operation deadlines."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Time source used by retry loops, deadlines and circuit breakers."""

    def monotonic(self) -> float:
        """Seconds from an arbitrary, non-decreasing origin."""

    def sleep(self, seconds: float) -> None:
        """Block the calling thread for ``seconds``."""

    def now(self) -> datetime:
        """Current wall-clock time (UTC)."""


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class Deadline:
    """An absolute point on a clock after which work must stop.

    A deadline also carries a cancellation flag so a caller (or a worker
    pool shutting down) can stop an in-flight operation between attempts.
    """

    def __init__(self, clock: Clock, expires_at: float) -> None:
        self._clock = clock
        self.expires_at = expires_at
        self._cancelled = threading.Event()

    @classmethod
    def after(cls, clock: Clock, seconds: float) -> "Deadline":
        return cls(clock, clock.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock.monotonic())

    def expired(self) -> bool:
        return self._clock.monotonic() >= self.expires_at

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def within(self, seconds: float) -> "Deadline":
        """A deadline no later than ``seconds`` from now, sharing cancellation."""
        child = Deadline(self._clock, min(self.expires_at, self._clock.monotonic() + seconds))
        child._cancelled = self._cancelled
        return child
