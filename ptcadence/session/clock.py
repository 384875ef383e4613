"""Drift-corrected phase countdown."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ClockReading:
    """Result of a single :meth:`SessionClock.tick`.

    ``expired`` is True on exactly one reading per :meth:`SessionClock.start`.
    """
    elapsed: float
    remaining: float
    duration: float
    running: bool
    expired: bool = False


class SessionClock:
    """
    Countdown for the current phase.

    Elapsed time always comes from the injected time source:
    ``(now - last_resume) + accumulated`` while running, ``accumulated``
    while paused, clamped to the duration. Ticks only sample the clock;
    how often they arrive never changes the reading.

    Usage:
        clock = SessionClock()
        clock.start(30.0)
        reading = clock.tick()   # from a timer, any interval
        if reading.expired:
            ...
    """

    def __init__(self, time_provider: Callable[[], float] = time.monotonic):
        self._now = time_provider
        self.duration = 0.0
        self._accumulated = 0.0
        self._last_resume: Optional[float] = None
        self._started = False
        self._expiry_signalled = False

    def now(self) -> float:
        return self._now()

    @property
    def running(self) -> bool:
        return self._last_resume is not None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def last_resume(self) -> Optional[float]:
        return self._last_resume

    @property
    def elapsed(self) -> float:
        value = self._accumulated
        if self._last_resume is not None:
            value += self._now() - self._last_resume
        return min(max(0.0, value), self.duration)

    @property
    def remaining(self) -> float:
        return max(0.0, self.duration - self.elapsed)

    def start(self, duration_seconds: float, elapsed: float = 0.0) -> None:
        """Begin counting down *duration_seconds*, optionally part-way through."""
        if duration_seconds < 0:
            raise ValueError(f"duration_seconds must be non-negative, got {duration_seconds}")
        self.duration = float(duration_seconds)
        self._accumulated = min(max(0.0, float(elapsed)), self.duration)
        self._last_resume = self._now()
        self._started = True
        self._expiry_signalled = False

    def pause(self) -> bool:
        if self._last_resume is None:
            return False
        self._accumulated = min(self._accumulated + (self._now() - self._last_resume), self.duration)
        self._last_resume = None
        return True

    def resume(self) -> bool:
        if not self._started or self._last_resume is not None:
            return False
        self._last_resume = self._now()
        return True

    def load(self, duration_seconds: float, elapsed: float = 0.0) -> None:
        """Set up a phase in the paused state (used when restoring)."""
        self.start(duration_seconds, elapsed)
        self._last_resume = None

    def reset(self) -> None:
        self.duration = 0.0
        self._accumulated = 0.0
        self._last_resume = None
        self._started = False
        self._expiry_signalled = False

    def tick(self) -> ClockReading:
        elapsed = self.elapsed
        remaining = max(0.0, self.duration - elapsed)
        expired = False
        if self._started and self.running and remaining <= 0.0 and not self._expiry_signalled:
            self._expiry_signalled = True
            expired = True
        return ClockReading(
            elapsed=elapsed,
            remaining=remaining,
            duration=self.duration,
            running=self.running,
            expired=expired,
        )
