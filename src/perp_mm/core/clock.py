"""Clock abstraction for testable time.

WallClock: real wall-clock time (live and paper runs)
SimClock: manually advanced time (tests and replays)

Quoting code never calls time.time() directly; it uses the injected clock.
"""

from __future__ import annotations

import time
from typing import Protocol


class IClock(Protocol):
    """Clock interface used by all time-dependent code."""

    def time(self) -> float:
        """Current time as unix seconds."""
        ...

    def now_ms(self) -> int:
        """Current time as milliseconds since epoch."""
        ...


class WallClock:
    """Real wall-clock time."""

    def time(self) -> float:
        return time.time()

    def now_ms(self) -> int:
        return round(self.time() * 1000)


class SimClock:
    """Simulated clock. Time advances only when explicitly set."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._time = start

    def time(self) -> float:
        return self._time

    def now_ms(self) -> int:
        return round(self._time * 1000)

    def set_time(self, t: float) -> None:
        """Advance time. Must be monotonically increasing."""
        if t < self._time:
            raise ValueError(f"SimClock cannot go backwards: {t} < {self._time}")
        self._time = t

    def advance(self, seconds: float) -> None:
        self.set_time(self._time + seconds)
