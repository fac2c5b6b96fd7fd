"""Clock abstractions for real and simulated time.

- ``WallClock``: real UTC wall time (production default).
- ``SimulatedClock``: deterministically controllable time for unit tests.

Snapshot ages, per-symbol backoff deadlines and blacklist expiries are all
computed from ``now()`` of the injected clock. Durations of timed executions
are measured with ``monotonic()``.

Example test usage::

    from datetime import UTC, datetime, timedelta
    from tradeguard.core.clock import SimulatedClock

    clock = SimulatedClock(start=datetime(2024, 1, 1, tzinfo=UTC))
    manager = CandidateErrorManager(store, clock=clock)
    clock.advance(timedelta(minutes=31))
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta


class ClockProtocol(ABC):
    """Abstract clock interface for real or simulated time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current UTC datetime (timezone-aware)."""
        ...

    @abstractmethod
    def monotonic(self) -> float:
        """Return a monotonically increasing time value in seconds."""
        ...


class WallClock(ClockProtocol):
    """Real wall clock backed by the system UTC time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()


class SimulatedClock(ClockProtocol):
    """Deterministically controllable clock for unit tests.

    Time does not advance on its own; the test drives it with ``advance()`` or
    ``set_time()``. ``monotonic()`` follows the same offset so measured
    durations agree with the simulated wall time.

    Args:
        start: Initial datetime. Must be timezone-aware. Defaults to the real
               UTC ``now()`` at construction time.
    """

    def __init__(self, start: datetime | None = None) -> None:
        if start is not None and start.tzinfo is None:
            raise ValueError(
                "SimulatedClock requires a timezone-aware datetime.  "
                "Pass e.g. datetime(2024, 1, 1, tzinfo=UTC)."
            )
        self._current: datetime = start if start is not None else datetime.now(UTC)
        self._monotonic_base: float = time.monotonic()
        self._offset_s: float = 0.0

    def now(self) -> datetime:
        return self._current

    def monotonic(self) -> float:
        return self._monotonic_base + self._offset_s

    def advance(self, delta: timedelta | float) -> None:
        """Move the clock forward by ``delta`` (a timedelta or seconds)."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        self._current += delta
        self._offset_s += delta.total_seconds()

    def set_time(self, dt: datetime) -> None:
        """Jump the clock to an exact datetime.

        Raises:
            ValueError: If ``dt`` is naive (no tzinfo).
        """
        if dt.tzinfo is None:
            raise ValueError("set_time requires a timezone-aware datetime.")
        diff = (dt - self._current).total_seconds()
        self._current = dt
        self._offset_s += diff


# ---------------------------------------------------------------------------
# Module-level clock registry
# ---------------------------------------------------------------------------

_default_clock: ClockProtocol = WallClock()


def get_clock() -> ClockProtocol:
    """Return the active module-level clock.

    Components default to this when no clock is injected, so tests can swap
    in a ``SimulatedClock`` via ``set_clock()``.
    """
    return _default_clock


def set_clock(clock: ClockProtocol) -> None:
    """Replace the module-level clock. Intended for test fixtures only."""
    global _default_clock
    _default_clock = clock


def reset_clock() -> None:
    """Restore the module-level clock to the real ``WallClock``."""
    global _default_clock
    _default_clock = WallClock()
