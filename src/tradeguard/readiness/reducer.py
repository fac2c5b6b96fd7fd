"""Pure transition function of the portfolio readiness machine.

``reduce`` never performs I/O and never mutates its input. When an event is
illegal in the current state, or is a duplicate ``FETCH_SUCCESS``, the very
same ``MachineState`` object is returned so callers can detect "no change"
with an identity check.
"""

from dataclasses import dataclass, replace
from datetime import datetime

from tradeguard.core.types import (
    PortfolioSnapshot,
    ReadinessEvent,
    ReadinessEventType,
    ReadinessState,
)


@dataclass(frozen=True)
class MachineState:
    """Everything the readiness machine owns between transitions."""

    state: ReadinessState = ReadinessState.IDLE
    reason: str | None = None
    snapshot: PortfolioSnapshot | None = None
    last_api_ping: datetime | None = None
    retry_count: int = 0


_FAILABLE = frozenset(
    {
        ReadinessState.FETCHING,
        ReadinessState.READY,
        ReadinessState.SIMULATION_RUNNING,
        ReadinessState.UNSTABLE,
    }
)


def _is_fresh(snapshot: PortfolioSnapshot | None, now: datetime, ttl_seconds: float) -> bool:
    return snapshot is not None and snapshot.is_fresh(now, ttl_seconds)


def reduce(
    current: MachineState,
    event: ReadinessEvent,
    now: datetime,
    ttl_seconds: float,
) -> MachineState:
    """Apply ``event`` to ``current`` and return the resulting state.

    Args:
        current: State before the event.
        event: Event being dispatched.
        now: Current time, used for freshness checks and ping stamps.
        ttl_seconds: Maximum snapshot age that is still trusted.

    Returns:
        The new ``MachineState``, or ``current`` itself when nothing changes.
    """
    state = current.state
    kind = event.event_type

    if kind is ReadinessEventType.INIT:
        if state is not ReadinessState.IDLE:
            return current
        if _is_fresh(current.snapshot, now, ttl_seconds):
            return replace(current, state=ReadinessState.READY, reason=None)
        return replace(current, state=ReadinessState.FETCHING, reason=None)

    if kind is ReadinessEventType.FETCH_SUCCESS:
        snapshot = event.snapshot
        if snapshot is None:
            return current
        if (
            state.is_trusted
            and current.snapshot is not None
            and current.snapshot.fetched_at == snapshot.fetched_at
        ):
            return current
        target = (
            ReadinessState.SIMULATION_RUNNING
            if state is ReadinessState.SIMULATION_RUNNING
            else ReadinessState.READY
        )
        return MachineState(
            state=target,
            reason=None,
            snapshot=snapshot,
            last_api_ping=now,
            retry_count=0,
        )

    if kind in (ReadinessEventType.FETCH_FAIL, ReadinessEventType.API_DOWN):
        if state not in _FAILABLE:
            return current
        if kind is ReadinessEventType.FETCH_FAIL:
            default_reason = "Portfolio fetch failed"
        else:
            default_reason = "Exchange API unreachable"
        return replace(
            current,
            state=ReadinessState.UNSTABLE,
            reason=event.reason or default_reason,
            retry_count=current.retry_count + 1,
        )

    if kind is ReadinessEventType.AGE_EXCEEDED:
        if not state.is_trusted or _is_fresh(current.snapshot, now, ttl_seconds):
            return current
        return replace(
            current,
            state=ReadinessState.UNSTABLE,
            reason=event.reason or f"Portfolio snapshot older than {ttl_seconds:.0f}s",
        )

    if kind is ReadinessEventType.API_UP:
        if state is not ReadinessState.UNSTABLE:
            return current
        return replace(current, state=ReadinessState.FETCHING, reason=None)

    if kind is ReadinessEventType.START_SIMULATION:
        if state is not ReadinessState.READY:
            return current
        return replace(current, state=ReadinessState.SIMULATION_RUNNING)

    if kind is ReadinessEventType.STOP_SIMULATION:
        if state is not ReadinessState.SIMULATION_RUNNING:
            return current
        if _is_fresh(current.snapshot, now, ttl_seconds):
            return replace(current, state=ReadinessState.READY)
        return replace(
            current,
            state=ReadinessState.UNSTABLE,
            reason=f"Portfolio snapshot older than {ttl_seconds:.0f}s",
        )

    return current
