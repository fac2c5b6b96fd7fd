"""Portfolio readiness coordinator.

Owns the single canonical ``PortfolioSnapshot`` and the ``ReadinessState``
describing how far it can be trusted. All mutation goes through
``dispatch()``, which applies the pure reducer synchronously, notifies
listeners, and then rebuilds the timer set for the new state:

- ``Fetching``: one single-flight fetch.
- ``Ready``: TTL timer + periodic refresh.
- ``SimulationRunning``: TTL timer + periodic refresh + health ping + watchdog.
- ``Unstable``: one backoff retry (or, once retries are exhausted, a
  recovery ping at the health-check cadence).

Timers of the previous state are always cancelled first, so rapid
transitions never accumulate duplicate timers.
"""

import asyncio
from collections import deque
from collections.abc import Callable
from datetime import datetime
from typing import Any

from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.core.clock import ClockProtocol, get_clock
from tradeguard.core.errors import ExchangeRateLimitError, describe_fetch_error
from tradeguard.core.types import (
    PortfolioSnapshot,
    ReadinessEvent,
    ReadinessEventType,
    ReadinessState,
    ReadinessStatus,
)
from tradeguard.exchange.interfaces import PortfolioSource
from tradeguard.logging import get_logger
from tradeguard.readiness.fetch import SingleFlightFetcher
from tradeguard.readiness.reducer import MachineState, reduce
from tradeguard.readiness.timers import TimerSet
from tradeguard.utils.retry import RetryScheduler

logger = get_logger(__name__)

Listener = Callable[[ReadinessStatus], None]

_RETRY_KEY = "portfolio_readiness"
_HISTORY_SIZE = 20


class ReadinessCoordinator:
    """State machine deciding whether the portfolio snapshot can be trusted.

    Args:
        source: Exchange-side portfolio provider.
        config: Settings supplying TTL, cadences and retry policy.
        clock: Time source for snapshot ages.
        retry_scheduler: Backoff policy; built from ``config`` when omitted.
        initial_snapshot: Previously cached snapshot; ``INIT`` goes straight
            to ``Ready`` when it is still fresh.
    """

    def __init__(
        self,
        source: PortfolioSource,
        config: TradeGuardSettings | None = None,
        clock: ClockProtocol | None = None,
        retry_scheduler: RetryScheduler | None = None,
        initial_snapshot: PortfolioSnapshot | None = None,
    ) -> None:
        self._source = source
        self._config = config or default_settings
        self._clock = clock or get_clock()
        self._retry = retry_scheduler or RetryScheduler(
            base_delay=self._config.retry_base_delay_seconds,
            max_delay=self._config.retry_max_delay_seconds,
            jitter=self._config.retry_jitter_seconds,
            max_attempts=self._config.retry_max_attempts,
        )
        self._machine = MachineState(snapshot=initial_snapshot)
        self._timers = TimerSet()
        self._fetcher = SingleFlightFetcher()
        self._fetch_task: asyncio.Task[None] | None = None
        self._listeners: list[Listener] = []
        self._last_error: BaseException | None = None
        self._last_ping_ok: datetime | None = None
        self._history: deque[dict[str, Any]] = deque(maxlen=_HISTORY_SIZE)
        self._shut_down = False

    # ── Properties ──────────────────────────────────────────────────────────

    @property
    def state(self) -> ReadinessState:
        return self._machine.state

    @property
    def snapshot(self) -> PortfolioSnapshot | None:
        return self._machine.snapshot

    @property
    def is_ready(self) -> bool:
        """True when the snapshot can be trusted by trading logic."""
        return self._machine.state.is_trusted

    @property
    def fetch_in_flight(self) -> bool:
        return self._fetcher.in_flight

    # ── Dispatch ────────────────────────────────────────────────────────────

    def dispatch(self, event: ReadinessEvent) -> bool:
        """Apply ``event``. Returns True if the machine state changed.

        Reading the old state and writing the new one happens without any
        ``await`` in between.
        """
        if self._shut_down:
            return False
        previous = self._machine
        now = self._clock.now()
        updated = reduce(previous, event, now, self._config.snapshot_ttl_seconds)
        if updated is previous:
            logger.debug(
                "Readiness event %s ignored in state %s",
                event.event_type.value,
                previous.state.value,
            )
            return False

        self._machine = updated
        self._history.append(
            {
                "at": now.isoformat(),
                "event": event.event_type.value,
                "from": previous.state.value,
                "to": updated.state.value,
                "reason": updated.reason,
            }
        )
        if previous.state is not updated.state:
            logger.info(
                "Readiness %s -> %s (%s)%s",
                previous.state.value,
                updated.state.value,
                event.event_type.value,
                f": {updated.reason}" if updated.reason else "",
            )
        self._notify()
        self._restart_timers()
        return True

    # ── Public API ──────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Leave ``Idle``: go to ``Ready`` on a fresh cached snapshot, else fetch."""
        self.dispatch(ReadinessEvent(ReadinessEventType.INIT))

    async def refresh(self) -> bool:
        """Fetch the portfolio unless a fetch is already in flight.

        Returns:
            True if this call performed the fetch.
        """
        return await self._fetcher.run(self._fetch_and_dispatch)

    async def force_refresh(self) -> None:
        """Operator-triggered refresh that also works once retries are exhausted."""
        state = self._machine.state
        logger.info("Force refresh requested in state %s", state.value)
        if state is ReadinessState.IDLE:
            self.initialize()
        elif state is ReadinessState.UNSTABLE:
            self.dispatch(ReadinessEvent(ReadinessEventType.API_UP))
        else:
            await self.refresh()
            return
        if self._fetch_task is not None and not self._fetch_task.done():
            await asyncio.shield(self._fetch_task)

    def start_simulation(self) -> bool:
        """Enter ``SimulationRunning``; only legal from ``Ready``."""
        accepted = self.dispatch(ReadinessEvent(ReadinessEventType.START_SIMULATION))
        if not accepted:
            logger.warning("Cannot start simulation in state %s", self._machine.state.value)
        return accepted

    def stop_simulation(self) -> bool:
        return self.dispatch(ReadinessEvent(ReadinessEventType.STOP_SIMULATION))

    def get_status(self) -> ReadinessStatus:
        machine = self._machine
        snapshot_age = 0.0
        if machine.snapshot is not None:
            snapshot_age = machine.snapshot.age_seconds(self._clock.now())
        return ReadinessStatus(
            state=machine.state,
            reason=machine.reason,
            snapshot_age=snapshot_age,
            last_api_ping=self._latest_ping(),
            retry_count=machine.retry_count,
            portfolio=machine.snapshot,
        )

    def get_detailed_status(self) -> dict[str, Any]:
        """Diagnostics: status plus timers, retry bookkeeping and recent transitions."""
        status = self.get_status()
        return {
            **status.model_dump(mode="json", exclude={"portfolio"}),
            "has_snapshot": status.portfolio is not None,
            "snapshot_ttl_seconds": self._config.snapshot_ttl_seconds,
            "fetch_in_flight": self._fetcher.in_flight,
            "fetch_calls": self._fetcher.calls,
            "fetch_requests_skipped": self._fetcher.skipped,
            "active_timers": self._timers.active(),
            "retry_pending": self._retry.has_pending(_RETRY_KEY),
            "retries_exhausted": self._retries_exhausted(),
            "listeners": len(self._listeners),
            "recent_transitions": list(self._history),
        }

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and call it once with the current status.

        Returns:
            A callable that removes the listener.
        """
        self._listeners.append(listener)
        self._call_listener(listener, self.get_status())

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def shutdown(self) -> None:
        """Stop timers, pending retries and any in-flight fetch task."""
        self._shut_down = True
        self._timers.cancel_all()
        self._retry.clear_all()
        task = self._fetch_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._listeners.clear()
        logger.info("Readiness coordinator shut down")

    # ── Internals: fetch / ping ─────────────────────────────────────────────

    async def _fetch_and_dispatch(self) -> None:
        try:
            snapshot = await self._source.fetch()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._last_error = exc
            logger.warning("Portfolio fetch failed: %s", exc)
            self.dispatch(ReadinessEvent.fetch_fail(describe_fetch_error(exc)))
            return
        self._last_error = None
        self.dispatch(ReadinessEvent.fetch_success(snapshot))

    async def _ping(self) -> bool:
        try:
            ok = bool(await self._source.ping())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._last_error = exc
            logger.warning("Exchange ping failed: %s", exc)
            return False
        if ok:
            self._last_ping_ok = self._clock.now()
        return ok

    def _latest_ping(self) -> datetime | None:
        stamps = [p for p in (self._machine.last_api_ping, self._last_ping_ok) if p is not None]
        return max(stamps) if stamps else None

    # ── Internals: timers per state ─────────────────────────────────────────

    def _restart_timers(self) -> None:
        self._timers.cancel_all()
        self._retry.clear_retry(_RETRY_KEY)

        state = self._machine.state
        if state is ReadinessState.FETCHING:
            self._start_fetch_task()
        elif state is ReadinessState.READY:
            self._start_freshness_timers()
        elif state is ReadinessState.SIMULATION_RUNNING:
            self._start_freshness_timers()
            self._timers.schedule_periodic(
                "health_check", self._health_check, self._config.health_check_interval_seconds
            )
            self._timers.schedule_periodic(
                "watchdog", self._watchdog, self._config.watchdog_interval_seconds
            )
        elif state is ReadinessState.UNSTABLE:
            self._schedule_recovery()

    def _start_fetch_task(self) -> None:
        if self._fetcher.in_flight:
            return
        self._fetch_task = asyncio.create_task(self.refresh(), name="readiness-fetch")

    def _start_freshness_timers(self) -> None:
        self._start_ttl_timer()
        self._timers.schedule_periodic(
            "refresh", self.refresh, self._config.portfolio_refresh_interval_seconds
        )

    def _start_ttl_timer(self) -> None:
        snapshot = self._machine.snapshot
        ttl = self._config.snapshot_ttl_seconds
        remaining = ttl
        if snapshot is not None:
            remaining = max(0.0, ttl - snapshot.age_seconds(self._clock.now()))
        self._timers.schedule_after("ttl", self._on_ttl_expired, remaining)

    def _on_ttl_expired(self) -> None:
        # The timer may wake marginally before the snapshot is actually stale.
        if not self.dispatch(ReadinessEvent(ReadinessEventType.AGE_EXCEEDED)) and self.is_ready:
            self._start_ttl_timer()

    async def _health_check(self) -> None:
        if not await self._ping():
            reason = (
                describe_fetch_error(self._last_error)
                if self._last_error is not None
                else "Exchange health check failed"
            )
            self.dispatch(ReadinessEvent.api_down(reason))

    async def _watchdog(self) -> None:
        snapshot = self._machine.snapshot
        if snapshot is None or self._fetcher.in_flight:
            return
        age = snapshot.age_seconds(self._clock.now())
        danger = self._config.snapshot_ttl_seconds - self._config.refresh_margin_seconds
        if age >= danger:
            logger.warning(
                "Watchdog: snapshot age %.0fs within %.0fs of TTL, refreshing early",
                age,
                self._config.refresh_margin_seconds,
            )
            await self.refresh()

    def _retry_attempt(self) -> int:
        return max(self._machine.retry_count - 1, 0)

    def _retries_exhausted(self) -> bool:
        return not self._retry.can_retry(self._retry_attempt())

    def _schedule_recovery(self) -> None:
        attempt = self._retry_attempt()
        if self._retries_exhausted():
            logger.error(
                "Portfolio retries exhausted after %d attempts; pinging every %.0fs",
                self._machine.retry_count,
                self._config.health_check_interval_seconds,
            )
            self._timers.schedule_periodic(
                "recovery", self._recovery_ping, self._config.health_check_interval_seconds
            )
            return

        if isinstance(self._last_error, ExchangeRateLimitError):
            delay = self._retry.get_rate_limit_delay(self._last_error.retry_after, attempt)
        else:
            delay = self._retry.get_next_delay(attempt)
        self._retry.schedule_retry(_RETRY_KEY, self._retry_ping, delay)

    async def _retry_ping(self) -> None:
        if await self._ping():
            self.dispatch(ReadinessEvent(ReadinessEventType.API_UP))
        else:
            reason = (
                describe_fetch_error(self._last_error)
                if self._last_error is not None
                else "Retry failed"
            )
            self.dispatch(ReadinessEvent.api_down(reason))

    async def _recovery_ping(self) -> None:
        if await self._ping():
            logger.info("Exchange reachable again, resuming portfolio fetch")
            self.dispatch(ReadinessEvent(ReadinessEventType.API_UP))

    # ── Internals: listeners ────────────────────────────────────────────────

    def _notify(self) -> None:
        status = self.get_status()
        for listener in list(self._listeners):
            self._call_listener(listener, status)

    @staticmethod
    def _call_listener(listener: Listener, status: ReadinessStatus) -> None:
        try:
            listener(status)
        except Exception:
            logger.error("Readiness listener raised an exception", exc_info=True)
