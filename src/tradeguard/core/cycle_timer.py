"""Adaptive, execution-locked periodic timers.

Each timer runs its function on an interval derived from the rolling average
of its recent execution durations. A tick that arrives while the previous
execution is still running is skipped: executions never queue or overlap.
"""

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.core.clock import ClockProtocol, get_clock
from tradeguard.logging import get_logger

logger = get_logger(__name__)

CycleFn = Callable[[], Awaitable[Any]]
ShouldRun = Callable[[], bool]


@dataclass
class TimerInstance:
    """Bookkeeping for one periodic task."""

    timer_id: str
    context: str = ""
    is_running: bool = True
    execution_lock: bool = False
    last_execution: datetime | None = None
    execution_count: int = 0
    skipped_ticks: int = 0
    durations: deque[float] = field(default_factory=lambda: deque(maxlen=10))
    task: asyncio.Task[None] | None = None
    executions: set[asyncio.Task[None]] = field(default_factory=set)

    @property
    def average_duration(self) -> float:
        if not self.durations:
            return 0.0
        return sum(self.durations) / len(self.durations)


class CycleTimer:
    """Registry of adaptive execution-locked timers keyed by id.

    Args:
        config: Supplies the base interval, slow threshold, stretch cap and
            rolling window size.
        clock: Used for ``last_execution`` stamps and duration measurement.
    """

    def __init__(
        self,
        config: TradeGuardSettings | None = None,
        clock: ClockProtocol | None = None,
    ) -> None:
        cfg = config or default_settings
        self.base_interval = cfg.cycle_base_interval_seconds
        self.slow_threshold = cfg.cycle_slow_threshold_seconds
        self.max_factor = cfg.cycle_max_interval_factor
        self.window = cfg.cycle_duration_window
        self._clock = clock or get_clock()
        self._timers: dict[str, TimerInstance] = {}

    def compute_interval(self, durations: deque[float] | list[float]) -> float:
        """Next tick interval for the given recent execution durations.

        Base interval while the average stays at or under the slow threshold;
        above it the interval grows in proportion, capped at ``max_factor``.
        """
        if not durations:
            return self.base_interval
        average = sum(durations) / len(durations)
        if average <= self.slow_threshold:
            return self.base_interval
        factor = min(average / self.slow_threshold, self.max_factor)
        return self.base_interval * factor

    def start(
        self,
        timer_id: str,
        should_run: ShouldRun,
        fn: CycleFn,
        context: str = "",
    ) -> bool:
        """(Re)start ``timer_id``. Returns False if ``should_run()`` is false now.

        Any existing timer under ``timer_id`` is stopped first. ``should_run``
        is called again on every tick; once it returns False the timer stops
        itself.
        """
        self.stop(timer_id)
        if not should_run():
            logger.debug("Timer %s not started: run condition is false", timer_id)
            return False

        instance = TimerInstance(timer_id=timer_id, context=context)
        instance.durations = deque(maxlen=self.window)
        self._timers[timer_id] = instance
        instance.task = asyncio.create_task(
            self._loop(instance, should_run, fn), name=f"cycle-timer-{timer_id}"
        )
        logger.info(
            "Timer %s started (%s), interval %.1fs",
            timer_id,
            context or "no context",
            self.compute_interval(instance.durations),
        )
        return True

    def stop(self, timer_id: str) -> None:
        """Stop the timer and drop its instance. An execution in progress finishes."""
        instance = self._timers.pop(timer_id, None)
        if instance is None:
            return
        instance.is_running = False
        if instance.task is not None and instance.task is not asyncio.current_task():
            instance.task.cancel()
        logger.info("Timer %s stopped after %d executions", timer_id, instance.execution_count)

    def stop_all(self) -> None:
        for timer_id in list(self._timers):
            self.stop(timer_id)

    def get_timer_state(self, timer_id: str) -> TimerInstance | None:
        return self._timers.get(timer_id)

    def timer_ids(self) -> list[str]:
        return sorted(self._timers)

    async def force_execution(self, timer_id: str, fn: CycleFn) -> bool:
        """Run ``fn`` now under the timer's lock, outside the normal schedule.

        Returns:
            True if ``fn`` ran; False if the timer does not exist or is busy.
        """
        instance = self._timers.get(timer_id)
        if instance is None:
            logger.warning("Force execution of unknown timer %s ignored", timer_id)
            return False
        if instance.execution_lock:
            logger.info("Timer %s busy, force execution skipped", timer_id)
            return False
        await self._execute(instance, fn)
        return True

    async def _loop(self, instance: TimerInstance, should_run: ShouldRun, fn: CycleFn) -> None:
        while instance.is_running:
            await asyncio.sleep(self.compute_interval(instance.durations))
            if not instance.is_running:
                return
            if not should_run():
                logger.info("Timer %s run condition became false, stopping", instance.timer_id)
                self.stop(instance.timer_id)
                return
            if instance.execution_lock:
                instance.skipped_ticks += 1
                logger.debug("Timer %s tick skipped: previous execution still running", instance.timer_id)
                continue
            # Lock is taken before the task starts so the next tick already sees it.
            instance.execution_lock = True
            execution = asyncio.create_task(self._execute(instance, fn, locked=True))
            instance.executions.add(execution)
            execution.add_done_callback(instance.executions.discard)

    async def _execute(self, instance: TimerInstance, fn: CycleFn, locked: bool = False) -> None:
        if not locked:
            instance.execution_lock = True
        started = self._clock.monotonic()
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Timer %s execution failed", instance.timer_id, exc_info=True)
        finally:
            duration = self._clock.monotonic() - started
            instance.durations.append(duration)
            instance.execution_count += 1
            instance.last_execution = self._clock.now()
            instance.execution_lock = False
            logger.debug("Timer %s execution took %.2fs", instance.timer_id, duration)
