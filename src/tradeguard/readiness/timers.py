"""Named asyncio timers for the readiness coordinator.

Every timer is keyed by name. Scheduling under a name that is already in use
cancels the previous timer, and ``cancel_all`` stops every timer at once,
which is what the coordinator does on each state transition.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from tradeguard.logging import get_logger

logger = get_logger(__name__)

# Sync or async callable taking no arguments.
_AnyCallable = Callable[[], Any]


class TimerSet:
    """Named one-shot and periodic timers backed by asyncio tasks."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def schedule_after(self, name: str, callback: _AnyCallable, delay: float) -> None:
        """Run ``callback`` once after ``delay`` seconds."""

        async def _after() -> None:
            await asyncio.sleep(delay)
            self._forget(name)
            await self._invoke(name, callback)

        self._replace(name, _after())

    def schedule_periodic(self, name: str, callback: _AnyCallable, interval: float) -> None:
        """Run ``callback`` every ``interval`` seconds, first run after one interval.

        Exceptions inside the callback are logged but do not terminate the timer.
        """

        async def _periodic() -> None:
            # A callback that triggers cancel_all cannot cancel its own task,
            # so the loop exits once it is no longer the registered timer.
            while self._tasks.get(name) is asyncio.current_task():
                await asyncio.sleep(interval)
                await self._invoke(name, callback)

        self._replace(name, _periodic())

    def cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)

    def active(self) -> list[str]:
        """Names of timers that are still pending, sorted."""
        return sorted(name for name, task in self._tasks.items() if not task.done())

    def _replace(self, name: str, coro: Any) -> None:
        self.cancel(name)
        self._tasks[name] = asyncio.create_task(coro, name=f"readiness-{name}")
        logger.debug("Timer '%s' started", name)

    def _forget(self, name: str) -> None:
        if self._tasks.get(name) is asyncio.current_task():
            del self._tasks[name]

    @staticmethod
    async def _invoke(name: str, callback: _AnyCallable) -> None:
        """Invoke ``callback``, awaiting it if it returns a coroutine."""
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Timer '%s' raised an exception", name, exc_info=True)
