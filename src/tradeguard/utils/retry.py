"""Retry utilities with exponential backoff."""

import asyncio
import random
from collections.abc import Callable
from typing import Any

from tradeguard.logging import get_logger

logger = get_logger(__name__)

_AnyCallable = Callable[[], Any]


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: float = 2.0,
) -> float:
    """Capped exponential delay for a zero-based ``attempt`` (no jitter)."""
    return min(base_delay * (exponential_base ** max(attempt, 0)), max_delay)


class RetryScheduler:
    """Exponential-backoff policy plus at most one pending retry per key.

    ``get_next_delay`` / ``can_retry`` are pure policy. ``schedule_retry``
    owns an asyncio task per key; scheduling under a key that already has a
    pending retry cancels the older one first.

    Args:
        base_delay: Delay for retry 0, in seconds.
        max_delay: Upper bound on the exponential part of the delay.
        jitter: Maximum uniform random jitter added on top, in seconds.
        max_attempts: Number of retries allowed before ``can_retry`` is False.
        rng: Optional ``random.Random`` for deterministic tests.
    """

    def __init__(
        self,
        base_delay: float = 2.0,
        max_delay: float = 32.0,
        jitter: float = 0.5,
        max_attempts: int = 5,
        rng: random.Random | None = None,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.max_attempts = max_attempts
        self._rng = rng or random.Random()
        self._pending: dict[str, asyncio.Task[None]] = {}

    # ── Policy ──────────────────────────────────────────────────────────────

    def get_next_delay(self, retry_count: int) -> float:
        """Delay in seconds before retry number ``retry_count`` (zero-based)."""
        delay = backoff_delay(retry_count, self.base_delay, self.max_delay)
        if self.jitter > 0:
            delay += self._rng.uniform(0, self.jitter)
        return delay

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_attempts

    def get_rate_limit_delay(self, retry_after: float | None, retry_count: int) -> float:
        """Larger of the backoff delay and the exchange-advertised wait."""
        delay = self.get_next_delay(retry_count)
        if retry_after is not None and retry_after > delay:
            return float(retry_after)
        return delay

    # ── Scheduling ──────────────────────────────────────────────────────────

    def schedule_retry(self, key: str, callback: _AnyCallable, delay: float) -> None:
        """Run ``callback`` once after ``delay`` seconds under ``key``.

        Must be called from within a running event loop.
        """
        self.clear_retry(key)
        logger.info("Retry '%s' scheduled in %.2fs", key, delay)
        self._pending[key] = asyncio.create_task(self._run(key, callback, delay))

    def clear_retry(self, key: str) -> None:
        task = self._pending.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug("Pending retry '%s' cancelled", key)

    def clear_all(self) -> None:
        for key in list(self._pending):
            self.clear_retry(key)

    def has_pending(self, key: str) -> bool:
        task = self._pending.get(key)
        return task is not None and not task.done()

    async def _run(self, key: str, callback: _AnyCallable, delay: float) -> None:
        await asyncio.sleep(delay)
        current = asyncio.current_task()
        if self._pending.get(key) is current:
            del self._pending[key]
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Retry '%s' raised an exception", key, exc_info=True)
