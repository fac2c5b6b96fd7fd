"""Single-flight guard around the portfolio fetch."""

from collections.abc import Awaitable, Callable

from tradeguard.logging import get_logger

logger = get_logger(__name__)


class SingleFlightFetcher:
    """Collapse concurrent fetch requests into one underlying call.

    The guard is a plain flag: it is set before the fetch starts and cleared
    in ``finally`` so a raising fetch can never leave it set. A caller that
    finds the flag set returns immediately; nothing is queued.
    """

    def __init__(self) -> None:
        self._in_flight = False
        self.calls = 0
        self.skipped = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def run(self, fetch: Callable[[], Awaitable[None]]) -> bool:
        """Run ``fetch`` unless another run is in progress.

        Returns:
            True if this call performed the fetch, False if it was skipped.
        """
        if self._in_flight:
            self.skipped += 1
            logger.debug("Fetch already in flight; request dropped")
            return False
        self._in_flight = True
        self.calls += 1
        try:
            await fetch()
        finally:
            self._in_flight = False
        return True
