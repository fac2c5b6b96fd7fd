"""Per-symbol model-call health ledger with backoff and temporary blacklisting.

Consulted before every model call for a symbol and updated after it. State
is persisted on every mutation under two independent keys so that it
survives restarts:

- ``candidate_errors``: mapping symbol -> ``CandidateErrorState``
- ``ai_health_metrics``: the ``GlobalHealthMetrics`` singleton

A corrupt or schema-invalid entry is logged, deleted and reinitialised
instead of failing startup.
"""

import asyncio
import random
from datetime import datetime, timedelta

import orjson
from pydantic import TypeAdapter, ValidationError

from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.core.clock import ClockProtocol, get_clock
from tradeguard.core.types import CandidateErrorState, ErrorKind, GlobalHealthMetrics
from tradeguard.logging import get_logger
from tradeguard.storage.kv_store import KeyValueStore
from tradeguard.utils.retry import backoff_delay

logger = get_logger(__name__)

CANDIDATE_ERRORS_KEY = "candidate_errors"
HEALTH_METRICS_KEY = "ai_health_metrics"

_STATES_ADAPTER = TypeAdapter(dict[str, CandidateErrorState])


class CandidateErrorManager:
    """Ledger of model-call outcomes per traded symbol.

    Args:
        store: Durable key-value store for the two persisted entries.
        config: Supplies backoff, blacklist and sweep parameters.
        clock: Time source for timestamps, backoff deadlines and expiries.
        rng: Random source for backoff jitter (seed it in tests).
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: TradeGuardSettings | None = None,
        clock: ClockProtocol | None = None,
        rng: random.Random | None = None,
    ) -> None:
        cfg = config or default_settings
        self._store = store
        self._clock = clock or get_clock()
        self._rng = rng or random.Random()
        self.base_delay = cfg.candidate_base_delay_seconds
        self.max_delay = cfg.candidate_max_delay_seconds
        self.jitter = cfg.candidate_jitter_seconds
        self.blacklist_threshold = cfg.blacklist_threshold
        self.blacklist_duration = timedelta(seconds=cfg.blacklist_duration_seconds)
        self.sweep_interval = cfg.blacklist_sweep_interval_seconds

        self._states: dict[str, CandidateErrorState] = {}
        self._metrics = GlobalHealthMetrics(last_health_check=self._clock.now())
        self._sweep_task: asyncio.Task[None] | None = None

        self._load()
        self.sweep_expired_blacklists()

    # ── Persistence ─────────────────────────────────────────────────────────

    def _load(self) -> None:
        try:
            raw_states = self._store.get(CANDIDATE_ERRORS_KEY)
            if raw_states is not None:
                self._states = _STATES_ADAPTER.validate_python(orjson.loads(raw_states))
        except (UnicodeDecodeError, orjson.JSONDecodeError, ValidationError, TypeError) as e:
            logger.error("Discarding corrupt %s entry: %s", CANDIDATE_ERRORS_KEY, e)
            self._store.delete(CANDIDATE_ERRORS_KEY)
            self._states = {}

        try:
            raw_metrics = self._store.get(HEALTH_METRICS_KEY)
            if raw_metrics is not None:
                self._metrics = GlobalHealthMetrics.model_validate(orjson.loads(raw_metrics))
        except (UnicodeDecodeError, orjson.JSONDecodeError, ValidationError, TypeError) as e:
            logger.error("Discarding corrupt %s entry: %s", HEALTH_METRICS_KEY, e)
            self._store.delete(HEALTH_METRICS_KEY)
            self._metrics = GlobalHealthMetrics(last_health_check=self._clock.now())

        if self._states:
            logger.info("Loaded error state for %d symbols", len(self._states))

    def _save(self) -> None:
        states = {symbol: state.model_dump(mode="json") for symbol, state in self._states.items()}
        self._store.set(CANDIDATE_ERRORS_KEY, orjson.dumps(states).decode())
        self._store.set(HEALTH_METRICS_KEY, self._metrics.model_dump_json())

    def _update_blacklist_count(self) -> None:
        now = self._clock.now()
        self._metrics.current_blacklists = sum(
            1 for state in self._states.values() if self._blacklisted_at(state, now)
        )

    @staticmethod
    def _blacklisted_at(state: CandidateErrorState, now: datetime) -> bool:
        return state.blacklisted_until is not None and state.blacklisted_until > now

    def _state_for(self, symbol: str) -> CandidateErrorState:
        state = self._states.get(symbol)
        if state is None:
            state = CandidateErrorState(symbol=symbol)
            self._states[symbol] = state
        return state

    # ── Recording ───────────────────────────────────────────────────────────

    def record_error(self, symbol: str, error_type: ErrorKind, blacklist: bool = True) -> bool:
        """Record a failed model call for ``symbol``.

        Args:
            symbol: Ledger key, normally a traded pair.
            error_type: Classified failure.
            blacklist: False for keys that are not tradable pairs; their
                errors back off and count toward health but never blacklist.

        Returns:
            True when this error (re)blacklisted the symbol.
        """
        now = self._clock.now()
        state = self._state_for(symbol)
        state.consecutive_errors += 1
        state.total_errors += 1
        state.last_error_type = error_type
        state.last_error_timestamp = now

        delay = backoff_delay(state.consecutive_errors - 1, self.base_delay, self.max_delay)
        jitter = self._rng.uniform(0, self.jitter) if self.jitter > 0 else 0.0
        state.next_retry_at = now + timedelta(seconds=delay + jitter)

        blacklisted = False
        if blacklist and state.consecutive_errors >= self.blacklist_threshold:
            state.blacklisted_until = now + self.blacklist_duration
            blacklisted = True
            logger.warning(
                "Symbol %s blacklisted until %s after %d consecutive errors (last: %s)",
                symbol,
                state.blacklisted_until.isoformat(),
                state.consecutive_errors,
                error_type.value,
            )
        else:
            logger.info(
                "Model error for %s (%s), %d consecutive, retry after %.1fs",
                symbol,
                error_type.value,
                state.consecutive_errors,
                delay + jitter,
            )

        self._metrics.total_calls += 1
        self._metrics.total_errors += 1
        self._metrics.errors_by_type[error_type.value] = (
            self._metrics.errors_by_type.get(error_type.value, 0) + 1
        )
        self._update_blacklist_count()
        self._save()
        return blacklisted

    def record_success(self, symbol: str) -> None:
        now = self._clock.now()
        state = self._state_for(symbol)
        state.consecutive_errors = 0
        state.successful_calls += 1
        state.next_retry_at = now
        if state.blacklisted_until is not None:
            state.blacklisted_until = None
            logger.info("Symbol %s recovered from blacklist", symbol)

        self._metrics.total_calls += 1
        self._metrics.successful_calls += 1
        self._update_blacklist_count()
        self._save()

    def record_fallback_used(self) -> None:
        self._metrics.fallbacks_used += 1
        self._save()

    # ── Queries ─────────────────────────────────────────────────────────────

    def can_retry(self, symbol: str) -> bool:
        """True if a model call for ``symbol`` is allowed right now."""
        state = self._states.get(symbol)
        if state is None:
            return True
        now = self._clock.now()
        if self._blacklisted_at(state, now):
            return False
        return state.next_retry_at is None or now >= state.next_retry_at

    def is_blacklisted(self, symbol: str) -> bool:
        state = self._states.get(symbol)
        return state is not None and self._blacklisted_at(state, self._clock.now())

    def blacklist_remaining(self, symbol: str) -> float:
        """Seconds until ``symbol`` leaves the blacklist (0 when not blacklisted)."""
        state = self._states.get(symbol)
        if state is None or state.blacklisted_until is None:
            return 0.0
        return max(0.0, (state.blacklisted_until - self._clock.now()).total_seconds())

    def get_error_state(self, symbol: str) -> CandidateErrorState | None:
        state = self._states.get(symbol)
        return state.model_copy() if state is not None else None

    def get_health_metrics(self) -> GlobalHealthMetrics:
        self._metrics.last_health_check = self._clock.now()
        return self._metrics.model_copy(deep=True)

    def get_success_rate(self) -> float:
        if self._metrics.total_calls == 0:
            return 1.0
        return self._metrics.successful_calls / self._metrics.total_calls

    def get_blacklisted_symbols(self) -> list[str]:
        now = self._clock.now()
        return sorted(s for s, state in self._states.items() if self._blacklisted_at(state, now))

    # ── Operator actions ────────────────────────────────────────────────────

    def clear_blacklist(self, symbol: str) -> bool:
        """Manually lift the blacklist for ``symbol``. Returns False if unknown."""
        state = self._states.get(symbol)
        if state is None:
            return False
        state.blacklisted_until = None
        state.consecutive_errors = 0
        state.next_retry_at = self._clock.now()
        self._update_blacklist_count()
        self._save()
        logger.info("Blacklist manually cleared for %s", symbol)
        return True

    def reset_health_metrics(self) -> None:
        self._metrics = GlobalHealthMetrics(last_health_check=self._clock.now())
        self._update_blacklist_count()
        self._save()
        logger.info("Global model health metrics reset")

    # ── Expiry sweep ────────────────────────────────────────────────────────

    def sweep_expired_blacklists(self) -> int:
        """Lift every blacklist whose expiry has passed. Returns how many were lifted."""
        now = self._clock.now()
        lifted = 0
        for state in self._states.values():
            if state.blacklisted_until is not None and state.blacklisted_until <= now:
                state.blacklisted_until = None
                state.consecutive_errors = 0
                lifted += 1

        self._update_blacklist_count()
        if lifted:
            self._save()
            logger.info("Cleaned up %d expired blacklists", lifted)
        return lifted

    async def start(self) -> None:
        """Start the periodic expired-blacklist sweep."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="blacklist-sweep")
        logger.info("Blacklist sweep started (every %.0fs)", self.sweep_interval)

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("Blacklist sweep stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep_expired_blacklists()
            except Exception:
                logger.error("Blacklist sweep failed", exc_info=True)
