"""Tests for the per-symbol model error ledger."""

import asyncio
import random
from datetime import timedelta

import orjson
import pytest

from tradeguard.core.types import ErrorKind
from tradeguard.intelligence.candidate_errors import (
    CANDIDATE_ERRORS_KEY,
    HEALTH_METRICS_KEY,
    CandidateErrorManager,
)
from tradeguard.storage.kv_store import FileKeyValueStore

from conftest import make_settings

SYMBOL = "BTC-USDT"


@pytest.fixture
def manager(store, sim_clock):
    return CandidateErrorManager(store, config=make_settings(), clock=sim_clock, rng=random.Random(1))


class TestBackoff:
    def test_unknown_symbol_can_retry(self, manager):
        assert manager.can_retry(SYMBOL)
        assert manager.get_error_state(SYMBOL) is None

    def test_first_error_sets_backoff(self, manager, sim_clock):
        blacklisted = manager.record_error(SYMBOL, ErrorKind.TIMEOUT)

        assert not blacklisted
        assert not manager.can_retry(SYMBOL)
        state = manager.get_error_state(SYMBOL)
        wait = (state.next_retry_at - sim_clock.now()).total_seconds()
        assert 2.0 <= wait <= 3.0

        sim_clock.advance(3.01)
        assert manager.can_retry(SYMBOL)

    def test_backoff_grows_with_consecutive_errors(self, manager, sim_clock):
        manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        sim_clock.advance(5)
        manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        state = manager.get_error_state(SYMBOL)
        wait = (state.next_retry_at - sim_clock.now()).total_seconds()
        assert 4.0 <= wait <= 5.0


class TestBlacklist:
    def test_third_consecutive_error_blacklists(self, manager, sim_clock):
        assert not manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        assert not manager.record_error(SYMBOL, ErrorKind.MALFORMED_RESPONSE)
        assert manager.record_error(SYMBOL, ErrorKind.HALLUCINATION)

        assert manager.is_blacklisted(SYMBOL)
        assert not manager.can_retry(SYMBOL)
        assert manager.blacklist_remaining(SYMBOL) == pytest.approx(1800)
        assert manager.get_blacklisted_symbols() == [SYMBOL]
        assert manager.get_health_metrics().current_blacklists == 1

    def test_further_error_extends_blacklist(self, manager, sim_clock):
        for _ in range(3):
            manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        sim_clock.advance(600)

        assert manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        state = manager.get_error_state(SYMBOL)
        assert state.consecutive_errors == 4
        assert state.blacklisted_until == sim_clock.now() + timedelta(seconds=1800)

    def test_blocked_even_after_backoff_elapsed(self, manager, sim_clock):
        for _ in range(3):
            manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        sim_clock.advance(60)
        assert not manager.can_retry(SYMBOL)

        sim_clock.advance(1800)
        assert manager.can_retry(SYMBOL)

    def test_success_clears_blacklist(self, manager):
        for _ in range(3):
            manager.record_error(SYMBOL, ErrorKind.TIMEOUT)

        manager.record_success(SYMBOL)

        state = manager.get_error_state(SYMBOL)
        assert state.consecutive_errors == 0
        assert state.blacklisted_until is None
        assert state.successful_calls == 1
        assert state.total_errors == 3
        assert manager.can_retry(SYMBOL)

    def test_manual_clear(self, manager):
        for _ in range(3):
            manager.record_error(SYMBOL, ErrorKind.TIMEOUT)

        assert manager.clear_blacklist(SYMBOL)
        assert not manager.clear_blacklist("UNKNOWN-USDT")
        assert not manager.is_blacklisted(SYMBOL)
        assert manager.can_retry(SYMBOL)

    def test_non_tradable_key_never_blacklists(self, manager):
        for _ in range(4):
            assert not manager.record_error("screening", ErrorKind.TIMEOUT, blacklist=False)

        assert not manager.is_blacklisted("screening")
        assert manager.get_blacklisted_symbols() == []
        metrics = manager.get_health_metrics()
        assert metrics.current_blacklists == 0
        assert metrics.total_errors == 4
        assert manager.get_error_state("screening").consecutive_errors == 4

    def test_sweep_lifts_expired_blacklists(self, manager, sim_clock):
        for _ in range(3):
            manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        assert manager.sweep_expired_blacklists() == 0

        sim_clock.advance(1801)
        assert manager.sweep_expired_blacklists() == 1

        state = manager.get_error_state(SYMBOL)
        assert state.blacklisted_until is None
        assert state.consecutive_errors == 0
        assert manager.get_health_metrics().current_blacklists == 0

    @pytest.mark.asyncio
    async def test_background_sweep(self, store, sim_clock):
        manager = CandidateErrorManager(
            store,
            config=make_settings(blacklist_sweep_interval_seconds=0.01),
            clock=sim_clock,
        )
        for _ in range(3):
            manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        await manager.start()
        sim_clock.advance(1801)
        await asyncio.sleep(0.05)
        await manager.stop()

        assert manager.get_error_state(SYMBOL).blacklisted_until is None


class TestMetrics:
    def test_counts_and_success_rate(self, manager):
        assert manager.get_success_rate() == 1.0

        manager.record_success(SYMBOL)
        manager.record_error("ETH-USDT", ErrorKind.TIMEOUT)
        manager.record_error("ETH-USDT", ErrorKind.RATE_LIMIT)
        manager.record_success(SYMBOL)
        manager.record_fallback_used()

        metrics = manager.get_health_metrics()
        assert metrics.total_calls == 4
        assert metrics.successful_calls == 2
        assert metrics.total_errors == 2
        assert metrics.fallbacks_used == 1
        assert metrics.errors_by_type == {"timeout": 1, "rate_limit": 1}
        assert manager.get_success_rate() == pytest.approx(0.5)

    def test_metrics_copy_is_detached(self, manager):
        metrics = manager.get_health_metrics()
        metrics.errors_by_type["timeout"] = 99
        assert manager.get_health_metrics().errors_by_type == {}

    def test_reset_metrics_keeps_symbol_state(self, manager):
        manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        manager.reset_health_metrics()

        assert manager.get_health_metrics().total_calls == 0
        assert manager.get_error_state(SYMBOL).consecutive_errors == 1


class TestPersistence:
    def test_state_survives_restart(self, store, sim_clock):
        first = CandidateErrorManager(store, config=make_settings(), clock=sim_clock)
        for _ in range(3):
            first.record_error(SYMBOL, ErrorKind.TIMEOUT)
        first.record_fallback_used()

        second = CandidateErrorManager(store, config=make_settings(), clock=sim_clock)

        assert second.is_blacklisted(SYMBOL)
        assert second.get_error_state(SYMBOL).last_error_type is ErrorKind.TIMEOUT
        assert second.get_health_metrics().fallbacks_used == 1
        assert orjson.loads(store.get(CANDIDATE_ERRORS_KEY))[SYMBOL]["consecutive_errors"] == 3

    def test_expired_blacklist_swept_on_load(self, store, sim_clock):
        first = CandidateErrorManager(store, config=make_settings(), clock=sim_clock)
        for _ in range(3):
            first.record_error(SYMBOL, ErrorKind.TIMEOUT)

        sim_clock.advance(timedelta(minutes=31))
        second = CandidateErrorManager(store, config=make_settings(), clock=sim_clock)

        assert not second.is_blacklisted(SYMBOL)
        assert second.can_retry(SYMBOL)

    def test_corrupt_entries_are_reset(self, store, sim_clock):
        store.set(CANDIDATE_ERRORS_KEY, "{not json")
        store.set(HEALTH_METRICS_KEY, '{"total_calls": "many"}')

        manager = CandidateErrorManager(store, config=make_settings(), clock=sim_clock)

        assert manager.get_blacklisted_symbols() == []
        assert manager.get_health_metrics().total_calls == 0
        assert store.get(CANDIDATE_ERRORS_KEY) is None
        assert store.get(HEALTH_METRICS_KEY) is None

    def test_schema_invalid_symbol_state_is_reset(self, store, sim_clock):
        store.set(CANDIDATE_ERRORS_KEY, '{"BTC-USDT": {"consecutive_errors": 2}}')

        manager = CandidateErrorManager(store, config=make_settings(), clock=sim_clock)

        assert manager.get_error_state(SYMBOL) is None
        assert store.get(CANDIDATE_ERRORS_KEY) is None

    def test_undecodable_file_entry_is_reset(self, tmp_path, sim_clock):
        (tmp_path / f"{CANDIDATE_ERRORS_KEY}.json").write_bytes(b"\xff\xfe{garbage")
        (tmp_path / f"{HEALTH_METRICS_KEY}.json").write_bytes(b"\x80\x81")
        store = FileKeyValueStore(tmp_path)

        manager = CandidateErrorManager(store, config=make_settings(), clock=sim_clock)

        assert manager.get_blacklisted_symbols() == []
        assert manager.get_health_metrics().total_calls == 0
        assert store.get(CANDIDATE_ERRORS_KEY) is None
        assert store.get(HEALTH_METRICS_KEY) is None
        manager.record_error(SYMBOL, ErrorKind.TIMEOUT)
        assert orjson.loads(store.get(CANDIDATE_ERRORS_KEY))[SYMBOL]["total_errors"] == 1
