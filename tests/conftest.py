"""Shared test fixtures and fakes."""

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from tradeguard.brain.model_client import ModelClient
from tradeguard.config import TradeGuardSettings
from tradeguard.core.clock import ClockProtocol, SimulatedClock, WallClock
from tradeguard.core.types import Candle, MarketTicker, PortfolioPosition, PortfolioSnapshot
from tradeguard.exchange.interfaces import CandleSource, PortfolioSource, TickerSource
from tradeguard.storage.kv_store import MemoryKeyValueStore

START = datetime(2024, 1, 1, tzinfo=UTC)


def make_settings(**overrides: Any) -> TradeGuardSettings:
    """Settings isolated from the environment and any .env file."""
    values: dict[str, Any] = {
        "openrouter_api_key": "test-key",
        "request_delay_seconds": 0.0,
        "model_retry_base_delay_seconds": 0.0,
        "model_retry_max_delay_seconds": 0.0,
    }
    values.update(overrides)
    return TradeGuardSettings(_env_file=None, **values)


def make_snapshot(fetched_at: datetime, total: float = 1000.0) -> PortfolioSnapshot:
    return PortfolioSnapshot(
        positions=(
            PortfolioPosition(currency="USDT", balance=total, available=total, usd_value=total),
        ),
        total_value=total,
        cash_usdt=total,
        fetched_at=fetched_at,
    )


def make_candles(
    closes: Iterable[float],
    volumes: Iterable[float] | None = None,
) -> list[Candle]:
    closes = list(closes)
    volumes = list(volumes) if volumes is not None else [1000.0] * len(closes)
    return [
        Candle(
            open=c,
            high=c * 1.01,
            low=c * 0.99,
            close=c,
            volume=v,
            timestamp=START + timedelta(minutes=5 * i),
        )
        for i, (c, v) in enumerate(zip(closes, volumes))
    ]


class FakePortfolioSource(PortfolioSource):
    """Scripted portfolio source.

    ``fetch_results`` items are consumed in order: an exception instance is
    raised, anything else yields a fresh snapshot. When the script runs out
    every fetch succeeds. ``gate`` (if set) blocks each fetch until released.
    """

    def __init__(self, clock: ClockProtocol, fetch_results: list[Any] | None = None) -> None:
        self.clock = clock
        self.fetch_results = list(fetch_results or [])
        self.ping_results: list[Any] = []
        self.fetch_calls = 0
        self.ping_calls = 0
        self.gate: asyncio.Event | None = None

    async def fetch(self) -> PortfolioSnapshot:
        self.fetch_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fetch_results:
            result = self.fetch_results.pop(0)
            if isinstance(result, BaseException):
                raise result
        return make_snapshot(self.clock.now())

    async def ping(self) -> bool:
        self.ping_calls += 1
        if self.ping_results:
            result = self.ping_results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return bool(result)
        return True


class FakeModelClient(ModelClient):
    """Returns scripted responses; exception instances are raised."""

    def __init__(self, responses: list[Any] | None = None, delay: float = 0.0) -> None:
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def send(self, messages, *, model: str, request_type: str = "detail") -> str:
        self.calls.append({"messages": messages, "model": model, "request_type": request_type})
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.responses:
            raise AssertionError("FakeModelClient ran out of responses")
        result = self.responses.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeCandleSource(CandleSource):
    def __init__(self, candles: dict[str, list[Candle]] | None = None, error: Exception | None = None) -> None:
        self.candles = candles or {}
        self.error = error
        self.calls: list[str] = []

    async def history(self, symbol, interval, start, end) -> list[Candle]:
        self.calls.append(symbol)
        if self.error is not None:
            raise self.error
        return self.candles.get(symbol, [])


class FakeTickerSource(TickerSource):
    def __init__(self, tickers: list[MarketTicker] | None = None, error: Exception | None = None) -> None:
        self.tickers = tickers or []
        self.error = error

    async def all_tickers(self) -> list[MarketTicker]:
        if self.error is not None:
            raise self.error
        return list(self.tickers)


@pytest.fixture
def sim_clock() -> SimulatedClock:
    return SimulatedClock(start=START)


@pytest.fixture
def wall_clock() -> WallClock:
    return WallClock()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def settings() -> TradeGuardSettings:
    return make_settings()
