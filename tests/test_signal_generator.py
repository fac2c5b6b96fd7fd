"""Tests for the end-to-end signal generation cycle."""

import random
from datetime import timedelta

import orjson
import pytest

from tradeguard.brain.screening import MarketScreeningService
from tradeguard.brain.signal_analysis import SignalAnalysisService
from tradeguard.brain.signal_generator import SignalGenerationCycle
from tradeguard.brain.signal_selector import SignalSelector
from tradeguard.core.errors import ConfigurationError
from tradeguard.core.types import MarketTicker
from tradeguard.intelligence.candidate_errors import CandidateErrorManager
from tradeguard.intelligence.response_validator import ResponseValidator
from tradeguard.logging import cycle_id_var, symbol_var
from tradeguard.readiness.coordinator import ReadinessCoordinator

from conftest import (
    START,
    FakeCandleSource,
    FakeModelClient,
    FakePortfolioSource,
    FakeTickerSource,
    make_candles,
    make_settings,
    make_snapshot,
)

CLOSES = [100.0 + (i % 7) for i in range(60)]


def detail(pair: str, signal_type: str, confidence: float) -> str:
    return orjson.dumps(
        {
            "asset_pair": pair,
            "signal_type": signal_type,
            "confidence_score": confidence,
            "reasoning": f"{pair} setup",
        }
    ).decode()


def build(store, clock, responses, ready: bool = True, **overrides):
    config = make_settings(**overrides)
    snapshot = make_snapshot(START - timedelta(seconds=5)) if ready else None
    readiness = ReadinessCoordinator(
        FakePortfolioSource(clock), config=config, clock=clock, initial_snapshot=snapshot
    )
    errors = CandidateErrorManager(store, config=config, clock=clock, rng=random.Random(9))
    validator = ResponseValidator(config.major_pairs)
    model = FakeModelClient(responses)
    tickers = FakeTickerSource(
        [
            MarketTicker(symbol="BTC-USDT", last=103, vol_value=5_000_000),
            MarketTicker(symbol="ETH-USDT", last=103, vol_value=4_000_000),
        ]
    )
    candles = FakeCandleSource(
        {"BTC-USDT": make_candles(CLOSES), "ETH-USDT": make_candles(CLOSES)}
    )
    cycle = SignalGenerationCycle(
        readiness,
        MarketScreeningService(tickers, model, errors, validator, config=config),
        SignalAnalysisService(candles, model, errors, validator, config=config, clock=clock),
        SignalSelector(errors, config),
        config=config,
        clock=clock,
    )
    return cycle, readiness, model


@pytest.mark.asyncio
async def test_full_cycle(store, sim_clock) -> None:
    responses = [
        '{"selected_pairs": ["BTC-USDT", "ETH-USDT"], "reasoning": "liquid"}',
        detail("BTC-USDT", "BUY", 0.8),
        detail("ETH-USDT", "SELL", 0.9),
    ]
    cycle, readiness, model = build(store, sim_clock, responses)
    readiness.initialize()
    assert cycle.should_run()

    result = await cycle.run()

    assert result.skipped_reason is None
    assert result.screened == ["BTC-USDT", "ETH-USDT"]
    assert [s.asset_pair for s in result.generated] == ["BTC-USDT", "ETH-USDT"]
    assert [s.asset_pair for s in result.selected] == ["ETH-USDT", "BTC-USDT"]
    assert cycle.last_result is result
    assert len(model.calls) == 3
    assert cycle_id_var.get() is None
    assert symbol_var.get() is None
    await readiness.shutdown()


@pytest.mark.asyncio
async def test_portfolio_snapshot_reaches_prompt(store, sim_clock) -> None:
    responses = [
        '{"selected_pairs": ["BTC-USDT"]}',
        detail("BTC-USDT", "HOLD", 0.5),
    ]
    cycle, readiness, model = build(store, sim_clock, responses)
    readiness.initialize()

    result = await cycle.run()

    assert result.selected == []
    assert '"total_value_usdt": 1000.0' in model.calls[1]["messages"][1]["content"]
    await readiness.shutdown()


@pytest.mark.asyncio
async def test_skips_when_portfolio_not_ready(store, sim_clock) -> None:
    cycle, readiness, model = build(store, sim_clock, [], ready=False)

    assert not cycle.should_run()
    result = await cycle.run()

    assert result.skipped_reason == "Portfolio not ready (idle)"
    assert model.calls == []


@pytest.mark.asyncio
async def test_missing_credentials_is_fatal(store, sim_clock) -> None:
    cycle, readiness, _ = build(store, sim_clock, [], openrouter_api_key="")
    readiness.initialize()

    with pytest.raises(ConfigurationError):
        await cycle.run()
    assert cycle.last_result is not None
    assert cycle_id_var.get() is None
    await readiness.shutdown()
