"""Tests for final signal selection."""

import pytest

from tradeguard.brain.models import GeneratedSignal, SignalType, asset_category
from tradeguard.brain.signal_selector import SignalSelector
from tradeguard.core.types import ErrorKind
from tradeguard.intelligence.candidate_errors import CandidateErrorManager

from conftest import make_settings


def signal(pair: str, confidence: float, signal_type: SignalType = SignalType.BUY) -> GeneratedSignal:
    return GeneratedSignal(
        asset_pair=pair,
        signal_type=signal_type,
        confidence_score=confidence,
        reasoning="test",
        category=asset_category(pair),
    )


@pytest.fixture
def errors(store, sim_clock) -> CandidateErrorManager:
    return CandidateErrorManager(store, config=make_settings(), clock=sim_clock)


def test_filters_weak_passive_and_blacklisted(errors) -> None:
    for _ in range(3):
        errors.record_error("LINK-USDT", ErrorKind.TIMEOUT)
    selector = SignalSelector(errors, make_settings())

    selected = selector.select(
        [
            signal("BTC-USDT", 0.5),
            signal("ETH-USDT", 0.9, SignalType.HOLD),
            signal("SOL-USDT", 0.7, SignalType.SELL),
            signal("LINK-USDT", 0.95),
            signal("ADA-USDT", 0.6, SignalType.NO_TRADE),
        ]
    )

    assert [s.asset_pair for s in selected] == ["SOL-USDT"]


def test_sorted_by_confidence_and_capped(errors) -> None:
    config = make_settings(prefer_diverse_assets=False, max_concurrent_trades=2)
    selector = SignalSelector(errors, config)

    selected = selector.select(
        [signal("BTC-USDT", 0.7), signal("ETH-USDT", 0.9), signal("SOL-USDT", 0.8)]
    )

    assert [s.asset_pair for s in selected] == ["ETH-USDT", "SOL-USDT"]


def test_category_cap_is_strict(errors) -> None:
    config = make_settings(max_concurrent_trades=3, max_same_category_signals=1)
    selector = SignalSelector(errors, config)

    selected = selector.select(
        [
            signal("BTC-USDT", 0.9),
            signal("ETH-USDT", 0.85),
            signal("SOL-USDT", 0.8),
            signal("ADA-USDT", 0.75),
        ]
    )

    assert [s.asset_pair for s in selected] == ["BTC-USDT", "SOL-USDT"]


def test_unknown_assets_share_other_category(errors) -> None:
    selector = SignalSelector(errors, make_settings(max_same_category_signals=2))

    selected = selector.select(
        [signal("AAA-USDT", 0.9), signal("BBB-USDT", 0.8), signal("CCC-USDT", 0.7)]
    )

    assert [s.asset_pair for s in selected] == ["AAA-USDT", "BBB-USDT"]
    assert asset_category("ccc-usdt") == "other"


def test_empty_input(errors) -> None:
    assert SignalSelector(errors, make_settings()).select([]) == []
