"""Tests for technical indicator calculations."""

import math

import numpy as np
import pytest

from tradeguard.core.errors import InsufficientHistoryError
from tradeguard.intelligence.indicators import (
    MIN_CANDLES,
    bollinger_bands,
    compute_indicators,
    ema_series,
    macd,
    rsi,
    sma,
    volume_ratio,
)

from conftest import make_candles


def test_sma_uses_tail() -> None:
    values = np.arange(1.0, 11.0)
    assert sma(values, 5) == pytest.approx(8.0)
    with pytest.raises(InsufficientHistoryError):
        sma(values, 11)


def test_ema_series_shape_and_constant_input() -> None:
    values = np.full(30, 50.0)
    series = ema_series(values, 10)
    assert len(series) == 21
    assert np.allclose(series, 50.0)


def test_ema_reacts_to_jump() -> None:
    values = np.concatenate([np.full(10, 10.0), [20.0]])
    series = ema_series(values, 10)
    assert series[0] == pytest.approx(10.0)
    assert series[-1] == pytest.approx(10.0 + 10.0 * 2 / 11)


class TestRSI:
    def test_only_gains_is_100(self):
        assert rsi(np.arange(1.0, 20.0)) == 100.0

    def test_only_losses_is_0(self):
        assert rsi(np.arange(20.0, 1.0, -1.0)) == pytest.approx(0.0)

    def test_balanced_moves_is_50(self):
        closes = np.array([100.0 + (i % 2) for i in range(15)])
        assert rsi(closes) == pytest.approx(50.0)

    def test_needs_period_plus_one(self):
        with pytest.raises(InsufficientHistoryError):
            rsi(np.arange(14.0))


class TestMACD:
    def test_flat_series_is_zero(self):
        line, signal = macd(np.full(60, 100.0))
        assert line == pytest.approx(0.0)
        assert signal == pytest.approx(0.0)

    def test_direction_follows_trend(self):
        rising, _ = macd(np.linspace(100.0, 200.0, 60))
        falling, _ = macd(np.linspace(200.0, 100.0, 60))
        assert rising > 0
        assert falling < 0

    def test_needs_enough_history_for_signal_line(self):
        with pytest.raises(InsufficientHistoryError):
            macd(np.linspace(100.0, 200.0, 30))


def test_volume_ratio() -> None:
    assert volume_ratio(np.array([5.0, 1.0, 1.0, 1.0, 1.0, 6.0])) == pytest.approx(3.0)
    assert volume_ratio(np.zeros(5)) == 0.0


def test_bollinger_bands_constant_series() -> None:
    upper, lower = bollinger_bands(np.full(25, 10.0))
    assert upper == pytest.approx(10.0)
    assert lower == pytest.approx(10.0)


class TestComputeIndicators:
    def test_requires_minimum_history(self):
        with pytest.raises(InsufficientHistoryError):
            compute_indicators(make_candles([100.0] * (MIN_CANDLES - 1)))

    def test_full_snapshot(self):
        closes = [100.0 + i for i in range(60)]
        snapshot = compute_indicators(make_candles(closes))

        assert snapshot.rsi == 100.0
        assert snapshot.sma20 == pytest.approx(np.mean(closes[-20:]))
        assert snapshot.sma50 == pytest.approx(np.mean(closes[-50:]))
        assert snapshot.volume_ratio == pytest.approx(1.0)
        assert snapshot.macd > 0
        assert snapshot.macd_histogram == pytest.approx(snapshot.macd - snapshot.macd_signal)
        assert snapshot.bollinger_upper > snapshot.bollinger_lower

    def test_rejects_non_finite_closes(self):
        closes = [100.0] * 60
        closes[30] = math.nan
        with pytest.raises(ValueError):
            compute_indicators(make_candles(closes))
