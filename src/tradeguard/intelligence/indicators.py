"""Technical indicators computed from candle history."""

from dataclasses import dataclass

import numpy as np

from tradeguard.core.errors import InsufficientHistoryError
from tradeguard.core.types import Candle

RSI_PERIOD = 14
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
SMA_SHORT = 20
SMA_LONG = 50
VOLUME_WINDOW = 5
BOLLINGER_PERIOD = 20
BOLLINGER_STDDEV = 2.0

MIN_CANDLES = SMA_LONG


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Latest value of each indicator. ``None`` means "not available"."""

    rsi: float | None = None
    macd: float | None = None
    macd_signal: float | None = None
    sma20: float | None = None
    sma50: float | None = None
    volume_ratio: float | None = None
    bollinger_upper: float | None = None
    bollinger_lower: float | None = None

    @property
    def macd_histogram(self) -> float | None:
        if self.macd is None or self.macd_signal is None:
            return None
        return self.macd - self.macd_signal


def sma(values: np.ndarray, period: int) -> float:
    """Mean of the last ``period`` values."""
    if period <= 0 or len(values) < period:
        raise InsufficientHistoryError(f"SMA({period}) needs {period} values, got {len(values)}")
    return float(np.mean(values[-period:]))


def ema_series(values: np.ndarray, period: int) -> np.ndarray:
    """EMA series seeded with the SMA of the first ``period`` values.

    The result is aligned to the tail of ``values`` and has
    ``len(values) - period + 1`` elements.
    """
    if period <= 0 or len(values) < period:
        raise InsufficientHistoryError(f"EMA({period}) needs {period} values, got {len(values)}")
    multiplier = 2.0 / (period + 1)
    out = np.empty(len(values) - period + 1)
    out[0] = np.mean(values[:period])
    for i, price in enumerate(values[period:], start=1):
        out[i] = (price - out[i - 1]) * multiplier + out[i - 1]
    return out


def rsi(closes: np.ndarray, period: int = RSI_PERIOD) -> float:
    """RSI over the last ``period`` price changes (simple averages)."""
    if len(closes) < period + 1:
        raise InsufficientHistoryError(f"RSI({period}) needs {period + 1} closes, got {len(closes)}")
    changes = np.diff(closes[-(period + 1):])
    avg_gain = float(np.mean(np.clip(changes, 0, None)))
    avg_loss = float(np.mean(np.clip(-changes, 0, None)))
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(closes: np.ndarray) -> tuple[float, float]:
    """Latest MACD line and its EMA-9 signal line."""
    slow = ema_series(closes, MACD_SLOW)
    fast = ema_series(closes, MACD_FAST)[-len(slow):]
    line = fast - slow
    signal = ema_series(line, MACD_SIGNAL)
    return float(line[-1]), float(signal[-1])


def volume_ratio(volumes: np.ndarray, window: int = VOLUME_WINDOW) -> float:
    """Current volume relative to the mean of the last ``window`` volumes."""
    if len(volumes) < window:
        raise InsufficientHistoryError(f"Volume ratio needs {window} values, got {len(volumes)}")
    average = float(np.mean(volumes[-window:]))
    if average <= 0:
        return 0.0
    return float(volumes[-1]) / average


def bollinger_bands(closes: np.ndarray, period: int = BOLLINGER_PERIOD) -> tuple[float, float]:
    window = closes[-period:]
    mid = float(np.mean(window))
    width = BOLLINGER_STDDEV * float(np.std(window))
    return mid + width, mid - width


def compute_indicators(candles: list[Candle]) -> IndicatorSnapshot:
    """Compute every indicator the technical rules vote on.

    Raises:
        InsufficientHistoryError: With fewer than ``MIN_CANDLES`` candles.
    """
    if len(candles) < MIN_CANDLES:
        raise InsufficientHistoryError(
            f"Need at least {MIN_CANDLES} candles for technical analysis, got {len(candles)}"
        )
    closes = np.array([c.close for c in candles], dtype=float)
    volumes = np.array([c.volume for c in candles], dtype=float)
    if not np.all(np.isfinite(closes)):
        raise ValueError("Candle history contains non-finite close prices")

    macd_line, macd_signal = macd(closes)
    upper, lower = bollinger_bands(closes)
    return IndicatorSnapshot(
        rsi=rsi(closes),
        macd=macd_line,
        macd_signal=macd_signal,
        sma20=sma(closes, SMA_SHORT),
        sma50=sma(closes, SMA_LONG),
        volume_ratio=volume_ratio(volumes),
        bollinger_upper=upper,
        bollinger_lower=lower,
    )
