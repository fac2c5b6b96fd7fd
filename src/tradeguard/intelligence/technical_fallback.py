"""Deterministic rule-based signal used when the model is unavailable.

Each indicator casts a weighted vote for BUY, SELL or HOLD. The heaviest
direction wins if it also beats HOLD and the activation threshold; otherwise
the result is HOLD. Confidence is capped at 0.7, below what the model path
can report.
"""

from dataclasses import dataclass, field

import numpy as np

from tradeguard.brain.models import DetailedSignalResponse, SignalType
from tradeguard.core.errors import InsufficientHistoryError
from tradeguard.core.types import Candle
from tradeguard.intelligence.indicators import IndicatorSnapshot, compute_indicators, rsi
from tradeguard.logging import get_logger

logger = get_logger(__name__)

ACTIVATION_THRESHOLD = 1.0
BASE_CONFIDENCE = 0.4
MAX_CONFIDENCE = 0.7
SAFE_HOLD_CONFIDENCE = 0.1
STOP_LOSS_PCT = 0.05
TAKE_PROFIT_PCT = 0.10
POSITION_SIZE = 0.05
HIGH_VOLUME_RATIO = 1.5
HIGH_VOLUME_BOOST = 1.2
EXIT_RSI_OVERBOUGHT = 80
EXIT_RSI_OVERSOLD = 20


@dataclass
class Vote:
    direction: SignalType
    weight: float
    reason: str


@dataclass
class VoteTally:
    votes: list[Vote] = field(default_factory=list)

    def add(self, direction: SignalType, weight: float, reason: str) -> None:
        self.votes.append(Vote(direction, weight, reason))

    def weight(self, direction: SignalType) -> float:
        return sum(v.weight for v in self.votes if v.direction is direction)

    def reasons(self) -> list[str]:
        return [v.reason for v in self.votes]


class TechnicalRuleFallback:
    """Rule-based BUY/SELL/HOLD from RSI, MACD, moving averages and volume."""

    def generate_signal(
        self,
        asset_pair: str,
        candles: list[Candle],
        current_price: float,
    ) -> DetailedSignalResponse:
        """Compute indicators and vote. Never raises: failures yield a safe HOLD."""
        logger.info(
            "Generating technical fallback signal for %s from %d candles",
            asset_pair,
            len(candles),
        )
        try:
            indicators = compute_indicators(candles)
            signal = self.evaluate(asset_pair, indicators, current_price)
        except Exception as e:
            logger.error("Technical fallback failed for %s: %s", asset_pair, e)
            return self.safe_hold(asset_pair)

        logger.info(
            "Technical fallback for %s: %s @ %.2f (%s)",
            asset_pair,
            signal.signal_type.value,
            signal.confidence_score,
            signal.reasoning,
        )
        return signal

    def generate_exit_signal(
        self,
        asset_pair: str,
        side: SignalType,
        entry_price: float,
        candles: list[Candle],
        current_price: float,
    ) -> SignalType:
        """Decide whether an open position should be closed.

        Hard P&L exits (-5% stop, +10% target, mirrored for shorts) apply
        first, then extreme RSI. Returns ``SignalType.SELL`` to close and
        ``SignalType.HOLD`` to keep the position, including on any failure.
        """
        try:
            pnl = (current_price - entry_price) / entry_price
            if side is SignalType.BUY and (pnl <= -STOP_LOSS_PCT or pnl >= TAKE_PROFIT_PCT):
                logger.info("Hard exit for long %s at %.2f%% P&L", asset_pair, pnl * 100)
                return SignalType.SELL
            if side is SignalType.SELL and (pnl >= STOP_LOSS_PCT or pnl <= -TAKE_PROFIT_PCT):
                logger.info("Hard exit for short %s at %.2f%% P&L", asset_pair, pnl * 100)
                return SignalType.SELL

            try:
                current_rsi = rsi(np.array([c.close for c in candles], dtype=float))
            except InsufficientHistoryError:
                return SignalType.HOLD

            if side is SignalType.BUY and current_rsi > EXIT_RSI_OVERBOUGHT:
                logger.info("RSI exit for long %s (RSI %.1f)", asset_pair, current_rsi)
                return SignalType.SELL
            if side is SignalType.SELL and current_rsi < EXIT_RSI_OVERSOLD:
                logger.info("RSI exit for short %s (RSI %.1f)", asset_pair, current_rsi)
                return SignalType.SELL
        except Exception as e:
            logger.error("Technical exit analysis failed for %s: %s", asset_pair, e)
        return SignalType.HOLD

    def evaluate(
        self,
        asset_pair: str,
        indicators: IndicatorSnapshot,
        current_price: float,
    ) -> DetailedSignalResponse:
        tally = VoteTally()

        if indicators.rsi is not None:
            if indicators.rsi < 30:
                tally.add(SignalType.BUY, 0.8, "RSI oversold")
            elif indicators.rsi > 70:
                tally.add(SignalType.SELL, 0.8, "RSI overbought")
            else:
                tally.add(SignalType.HOLD, 0.3, "RSI neutral")

        if indicators.macd is not None and indicators.macd_signal is not None:
            if indicators.macd > indicators.macd_signal and indicators.macd > 0:
                tally.add(SignalType.BUY, 0.6, "MACD bullish")
            elif indicators.macd < indicators.macd_signal and indicators.macd < 0:
                tally.add(SignalType.SELL, 0.6, "MACD bearish")

        if indicators.sma20 is not None and indicators.sma50 is not None:
            if current_price > indicators.sma20 > indicators.sma50:
                tally.add(SignalType.BUY, 0.5, "Above moving averages")
            elif current_price < indicators.sma20 < indicators.sma50:
                tally.add(SignalType.SELL, 0.5, "Below moving averages")

        if indicators.volume_ratio is not None and indicators.volume_ratio > HIGH_VOLUME_RATIO:
            for vote in tally.votes:
                if vote.direction is not SignalType.HOLD:
                    vote.weight *= HIGH_VOLUME_BOOST
                    vote.reason += " + high volume"

        final = SignalType.HOLD
        confidence = BASE_CONFIDENCE
        hold_weight = tally.weight(SignalType.HOLD)
        for direction in (SignalType.BUY, SignalType.SELL):
            weight = tally.weight(direction)
            if weight > hold_weight and weight > ACTIVATION_THRESHOLD:
                if final is SignalType.HOLD or weight > tally.weight(final):
                    final = direction
                    confidence = min(
                        MAX_CONFIDENCE,
                        BASE_CONFIDENCE + (weight - ACTIVATION_THRESHOLD) * 0.2,
                    )

        stop_loss = take_profit = 0.0
        if final is SignalType.BUY:
            stop_loss = current_price * (1 - STOP_LOSS_PCT)
            take_profit = current_price * (1 + TAKE_PROFIT_PCT)
        elif final is SignalType.SELL:
            stop_loss = current_price * (1 + STOP_LOSS_PCT)
            take_profit = current_price * (1 - TAKE_PROFIT_PCT)

        reasons = tally.reasons()
        return DetailedSignalResponse(
            asset_pair=asset_pair,
            signal_type=final,
            entry_price_suggestion="MARKET",
            take_profit_price=take_profit,
            stop_loss_price=stop_loss,
            confidence_score=confidence,
            reasoning="Technical analysis: " + (", ".join(reasons) if reasons else "no indicator signals"),
            suggested_position_size_percent=0.0 if final is SignalType.HOLD else POSITION_SIZE,
        )

    @staticmethod
    def safe_hold(asset_pair: str) -> DetailedSignalResponse:
        return DetailedSignalResponse(
            asset_pair=asset_pair,
            signal_type=SignalType.HOLD,
            entry_price_suggestion="MARKET",
            take_profit_price=0.0,
            stop_loss_price=0.0,
            confidence_score=SAFE_HOLD_CONFIDENCE,
            reasoning="System protection mode - technical analysis failed",
            suggested_position_size_percent=0.0,
        )
