"""Prompt builders for the screening and detail calls."""

from typing import Any

import orjson

from tradeguard.core.types import Candle, MarketTicker
from tradeguard.intelligence.indicators import IndicatorSnapshot

Messages = list[dict[str, str]]

_SYSTEM = (
    "You are a cautious crypto trading analyst. Reply with a single JSON object "
    "and nothing else. Only reference trading pairs that appear in the input."
)


def _dump(data: Any) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()


def screening_prompt(tickers: list[MarketTicker], max_pairs: int = 5) -> Messages:
    """Ask the model to shortlist pairs from a ticker table."""
    market = [
        {
            "pair": t.symbol,
            "price": t.last,
            "change_24h_pct": round(t.change_rate * 100, 2),
            "volume_24h": t.vol_value,
            "high_24h": t.high,
            "low_24h": t.low,
        }
        for t in tickers
    ]
    user = (
        f"Select up to {max_pairs} pairs with the best short-term opportunity.\n"
        "Respond as {\"selected_pairs\": [...], \"reasoning\": \"...\", "
        "\"market_conditions\": \"...\"}.\n\n"
        f"Market data:\n{_dump(market)}"
    )
    return [{"role": "system", "content": _SYSTEM}, {"role": "user", "content": user}]


def price_trend(candles: list[Candle]) -> float:
    """Percent change from first to last close."""
    if len(candles) < 2 or candles[0].close == 0:
        return 0.0
    return (candles[-1].close - candles[0].close) / candles[0].close * 100


def detail_prompt(
    asset_pair: str,
    current_price: float,
    candles: list[Candle],
    indicators: IndicatorSnapshot | None,
    portfolio_value: float | None = None,
    available_usdt: float | None = None,
) -> Messages:
    """Ask for one trading proposal on ``asset_pair``."""
    recent = candles[-20:]
    market = {
        "asset_pair": asset_pair,
        "current_price": current_price,
        "price_trend_1h_pct": round(price_trend(candles[-12:]), 3),
        "price_trend_4h_pct": round(price_trend(candles[-48:]), 3),
        "volume_average": sum(c.volume for c in recent) / len(recent) if recent else 0.0,
        "recent_candles": [c.model_dump(mode="json", exclude={"timestamp"}) for c in recent],
    }
    if indicators is not None:
        market["indicators"] = {
            "rsi_14": indicators.rsi,
            "macd": indicators.macd,
            "macd_signal": indicators.macd_signal,
            "sma_20": indicators.sma20,
            "sma_50": indicators.sma50,
            "volume_ratio": indicators.volume_ratio,
        }
    if portfolio_value is not None:
        market["portfolio"] = {"total_value_usdt": portfolio_value, "available_usdt": available_usdt}

    user = (
        f"Analyse {asset_pair} and propose one trade.\n"
        "Respond with the fields asset_pair, signal_type (BUY|SELL|HOLD|NO_TRADE), "
        "entry_price_suggestion, take_profit_price, stop_loss_price, "
        "confidence_score (0-1), reasoning, suggested_position_size_percent (0-1).\n\n"
        f"Market data:\n{_dump(market)}"
    )
    return [{"role": "system", "content": _SYSTEM}, {"role": "user", "content": user}]
