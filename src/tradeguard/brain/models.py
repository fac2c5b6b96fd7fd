"""Signal models shared by the screening, analysis and selection stages."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    NO_TRADE = "NO_TRADE"

    @property
    def is_actionable(self) -> bool:
        return self in (SignalType.BUY, SignalType.SELL)


class ScreeningResponse(BaseModel):
    """Model-selected pairs worth a detailed look."""

    selected_pairs: list[str] = Field(min_length=1, max_length=10)
    reasoning: str | None = None
    market_conditions: str | None = None


class DetailedSignalResponse(BaseModel):
    """One model trading proposal for a single pair.

    ``stop_loss_price`` / ``take_profit_price`` are either absolute prices or
    ratios to the entry price, depending on the prompt; 0 means "not set".
    """

    asset_pair: str
    signal_type: SignalType
    reasoning: str
    confidence_score: float = Field(ge=0.0, le=1.0)
    entry_price_suggestion: str | float = "MARKET"
    take_profit_price: float = Field(default=0.0, ge=0.0)
    stop_loss_price: float = Field(default=0.0, ge=0.0)
    suggested_position_size_percent: float = Field(default=0.0, ge=0.0, le=1.0)


class SignalSource(str, Enum):
    MODEL = "model"
    VALIDATOR_FALLBACK = "validator_fallback"
    TECHNICAL_FALLBACK = "technical_fallback"


class GeneratedSignal(BaseModel):
    """Signal handed to the rest of the application after one cycle."""

    asset_pair: str
    signal_type: SignalType
    confidence_score: float = Field(ge=0.0, le=1.0)
    reasoning: str
    entry_price: float | None = None
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0
    suggested_position_size_percent: float = 0.0
    source: SignalSource = SignalSource.MODEL
    generated_at: datetime | None = None
    category: str = "other"

    @classmethod
    def from_detail(
        cls,
        detail: DetailedSignalResponse,
        source: SignalSource,
        price: float | None = None,
        generated_at: datetime | None = None,
    ) -> "GeneratedSignal":
        entry = detail.entry_price_suggestion
        entry_price = float(entry) if isinstance(entry, (int, float)) else price
        return cls(
            asset_pair=detail.asset_pair,
            signal_type=detail.signal_type,
            confidence_score=detail.confidence_score,
            reasoning=detail.reasoning,
            entry_price=entry_price,
            take_profit_price=detail.take_profit_price,
            stop_loss_price=detail.stop_loss_price,
            suggested_position_size_percent=detail.suggested_position_size_percent,
            source=source,
            generated_at=generated_at,
            category=asset_category(detail.asset_pair),
        )


# Base asset -> category used to cap same-category signals per cycle.
ASSET_CATEGORIES: dict[str, str] = {
    "BTC": "major",
    "ETH": "major",
    "BNB": "exchange",
    "SOL": "layer1",
    "ADA": "layer1",
    "DOT": "layer1",
    "AVAX": "layer1",
    "MATIC": "layer2",
    "LINK": "oracle",
    "UNI": "defi",
}


def asset_category(symbol: str) -> str:
    base = symbol.upper().split("-")[0]
    return ASSET_CATEGORIES.get(base, "other")
