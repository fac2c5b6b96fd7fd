"""Detailed per-symbol signal generation.

``generate_detailed_signal`` never raises for model or market-data trouble:
it returns a validated model signal, a validator fallback, a technical-rule
fallback, or ``None`` when the symbol is skipped. Only ``ConfigurationError``
escapes.
"""

import asyncio
from datetime import timedelta

from tradeguard.brain.model_client import ModelClient
from tradeguard.brain.models import GeneratedSignal, SignalSource
from tradeguard.brain.prompts import detail_prompt
from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.core.clock import ClockProtocol, get_clock
from tradeguard.core.errors import (
    ConfigurationError,
    InsufficientHistoryError,
    ModelTimeoutError,
    classify_error,
)
from tradeguard.core.types import Candle, ErrorKind, PortfolioSnapshot
from tradeguard.exchange.interfaces import CandleSource
from tradeguard.intelligence.candidate_errors import CandidateErrorManager
from tradeguard.intelligence.indicators import IndicatorSnapshot, compute_indicators
from tradeguard.intelligence.response_validator import ResponseValidator
from tradeguard.intelligence.technical_fallback import TechnicalRuleFallback
from tradeguard.logging import get_logger, set_trading_context
from tradeguard.utils.retry import backoff_delay

logger = get_logger(__name__)

CANDLE_INTERVAL = "5min"
CANDLE_LOOKBACK = timedelta(hours=24)


class SignalAnalysisService:
    """Model-backed detailed signal for one pair, with layered fallbacks."""

    def __init__(
        self,
        candles: CandleSource,
        model: ModelClient,
        errors: CandidateErrorManager,
        validator: ResponseValidator,
        fallback: TechnicalRuleFallback | None = None,
        config: TradeGuardSettings | None = None,
        clock: ClockProtocol | None = None,
    ) -> None:
        self._candles = candles
        self._model = model
        self._errors = errors
        self._validator = validator
        self._fallback = fallback or TechnicalRuleFallback()
        self._config = config or default_settings
        self._clock = clock or get_clock()

    async def load_market_data(self, asset_pair: str) -> tuple[list[Candle], float]:
        end = self._clock.now()
        candles = await self._candles.history(asset_pair, CANDLE_INTERVAL, end - CANDLE_LOOKBACK, end)
        if not candles:
            raise ValueError(f"No historical data available for {asset_pair}")
        return candles, candles[-1].close

    async def generate_detailed_signal(
        self,
        asset_pair: str,
        portfolio: PortfolioSnapshot | None = None,
    ) -> GeneratedSignal | None:
        """Produce a signal for ``asset_pair`` or None if it is skipped.

        Raises:
            ConfigurationError: Model credentials are missing.
        """
        set_trading_context(symbol=asset_pair)

        if self._errors.is_blacklisted(asset_pair):
            logger.info(
                "%s is blacklisted for another %.0fs, skipping",
                asset_pair,
                self._errors.blacklist_remaining(asset_pair),
            )
            return None
        if not self._errors.can_retry(asset_pair):
            logger.info("%s is cooling down after errors, skipping", asset_pair)
            return None

        try:
            candles, price = await self.load_market_data(asset_pair)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Market data for %s unavailable: %s", asset_pair, e)
            self._errors.record_error(asset_pair, ErrorKind.SERVER_ERROR)
            return None

        indicators: IndicatorSnapshot | None
        try:
            indicators = compute_indicators(candles)
        except (InsufficientHistoryError, ValueError) as e:
            logger.info("Indicators for %s not available: %s", asset_pair, e)
            indicators = None

        messages = detail_prompt(
            asset_pair,
            price,
            candles,
            indicators,
            portfolio_value=portfolio.total_value if portfolio else None,
            available_usdt=portfolio.cash_usdt if portfolio else None,
        )
        attempts = self._config.model_max_retries

        for attempt in range(1, attempts + 1):
            model_id = self._config.model_id if attempt == 1 else self._config.fallback_model_id
            set_trading_context(request_id=f"detail_{asset_pair}_{attempt}")
            if attempt > 1:
                logger.info("Analysis retry %d for %s using %s", attempt, asset_pair, model_id)
            try:
                raw = await asyncio.wait_for(
                    self._model.send(messages, model=model_id, request_type="detail"),
                    timeout=self._config.detail_timeout_seconds,
                )
            except ConfigurationError:
                raise
            except asyncio.TimeoutError:
                await self._on_failure(
                    asset_pair,
                    ModelTimeoutError(self._config.detail_timeout_seconds, "detail", asset_pair),
                    attempt,
                    attempts,
                )
                continue
            except Exception as e:
                await self._on_failure(asset_pair, e, attempt, attempts)
                continue

            outcome = self._validator.validate_detailed_signal(raw, asset_pair, reference_price=price)
            if outcome.is_valid:
                self._errors.record_success(asset_pair)
                return GeneratedSignal.from_detail(
                    outcome.data, SignalSource.MODEL, price=price, generated_at=self._clock.now()
                )

            self._errors.record_error(asset_pair, outcome.error_kind)
            self._errors.record_fallback_used()
            logger.warning("Using validator fallback for %s: %s", asset_pair, outcome.error)
            return GeneratedSignal.from_detail(
                outcome.data, SignalSource.VALIDATOR_FALLBACK, price=price, generated_at=self._clock.now()
            )

        logger.warning("Model attempts exhausted for %s, using technical rules", asset_pair)
        self._errors.record_fallback_used()
        signal = self._fallback.generate_signal(asset_pair, candles, price)
        return GeneratedSignal.from_detail(
            signal, SignalSource.TECHNICAL_FALLBACK, price=price, generated_at=self._clock.now()
        )

    async def _on_failure(self, asset_pair: str, error: Exception, attempt: int, attempts: int) -> None:
        kind = classify_error(error)
        blacklisted = self._errors.record_error(asset_pair, kind)
        logger.error(
            "Analysis attempt %d/%d for %s failed (%s): %s",
            attempt,
            attempts,
            asset_pair,
            kind.value,
            error,
        )
        if blacklisted:
            logger.warning("%s blacklisted during analysis", asset_pair)
        if attempt < attempts:
            await asyncio.sleep(
                backoff_delay(
                    attempt - 1,
                    self._config.model_retry_base_delay_seconds,
                    self._config.model_retry_max_delay_seconds,
                )
            )
