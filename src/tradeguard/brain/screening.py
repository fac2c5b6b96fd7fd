"""Market screening: shortlist pairs for detailed analysis."""

import asyncio

from tradeguard.brain.model_client import ModelClient
from tradeguard.brain.prompts import screening_prompt
from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.core.errors import ConfigurationError, ModelTimeoutError, classify_error
from tradeguard.core.types import MarketTicker
from tradeguard.exchange.interfaces import TickerSource
from tradeguard.intelligence.candidate_errors import CandidateErrorManager
from tradeguard.intelligence.response_validator import ResponseValidator
from tradeguard.logging import get_logger, set_trading_context
from tradeguard.utils.retry import backoff_delay

logger = get_logger(__name__)

# Ledger key for screening calls, which are not tied to one symbol.
SCREENING_LEDGER_KEY = "screening"
VOLUME_FALLBACK_SIZE = 5


class MarketScreeningService:
    """Picks candidate pairs via the model, falling back to volume ranking."""

    def __init__(
        self,
        tickers: TickerSource,
        model: ModelClient,
        errors: CandidateErrorManager,
        validator: ResponseValidator,
        config: TradeGuardSettings | None = None,
    ) -> None:
        self._tickers = tickers
        self._model = model
        self._errors = errors
        self._validator = validator
        self._config = config or default_settings

    def rank_by_volume(self, tickers: list[MarketTicker]) -> list[MarketTicker]:
        """USDT pairs above the volume floor, highest volume first, top N."""
        usdt = [
            t for t in tickers
            if t.symbol.upper().endswith("-USDT") and t.vol_value > self._config.screening_min_volume
        ]
        usdt.sort(key=lambda t: t.vol_value, reverse=True)
        return usdt[: self._config.screening_top_x]

    async def screen(self) -> list[str]:
        """Return the pairs worth a detailed signal this cycle.

        Raises:
            ConfigurationError: Model credentials are missing.
        """
        try:
            tickers = await self._tickers.all_tickers()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Market screening failed to load tickers: %s", e)
            return list(self._config.major_pairs)

        candidates = self.rank_by_volume(tickers)
        if not candidates:
            logger.warning("No USDT pairs above volume floor; using major pairs")
            return list(self._config.major_pairs)

        expected = [t.symbol for t in candidates]
        messages = screening_prompt(candidates)
        attempts = self._config.model_max_retries

        for attempt in range(1, attempts + 1):
            model_id = self._config.model_id if attempt == 1 else self._config.fallback_model_id
            set_trading_context(request_id=f"screening_{attempt}")
            if attempt > 1:
                logger.info("Screening retry %d using fallback model %s", attempt, model_id)
            try:
                raw = await asyncio.wait_for(
                    self._model.send(messages, model=model_id, request_type="screening"),
                    timeout=self._config.screening_timeout_seconds,
                )
            except ConfigurationError:
                raise
            except asyncio.TimeoutError:
                await self._on_failure(
                    ModelTimeoutError(self._config.screening_timeout_seconds, "screening"),
                    attempt,
                    attempts,
                )
                continue
            except Exception as e:
                await self._on_failure(e, attempt, attempts)
                continue

            outcome = self._validator.validate_screening(raw, expected)
            if outcome.is_valid:
                self._errors.record_success(SCREENING_LEDGER_KEY)
                logger.info("Screening selected %s", outcome.data.selected_pairs)
                return list(outcome.data.selected_pairs)

            self._errors.record_error(SCREENING_LEDGER_KEY, outcome.error_kind, blacklist=False)
            self._errors.record_fallback_used()
            logger.warning("Screening fell back to %s", outcome.data.selected_pairs)
            return list(outcome.data.selected_pairs)

        self._errors.record_fallback_used()
        selected = expected[:VOLUME_FALLBACK_SIZE]
        logger.warning("All screening attempts failed; volume-ranked fallback %s", selected)
        return selected

    async def _on_failure(self, error: Exception, attempt: int, attempts: int) -> None:
        kind = classify_error(error)
        self._errors.record_error(SCREENING_LEDGER_KEY, kind, blacklist=False)
        logger.error("Screening attempt %d failed (%s): %s", attempt, kind.value, error)
        if attempt < attempts:
            await asyncio.sleep(
                backoff_delay(
                    attempt - 1,
                    self._config.model_retry_base_delay_seconds,
                    self._config.model_retry_max_delay_seconds,
                )
            )
