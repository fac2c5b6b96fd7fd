"""One signal-generation cycle: screen, analyse each pair, select."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from tradeguard.brain.models import GeneratedSignal
from tradeguard.brain.screening import MarketScreeningService
from tradeguard.brain.signal_analysis import SignalAnalysisService
from tradeguard.brain.signal_selector import SignalSelector
from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.core.clock import ClockProtocol, get_clock
from tradeguard.core.errors import ConfigurationError
from tradeguard.logging import (
    clear_symbol_context,
    clear_trading_context,
    generate_cycle_id,
    get_logger,
    set_trading_context,
)
from tradeguard.readiness.coordinator import ReadinessCoordinator

logger = get_logger(__name__)


@dataclass
class CycleResult:
    cycle_id: str
    started_at: datetime
    skipped_reason: str | None = None
    screened: list[str] = field(default_factory=list)
    generated: list[GeneratedSignal] = field(default_factory=list)
    selected: list[GeneratedSignal] = field(default_factory=list)


class SignalGenerationCycle:
    """Runs the full pipeline against a trusted portfolio snapshot.

    Symbols are analysed strictly one after another with a fixed delay in
    between to stay inside the exchange and model rate limits.
    """

    def __init__(
        self,
        readiness: ReadinessCoordinator,
        screening: MarketScreeningService,
        analysis: SignalAnalysisService,
        selector: SignalSelector,
        config: TradeGuardSettings | None = None,
        clock: ClockProtocol | None = None,
    ) -> None:
        self._readiness = readiness
        self._screening = screening
        self._analysis = analysis
        self._selector = selector
        self._config = config or default_settings
        self._clock = clock or get_clock()
        self.last_result: CycleResult | None = None

    def should_run(self) -> bool:
        """Live run condition for the cycle timer."""
        return self._readiness.is_ready

    async def run(self) -> CycleResult:
        """Execute one cycle.

        Raises:
            ConfigurationError: Model credentials are missing or invalid.
        """
        cycle_id = generate_cycle_id()
        result = CycleResult(cycle_id=cycle_id, started_at=self._clock.now())
        set_trading_context(cycle_id=cycle_id)
        try:
            if not self._config.has_model_credentials:
                raise ConfigurationError("OpenRouter API key is not configured")

            status = self._readiness.get_status()
            if not status.state.is_trusted:
                result.skipped_reason = f"Portfolio not ready ({status.state.value})"
                logger.info("Cycle skipped: %s", result.skipped_reason)
                return result

            result.screened = await self._screening.screen()
            logger.info("Cycle analysing %d pairs", len(result.screened))

            for index, pair in enumerate(result.screened):
                if index > 0 and self._config.request_delay_seconds > 0:
                    await asyncio.sleep(self._config.request_delay_seconds)
                signal = await self._analysis.generate_detailed_signal(pair, status.portfolio)
                clear_symbol_context()
                if signal is not None:
                    result.generated.append(signal)

            result.selected = self._selector.select(result.generated)
            logger.info(
                "Cycle complete: %d generated, %d selected",
                len(result.generated),
                len(result.selected),
            )
            return result
        finally:
            self.last_result = result
            clear_trading_context()
