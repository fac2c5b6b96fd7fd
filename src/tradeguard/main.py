"""Application wiring and operator CLI."""

import argparse
import asyncio
import sys
from collections.abc import Callable

import orjson

from tradeguard.brain.model_client import ModelClient, OpenRouterModelClient
from tradeguard.brain.screening import MarketScreeningService
from tradeguard.brain.signal_analysis import SignalAnalysisService
from tradeguard.brain.signal_generator import SignalGenerationCycle
from tradeguard.brain.signal_selector import SignalSelector
from tradeguard.config import TradeGuardSettings, settings
from tradeguard.core.clock import ClockProtocol, get_clock
from tradeguard.core.cycle_timer import CycleTimer
from tradeguard.core.types import ReadinessStatus
from tradeguard.exchange.interfaces import CandleSource, PortfolioSource, TickerSource
from tradeguard.intelligence.candidate_errors import CandidateErrorManager
from tradeguard.intelligence.response_validator import ResponseValidator
from tradeguard.intelligence.technical_fallback import TechnicalRuleFallback
from tradeguard.logging import get_logger, setup_logging
from tradeguard.observability.health import HealthCheck
from tradeguard.readiness.coordinator import ReadinessCoordinator
from tradeguard.storage.kv_store import FileKeyValueStore, KeyValueStore

logger = get_logger(__name__)

SIGNAL_TIMER_ID = "signal_generation"


class TradeGuardApp:
    """Builds every component once and passes them to their consumers.

    Args:
        portfolio: Exchange portfolio provider.
        candles: Candle history provider.
        tickers: 24h ticker provider.
        model: Model transport; an OpenRouter client is built when omitted.
        store: Persistence for the error ledger; files under
            ``config.state_dir`` when omitted.
    """

    def __init__(
        self,
        portfolio: PortfolioSource,
        candles: CandleSource,
        tickers: TickerSource,
        model: ModelClient | None = None,
        store: KeyValueStore | None = None,
        config: TradeGuardSettings | None = None,
        clock: ClockProtocol | None = None,
    ) -> None:
        self.config = config or settings
        self.clock = clock or get_clock()
        self.store = store or FileKeyValueStore(self.config.state_dir)
        self.model = model or OpenRouterModelClient(self.config)

        self.readiness = ReadinessCoordinator(portfolio, config=self.config, clock=self.clock)
        self.errors = CandidateErrorManager(self.store, config=self.config, clock=self.clock)
        self.validator = ResponseValidator(self.config.major_pairs)
        self.screening = MarketScreeningService(
            tickers, self.model, self.errors, self.validator, config=self.config
        )
        self.analysis = SignalAnalysisService(
            candles,
            self.model,
            self.errors,
            self.validator,
            fallback=TechnicalRuleFallback(),
            config=self.config,
            clock=self.clock,
        )
        self.selector = SignalSelector(self.errors, config=self.config)
        self.cycle = SignalGenerationCycle(
            self.readiness,
            self.screening,
            self.analysis,
            self.selector,
            config=self.config,
            clock=self.clock,
        )
        self.timer = CycleTimer(config=self.config, clock=self.clock)
        self.health: HealthCheck | None = None
        if self.config.health_check_enabled:
            self.health = HealthCheck(self.readiness, self.errors, config=self.config)

        self._unsubscribe: Callable[[], None] | None = None
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start readiness tracking, the blacklist sweep and the cycle timer."""
        await self.errors.start()
        if self.health is not None:
            await self.health.start()
        self._unsubscribe = self.readiness.subscribe(self._on_readiness)
        self.readiness.initialize()
        logger.info("TradeGuard started (environment=%s)", self.config.environment)

    def _on_readiness(self, status: ReadinessStatus) -> None:
        # The timer stops itself once readiness is lost; restart it on recovery.
        if status.state.is_trusted and self.timer.get_timer_state(SIGNAL_TIMER_ID) is None:
            self.timer.start(
                SIGNAL_TIMER_ID,
                self.cycle.should_run,
                self.cycle.run,
                context="signal generation",
            )

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.timer.stop_all()
        await self.readiness.shutdown()
        await self.errors.stop()
        if self.health is not None:
            await self.health.stop()
        close = getattr(self.model, "close", None)
        if close is not None:
            await close()
        logger.info("TradeGuard stopped")


# ---------------------------------------------------------------------------
# Operator CLI
# ---------------------------------------------------------------------------

def _print_json(payload: object) -> None:
    print(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


def _ledger(state_dir: str | None) -> CandidateErrorManager:
    store = FileKeyValueStore(state_dir or settings.state_dir)
    return CandidateErrorManager(store, config=settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TradeGuard operator commands")
    parser.add_argument(
        "--state-dir", type=str, default=None, help="Directory holding persisted ledger state"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("health", help="Print model health metrics and blacklisted symbols")
    subparsers.add_parser("reset-health", help="Reset global model health metrics")
    clear_parser = subparsers.add_parser("clear-blacklist", help="Lift the blacklist for one symbol")
    clear_parser.add_argument("symbol", type=str, help="Trading pair, e.g. BTC-USDT")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    if args.command == "health":
        ledger = _ledger(args.state_dir)
        metrics = ledger.get_health_metrics()
        _print_json(
            {
                "metrics": metrics.model_dump(mode="json"),
                "success_rate": ledger.get_success_rate(),
                "blacklisted": {
                    symbol: round(ledger.blacklist_remaining(symbol), 1)
                    for symbol in ledger.get_blacklisted_symbols()
                },
            }
        )
        return 0

    if args.command == "reset-health":
        _ledger(args.state_dir).reset_health_metrics()
        print("Model health metrics reset")
        return 0

    if args.command == "clear-blacklist":
        symbol = args.symbol.strip().upper()
        if not _ledger(args.state_dir).clear_blacklist(symbol):
            print(f"No error state recorded for {symbol}", file=sys.stderr)
            return 1
        print(f"Blacklist cleared for {symbol}")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
