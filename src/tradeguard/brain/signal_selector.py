"""Final signal selection with per-category diversity caps."""

from tradeguard.brain.models import GeneratedSignal, asset_category
from tradeguard.config import TradeGuardSettings, settings as default_settings
from tradeguard.intelligence.candidate_errors import CandidateErrorManager
from tradeguard.logging import get_logger

logger = get_logger(__name__)


class SignalSelector:
    """Keeps the strongest actionable signals, spread across asset categories."""

    def __init__(self, errors: CandidateErrorManager, config: TradeGuardSettings | None = None) -> None:
        self._errors = errors
        self._config = config or default_settings

    def select(self, signals: list[GeneratedSignal]) -> list[GeneratedSignal]:
        cfg = self._config
        qualified = [
            s for s in signals
            if s.confidence_score >= cfg.min_confidence_score
            and s.signal_type.is_actionable
            and not self._errors.is_blacklisted(s.asset_pair)
        ]
        qualified.sort(key=lambda s: s.confidence_score, reverse=True)
        logger.info(
            "%d of %d signals qualify (min confidence %.2f)",
            len(qualified),
            len(signals),
            cfg.min_confidence_score,
        )

        if not cfg.prefer_diverse_assets:
            return qualified[: cfg.max_concurrent_trades]

        selected: list[GeneratedSignal] = []
        per_category: dict[str, int] = {}
        for signal in qualified:
            if len(selected) >= cfg.max_concurrent_trades:
                break
            category = asset_category(signal.asset_pair)
            if per_category.get(category, 0) >= cfg.max_same_category_signals:
                continue
            selected.append(signal)
            per_category[category] = per_category.get(category, 0) + 1

        logger.info(
            "Selected %s (categories: %s)",
            [s.asset_pair for s in selected],
            per_category,
        )
        return selected
