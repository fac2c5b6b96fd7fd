"""TradeGuard: resilience core for a model-driven crypto trading assistant."""

__all__ = ["ReadinessCoordinator", "TradeGuardSettings", "__version__"]
__version__ = "0.1.0"


def __getattr__(name: str):
    if name == "ReadinessCoordinator":
        from .readiness.coordinator import ReadinessCoordinator

        return ReadinessCoordinator
    if name == "TradeGuardSettings":
        from .config import TradeGuardSettings

        return TradeGuardSettings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
