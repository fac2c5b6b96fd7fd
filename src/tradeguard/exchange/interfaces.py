"""Interfaces of the exchange-side collaborators.

Concrete implementations (request signing, HTTP transport) live outside this
package. Implementations raise the ``Exchange*Error`` family from
``tradeguard.core.errors``.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from tradeguard.core.types import Candle, MarketTicker, PortfolioSnapshot


class PortfolioSource(ABC):
    """Fetches account state from the exchange."""

    @abstractmethod
    async def fetch(self) -> PortfolioSnapshot:
        """Return a fresh snapshot.

        Raises:
            ExchangeTimeoutError, ExchangeAuthError, ExchangeRateLimitError,
            ExchangeNetworkError
        """
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Cheap connectivity check. True when the exchange API answers."""
        pass


class CandleSource(ABC):
    """OHLCV history provider."""

    @abstractmethod
    async def history(
        self,
        symbol: str,
        interval: str,
        start: datetime,
        end: datetime,
    ) -> list[Candle]:
        """Return candles for ``symbol`` between ``start`` and ``end``, oldest first."""
        pass


class TickerSource(ABC):
    """24h ticker snapshot of every listed pair."""

    @abstractmethod
    async def all_tickers(self) -> list[MarketTicker]:
        pass
