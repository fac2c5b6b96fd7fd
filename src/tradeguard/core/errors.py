"""Exception taxonomy for the exchange and model boundaries."""

import asyncio

from tradeguard.core.types import ErrorKind


class TradeGuardError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(TradeGuardError):
    """Missing or invalid configuration (e.g. no model API key). Fatal to the call."""


# ---------------------------------------------------------------------------
# Exchange side
# ---------------------------------------------------------------------------

class ExchangeError(TradeGuardError):
    """Failure reported by a PortfolioSource / CandleSource / TickerSource."""


class ExchangeTimeoutError(ExchangeError):
    """Exchange request did not complete in time."""


class ExchangeAuthError(ExchangeError):
    """Exchange rejected the credentials."""


class ExchangeRateLimitError(ExchangeError):
    """Exchange rate limit hit; ``retry_after`` is the advertised wait in seconds."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float = 60.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ExchangeNetworkError(ExchangeError):
    """Exchange unreachable (DNS, connection reset, proxy down)."""


# ---------------------------------------------------------------------------
# Model side
# ---------------------------------------------------------------------------

class ModelError(TradeGuardError):
    """Failure of a language-model request."""

    kind: ErrorKind = ErrorKind.SERVER_ERROR

    def __init__(self, message: str, model: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.model = model
        self.status_code = status_code


class ModelTimeoutError(ModelError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout: float, request_type: str, symbol: str | None = None) -> None:
        target = f" for {symbol}" if symbol else ""
        super().__init__(f"Model {request_type} request timed out after {timeout:.0f}s{target}")
        self.timeout = timeout
        self.request_type = request_type
        self.symbol = symbol


class ModelAuthError(ModelError):
    kind = ErrorKind.AUTH_FAILURE


class ModelRateLimitError(ModelError):
    kind = ErrorKind.RATE_LIMIT


class ModelServerError(ModelError):
    kind = ErrorKind.SERVER_ERROR


# ---------------------------------------------------------------------------
# Validation side
# ---------------------------------------------------------------------------

class ResponseParseError(TradeGuardError):
    """Model output could not be turned into structured data or failed its schema."""

    def __init__(self, message: str, stage: str = "json") -> None:
        super().__init__(message)
        self.stage = stage


class HallucinationError(TradeGuardError):
    """Model output referenced a symbol that was not part of its input."""

    def __init__(self, detected_symbol: str, expected_symbols: list[str]) -> None:
        super().__init__(f"AI hallucination detected: {detected_symbol} not in expected symbols")
        self.detected_symbol = detected_symbol
        self.expected_symbols = expected_symbols


class InsufficientHistoryError(TradeGuardError):
    """Not enough candles to compute an indicator."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception onto the ledger's error kinds."""
    if isinstance(exc, ModelError):
        return exc.kind
    if isinstance(exc, HallucinationError):
        return ErrorKind.HALLUCINATION
    if isinstance(exc, ResponseParseError):
        return ErrorKind.MALFORMED_RESPONSE
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ExchangeTimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ExchangeAuthError):
        return ErrorKind.AUTH_FAILURE
    if isinstance(exc, ExchangeRateLimitError):
        return ErrorKind.RATE_LIMIT
    return ErrorKind.SERVER_ERROR


def describe_fetch_error(exc: BaseException) -> str:
    """Human-readable Unstable reason for a failed portfolio fetch."""
    if isinstance(exc, ExchangeRateLimitError):
        return f"Rate limit exceeded. Retry in {exc.retry_after:.0f}s"
    if isinstance(exc, ExchangeAuthError):
        return "Exchange authentication failed"
    if isinstance(exc, (ExchangeTimeoutError, asyncio.TimeoutError, TimeoutError)):
        return "Exchange request timed out"
    if isinstance(exc, ExchangeNetworkError):
        return f"Exchange unreachable: {exc}" if str(exc) else "Exchange unreachable"
    return str(exc) or exc.__class__.__name__
