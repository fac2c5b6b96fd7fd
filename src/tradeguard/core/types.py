"""Core data model shared by the readiness machine, the error ledger and the validators."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Portfolio
# ---------------------------------------------------------------------------

class PortfolioPosition(BaseModel):
    """One currency balance held on the exchange."""

    model_config = ConfigDict(frozen=True)

    currency: str
    balance: float
    available: float
    usd_value: float = 0.0


class PortfolioSnapshot(BaseModel):
    """Immutable capture of account state.

    A new fetch produces a new snapshot that replaces the old one; staleness is
    derived from ``fetched_at`` and never stored.
    """

    model_config = ConfigDict(frozen=True)

    positions: tuple[PortfolioPosition, ...] = ()
    total_value: float = 0.0
    cash_usdt: float = 0.0
    fetched_at: datetime

    def age_seconds(self, now: datetime) -> float:
        """Seconds elapsed since capture (never negative)."""
        return max(0.0, (now - self.fetched_at).total_seconds())

    def is_fresh(self, now: datetime, ttl_seconds: float) -> bool:
        return self.age_seconds(now) < ttl_seconds


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

class ReadinessState(str, Enum):
    """Trust level of the canonical portfolio snapshot."""

    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    SIMULATION_RUNNING = "simulation_running"
    UNSTABLE = "unstable"

    @property
    def is_trusted(self) -> bool:
        return self in (ReadinessState.READY, ReadinessState.SIMULATION_RUNNING)


class ReadinessEventType(str, Enum):
    """Events accepted by the readiness coordinator's dispatch."""

    INIT = "init"
    FETCH_SUCCESS = "fetch_success"
    FETCH_FAIL = "fetch_fail"
    API_DOWN = "api_down"
    AGE_EXCEEDED = "age_exceeded"
    API_UP = "api_up"
    START_SIMULATION = "start_simulation"
    STOP_SIMULATION = "stop_simulation"


@dataclass(frozen=True)
class ReadinessEvent:
    """Event dispatched into the readiness coordinator."""

    event_type: ReadinessEventType
    snapshot: PortfolioSnapshot | None = None
    reason: str | None = None

    @classmethod
    def fetch_success(cls, snapshot: PortfolioSnapshot) -> "ReadinessEvent":
        return cls(ReadinessEventType.FETCH_SUCCESS, snapshot=snapshot)

    @classmethod
    def fetch_fail(cls, reason: str) -> "ReadinessEvent":
        return cls(ReadinessEventType.FETCH_FAIL, reason=reason)

    @classmethod
    def api_down(cls, reason: str) -> "ReadinessEvent":
        return cls(ReadinessEventType.API_DOWN, reason=reason)


class ReadinessStatus(BaseModel):
    """Observable status of the readiness coordinator."""

    model_config = ConfigDict(frozen=True)

    state: ReadinessState = ReadinessState.IDLE
    reason: str | None = None
    snapshot_age: float = 0.0
    last_api_ping: datetime | None = None
    retry_count: int = 0
    portfolio: PortfolioSnapshot | None = None


# ---------------------------------------------------------------------------
# Model error ledger
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    """Classification of a failed model call."""

    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    AUTH_FAILURE = "auth_failure"
    SERVER_ERROR = "server_error"
    HALLUCINATION = "hallucination"
    RATE_LIMIT = "rate_limit"


class CandidateErrorState(BaseModel):
    """Health of model calls for one traded symbol."""

    symbol: str
    consecutive_errors: int = 0
    last_error_type: ErrorKind | None = None
    last_error_timestamp: datetime | None = None
    next_retry_at: datetime | None = None
    blacklisted_until: datetime | None = None
    total_errors: int = 0
    successful_calls: int = 0


class GlobalHealthMetrics(BaseModel):
    """Aggregate model-call health; reset only by explicit operator action."""

    total_calls: int = 0
    successful_calls: int = 0
    total_errors: int = 0
    current_blacklists: int = 0
    fallbacks_used: int = 0
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    last_health_check: datetime | None = None


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------

class Candle(BaseModel):
    """OHLCV bar."""

    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    timestamp: datetime | None = None


class MarketTicker(BaseModel):
    """24h ticker summary used by market screening."""

    symbol: str
    last: float
    change_rate: float = 0.0
    vol_value: float = 0.0
    high: float = 0.0
    low: float = 0.0


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationOutcome(BaseModel):
    """Result of validating one piece of model output.

    Never partially valid: either ``data`` fully satisfies the target schema
    and references only expected symbols, or fallback data is substituted and
    ``used_fallback`` is set.
    """

    is_valid: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    used_fallback: bool = False
    parse_stage: str | None = None
