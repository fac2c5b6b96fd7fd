"""Configuration management using Pydantic v2."""

import json
import os
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MAJOR_PAIRS = ["BTC-USDT", "ETH-USDT", "SOL-USDT"]


def parse_list_env(value: Any) -> Any:
    """Parse list values from env (JSON array, comma-separated, or single item)."""
    if value is None:
        return value
    if isinstance(value, str):
        if value.strip() == "":
            return value
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            pass
        items = [item.strip() for item in value.split(",") if item.strip()]
        return items if items else value
    return value


def _find_env_file() -> str:
    """Find .env file: check project root first, then CWD."""
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    env_path = os.path.join(project_root, ".env")
    if os.path.exists(env_path):
        return env_path
    return ".env"


class TradeGuardSettings(BaseSettings):
    """Main configuration for the TradeGuard resilience core."""

    model_config = SettingsConfigDict(
        env_file=_find_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
        env_ignore_empty=True,
    )

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development",
        description="Application environment (development or production)",
    )

    # Portfolio readiness
    snapshot_ttl_seconds: float = Field(
        default=300.0, gt=0, description="Maximum portfolio snapshot age before it is untrusted"
    )
    portfolio_refresh_interval_seconds: float = Field(
        default=120.0, gt=0, description="Proactive portfolio refetch cadence while Ready/SimulationRunning"
    )
    health_check_interval_seconds: float = Field(
        default=30.0, gt=0, description="Exchange ping cadence while a simulation is running"
    )
    watchdog_interval_seconds: float = Field(
        default=15.0, gt=0, description="Watchdog cadence while a simulation is running"
    )
    refresh_margin_seconds: float = Field(
        default=60.0, ge=0, description="Safety margin before TTL at which the watchdog forces a refresh"
    )

    # Readiness retry policy
    retry_base_delay_seconds: float = Field(default=2.0, gt=0, description="First retry delay")
    retry_max_delay_seconds: float = Field(default=32.0, gt=0, description="Retry delay cap")
    retry_jitter_seconds: float = Field(default=0.5, ge=0, description="Max random jitter added to retries")
    retry_max_attempts: int = Field(default=5, ge=0, description="Retries before the coordinator gives up")

    # Candidate error ledger
    candidate_base_delay_seconds: float = Field(default=2.0, gt=0, description="Per-symbol backoff base")
    candidate_max_delay_seconds: float = Field(default=30.0, gt=0, description="Per-symbol backoff cap")
    candidate_jitter_seconds: float = Field(default=1.0, ge=0, description="Per-symbol backoff jitter")
    blacklist_threshold: int = Field(
        default=3, ge=1, description="Consecutive errors that blacklist a symbol"
    )
    blacklist_duration_seconds: float = Field(
        default=1800.0, gt=0, description="Blacklist duration (default 30 minutes)"
    )
    blacklist_sweep_interval_seconds: float = Field(
        default=60.0, gt=0, description="Cadence of the expired-blacklist sweep"
    )

    # Signal cycle timer
    cycle_base_interval_seconds: float = Field(default=30.0, gt=0, description="Base cycle interval")
    cycle_slow_threshold_seconds: float = Field(
        default=10.0, gt=0, description="Average cycle duration above which the interval stretches"
    )
    cycle_max_interval_factor: float = Field(
        default=3.0, ge=1.0, description="Maximum interval stretch factor"
    )
    cycle_duration_window: int = Field(
        default=10, ge=1, description="Number of recent cycle durations used for the average"
    )

    # Language model
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    model_base_url: str = Field(
        default="https://openrouter.ai/api/v1", description="OpenAI-compatible endpoint"
    )
    model_id: str = Field(default="deepseek/deepseek-chat", description="Primary model")
    fallback_model_id: str = Field(
        default="meta-llama/llama-3.1-8b-instruct", description="Model used on retry attempts"
    )
    screening_timeout_seconds: float = Field(default=30.0, gt=0, description="Screening call timeout")
    detail_timeout_seconds: float = Field(default=30.0, gt=0, description="Detail call timeout")
    model_max_retries: int = Field(default=3, ge=1, description="Model attempts per call")
    model_retry_base_delay_seconds: float = Field(
        default=2.0, ge=0, description="Delay after the first failed model attempt"
    )
    model_retry_max_delay_seconds: float = Field(
        default=10.0, ge=0, description="Cap on the delay between model attempts"
    )
    request_delay_seconds: float = Field(
        default=1.0, ge=0, description="Delay between per-symbol analyses (rate-limit spacing)"
    )

    # Screening and selection
    screening_top_x: int = Field(default=10, ge=1, le=50, description="Pairs sent to screening")
    screening_min_volume: float = Field(default=100_000.0, ge=0, description="Minimum 24h quote volume")
    max_concurrent_trades: int = Field(default=3, ge=1, description="Signals kept per cycle")
    min_confidence_score: float = Field(default=0.6, ge=0, le=1, description="Selection threshold")
    prefer_diverse_assets: bool = Field(default=True, description="Cap signals per asset category")
    max_same_category_signals: int = Field(default=2, ge=1, description="Per-category cap")
    major_pairs: list[str] = Field(
        default=list(DEFAULT_MAJOR_PAIRS),
        description="Pairs preferred by the screening fallback",
    )

    @field_validator("major_pairs", mode="before")
    @classmethod
    def parse_major_pairs(cls, v: Any) -> Any:
        """Parse major_pairs from env, handling empty strings and JSON."""
        if v is None or v == "":
            return list(DEFAULT_MAJOR_PAIRS)
        return parse_list_env(v)

    # Storage and diagnostics
    state_dir: str = Field(default="data/state", description="Directory for persisted ledger state")
    health_check_enabled: bool = Field(default=False, description="Serve the diagnostics endpoint")
    health_check_port: int = Field(default=8081, ge=1, le=65535, description="Diagnostics port")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["text", "json"] = Field(default="text", description="Log output format")

    @model_validator(mode="after")
    def _check_ranges(self) -> "TradeGuardSettings":
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        if self.candidate_max_delay_seconds < self.candidate_base_delay_seconds:
            raise ValueError("candidate_max_delay_seconds must be >= candidate_base_delay_seconds")
        if self.refresh_margin_seconds >= self.snapshot_ttl_seconds:
            raise ValueError("refresh_margin_seconds must be smaller than snapshot_ttl_seconds")
        return self

    @property
    def has_model_credentials(self) -> bool:
        """True when an API key for the model endpoint is configured."""
        return bool(self.openrouter_api_key.strip())


# Global settings instance
settings = TradeGuardSettings()
