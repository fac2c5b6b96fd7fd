"""Tests for configuration."""

import pytest

from tradeguard.config import DEFAULT_MAJOR_PAIRS, TradeGuardSettings, parse_list_env


def test_default_settings(monkeypatch) -> None:
    """Test default settings."""
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    settings = TradeGuardSettings(_env_file=None)
    assert settings.snapshot_ttl_seconds == 300.0
    assert settings.retry_max_attempts == 5
    assert settings.blacklist_threshold == 3
    assert settings.blacklist_duration_seconds == 1800.0
    assert settings.cycle_base_interval_seconds == 30.0
    assert settings.major_pairs == DEFAULT_MAJOR_PAIRS
    assert not settings.has_model_credentials


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("SNAPSHOT_TTL_SECONDS", "120")
    monkeypatch.setenv("MAJOR_PAIRS", "BTC-USDT, ADA-USDT")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or-test")
    settings = TradeGuardSettings(_env_file=None)
    assert settings.snapshot_ttl_seconds == 120.0
    assert settings.major_pairs == ["BTC-USDT", "ADA-USDT"]
    assert settings.has_model_credentials


def test_major_pairs_json_env(monkeypatch) -> None:
    monkeypatch.setenv("MAJOR_PAIRS", '["ETH-USDT"]')
    assert TradeGuardSettings(_env_file=None).major_pairs == ["ETH-USDT"]


def test_parse_list_env() -> None:
    assert parse_list_env("a,b , c") == ["a", "b", "c"]
    assert parse_list_env('["x", "y"]') == ["x", "y"]
    assert parse_list_env("single") == ["single"]
    assert parse_list_env(["already"]) == ["already"]
    assert parse_list_env(None) is None


def test_config_validation() -> None:
    """Test configuration validation."""
    with pytest.raises(ValueError):
        TradeGuardSettings(_env_file=None, snapshot_ttl_seconds=0)

    with pytest.raises(ValueError):
        TradeGuardSettings(_env_file=None, min_confidence_score=1.5)

    with pytest.raises(ValueError):
        TradeGuardSettings(_env_file=None, retry_base_delay_seconds=10, retry_max_delay_seconds=5)

    with pytest.raises(ValueError):
        TradeGuardSettings(_env_file=None, snapshot_ttl_seconds=60, refresh_margin_seconds=60)

    with pytest.raises(ValueError):
        TradeGuardSettings(_env_file=None, log_format="xml")
