"""Tests for structured logging."""

import json
import logging

from tradeguard.logging import (
    JSONFormatter,
    TradingContextFilter,
    _TradingTextFormatter,
    clear_symbol_context,
    clear_trading_context,
    cycle_id_var,
    generate_cycle_id,
    set_trading_context,
    symbol_var,
)


def _record(msg: str = "hello", exc_info=None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="tradeguard.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    TradingContextFilter().filter(record)
    return record


def test_context_injected_into_json() -> None:
    set_trading_context(cycle_id="abc123", symbol="BTC-USDT", request_id="detail_BTC-USDT_1")
    try:
        payload = json.loads(JSONFormatter().format(_record()))
    finally:
        clear_trading_context()

    assert payload["message"] == "hello"
    assert payload["cycle_id"] == "abc123"
    assert payload["trading_symbol"] == "BTC-USDT"
    assert payload["request_id"] == "detail_BTC-USDT_1"
    assert payload["service"] == "tradeguard"


def test_text_format_omits_empty_context() -> None:
    clear_trading_context()
    line = _TradingTextFormatter().format(_record("plain"))
    assert line.endswith("| plain")
    assert "[cycle=" not in line


def test_text_format_includes_traceback_once() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        import sys

        record = _record("failed", exc_info=sys.exc_info())
    line = _TradingTextFormatter().format(record)
    assert line.count("RuntimeError: boom") == 1


def test_clear_symbol_context_keeps_cycle() -> None:
    set_trading_context(cycle_id="c1", symbol="ETH-USDT")
    clear_symbol_context()
    assert cycle_id_var.get() == "c1"
    assert symbol_var.get() is None
    clear_trading_context()
    assert cycle_id_var.get() is None


def test_generate_cycle_id_is_short_and_unique() -> None:
    ids = {generate_cycle_id() for _ in range(20)}
    assert len(ids) == 20
    assert all(len(i) == 8 for i in ids)
