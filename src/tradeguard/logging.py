"""Structured logging setup with cycle/symbol/request context support.

Two output formats are supported, controlled by the ``LOG_FORMAT`` environment
variable (mapped to ``settings.log_format``):

- ``text`` (default): human-readable console output for local development.
  Format: ``2024-01-01 12:00:00 | INFO     | tradeguard.brain.screening
           [cycle=3f2a1b] [sym=BTC-USDT] | message``

- ``json``: one JSON object per line with the fields ``timestamp``,
  ``level``, ``logger``, ``message``, ``cycle_id``, ``trading_symbol``,
  ``request_id``, ``service`` and (on exceptions) ``exc_type`` /
  ``exc_value`` / ``exc_trace``.

Context propagation:
  All ContextVars are asyncio-native and are copied into tasks spawned from the
  coroutine that set them. The signal-generation cycle binds ``cycle_id`` for
  its whole run and ``trading_symbol`` for each per-symbol analysis; the model
  callers bind ``request_id`` per model request.

  Use ``set_trading_context()`` / ``clear_trading_context()`` rather than
  manipulating the ContextVars directly.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# ---------------------------------------------------------------------------
# Context variables
# ---------------------------------------------------------------------------

cycle_id_var: ContextVar[str | None] = ContextVar("cycle_id", default=None)
symbol_var: ContextVar[str | None] = ContextVar("trading_symbol", default=None)
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

_SERVICE_NAME = "tradeguard"


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

class TradingContextFilter(logging.Filter):
    """Inject cycle/symbol/request context into every log record.

    Fields injected onto every ``LogRecord`` (empty string when unset):
    ``cycle_id``, ``trading_symbol``, ``request_id``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.cycle_id = cycle_id_var.get() or ""
        record.trading_symbol = symbol_var.get() or ""
        record.request_id = request_id_var.get() or ""
        return True


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

class JSONFormatter(logging.Formatter):
    """Emit one JSON object per log line.

    Non-serialisable values are coerced to ``str``. Context fields are empty
    strings when absent so aggregators can filter on ``trading_symbol != ""``.
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=UTC).isoformat()

        payload: dict[str, Any] = {
            "timestamp": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "cycle_id": getattr(record, "cycle_id", ""),
            "trading_symbol": getattr(record, "trading_symbol", ""),
            "request_id": getattr(record, "request_id", ""),
            "service": _SERVICE_NAME,
        }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            payload["exc_type"] = exc_type.__name__ if exc_type else None
            payload["exc_value"] = str(exc_value)
            payload["exc_trace"] = traceback.format_exception(exc_type, exc_value, exc_tb)

        return json.dumps(payload, default=str)


class _TradingTextFormatter(logging.Formatter):
    """Human-readable text formatter that appends context only when present.

    Base format::

        2024-01-01 12:00:00 | INFO     | tradeguard.readiness.coordinator | message

    With context::

        2024-01-01 12:00:00 | INFO     | tradeguard.brain.signal_analysis
          [cycle=3f2a1b] [sym=BTC-USDT] [req=detail_BTC-USDT_1] | message
    """

    _BASE_FMT = "%(asctime)s | %(levelname)-8s | %(name)s"
    _DATE_FMT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self._BASE_FMT, datefmt=self._DATE_FMT)

    def format(self, record: logging.LogRecord) -> str:
        record.asctime = self.formatTime(record, self.datefmt)
        base = self.formatMessage(record)

        tokens: list[str] = []
        cycle = getattr(record, "cycle_id", "")
        sym = getattr(record, "trading_symbol", "")
        req = getattr(record, "request_id", "")
        if cycle:
            tokens.append(f"[cycle={cycle}]")
        if sym:
            tokens.append(f"[sym={sym}]")
        if req:
            tokens.append(f"[req={req}]")

        context_part = (" " + " ".join(tokens)) if tokens else ""
        line = f"{base}{context_part} | {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ---------------------------------------------------------------------------
# Public setup function
# ---------------------------------------------------------------------------

def setup_logging() -> None:
    """Configure application logging based on ``settings.log_format``.

    Call once at process startup. Calling it again only updates the level;
    a second handler is never added.
    """
    from tradeguard.config import settings as _settings

    log_level_str = _settings.log_level.upper()
    log_format = _settings.log_format.lower()
    log_level = getattr(logging, log_level_str, logging.INFO)

    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(log_level)
        return

    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(TradingContextFilter())

    if log_format == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(_TradingTextFormatter())

    root_logger.addHandler(console_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialised (level=%s, format=%s)", log_level_str, log_format
    )


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------

def generate_cycle_id() -> str:
    """Generate a short identifier for one signal-generation cycle."""
    return uuid.uuid4().hex[:8]


def set_trading_context(
    cycle_id: str | None = None,
    symbol: str | None = None,
    request_id: str | None = None,
) -> None:
    """Bind context into the current async context.

    Only the explicitly passed arguments are updated; omitted keyword arguments
    leave the corresponding ContextVar unchanged, so a per-symbol scope can set
    the symbol without clobbering the cycle ID bound by the outer cycle.
    """
    if cycle_id is not None:
        cycle_id_var.set(cycle_id)
    if symbol is not None:
        symbol_var.set(symbol)
    if request_id is not None:
        request_id_var.set(request_id)


def clear_trading_context() -> None:
    """Clear all context vars in the current async context."""
    cycle_id_var.set(None)
    symbol_var.set(None)
    request_id_var.set(None)


def clear_symbol_context() -> None:
    """Clear the per-symbol vars while keeping the cycle ID."""
    symbol_var.set(None)
    request_id_var.set(None)


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

def get_logger(name: str) -> logging.Logger:
    """Return a standard ``logging.Logger`` for the given module name.

    Usage::

        from tradeguard.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Component started")
    """
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    context: dict[str, Any] | None = None,
) -> None:
    """Log an exception with optional structured context and its traceback."""
    context_str = f" | context={context}" if context else ""
    logger.error("Exception: %s%s", exc, context_str, exc_info=exc)
