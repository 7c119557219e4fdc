"""Structured logging configuration for the refund monitor.

Provides:
- Correlation IDs so every log line of one poll cycle can be grouped
- Deposit context (tx hash, depositor address) bound while a deposit is processed
- JSON or plain console output plus an optional log file
- API key masking so indexer credentials never reach the logs
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tx_hash_var: ContextVar[Optional[str]] = ContextVar("tx_hash", default=None)
depositor_var: ContextVar[Optional[str]] = ContextVar("depositor", default=None)

PACKAGE_LOGGER = "k33p_refund"

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(correlation_id)s] %(message)s"

_CONTEXT_FIELDS = ("correlation_id", "tx_hash", "depositor")

# Attributes every LogRecord carries; anything else was passed via ``extra=``
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
    *_CONTEXT_FIELDS,
}


class ContextFilter(logging.Filter):
    """Copies the correlation and deposit context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.tx_hash = tx_hash_var.get()
        record.depositor = depositor_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value and value != "-":
                entry[name] = value

        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and key not in entry
        )
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the ``k33p_refund`` logger.

    Calling it again replaces the handlers installed by the previous call.
    The optional log file always receives JSON lines.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    console_formatter = (
        StructuredFormatter() if json_output else logging.Formatter(PLAIN_FORMAT)
    )
    logger.addHandler(_handler(logging.StreamHandler(sys.stdout), console_formatter))
    if log_file:
        logger.addHandler(_handler(logging.FileHandler(log_file), StructuredFormatter()))

    logger.propagate = False
    return logger


def new_correlation_id() -> str:
    """Bind a fresh ``tick_<hex>`` id to the current context and return it."""
    correlation_id = f"tick_{uuid.uuid4().hex[:16]}"
    correlation_id_var.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


@contextmanager
def deposit_context(tx_hash: str, depositor: Optional[str] = None) -> Iterator[None]:
    """Bind deposit identifiers to log records emitted inside the block."""
    tx_token = tx_hash_var.set(tx_hash)
    depositor_token = depositor_var.set(depositor)
    try:
        yield
    finally:
        tx_hash_var.reset(tx_token)
        depositor_var.reset(depositor_token)


def mask_api_key(value: Optional[str], show_chars: int = 4) -> str:
    """Mask a credential, keeping a few characters at each end."""
    if not value or len(value) <= show_chars * 2:
        return "***"
    return f"{value[:show_chars]}...{value[-show_chars:]}"


__all__ = [
    "ContextFilter",
    "StructuredFormatter",
    "setup_logging",
    "new_correlation_id",
    "get_correlation_id",
    "deposit_context",
    "mask_api_key",
    "correlation_id_var",
    "tx_hash_var",
    "depositor_var",
]
