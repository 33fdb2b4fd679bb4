"""
Tezos Delegation Indexer - Structured Logging

Structured logging with JSON output for the API process and the ingestion
worker that runs inside it. All log entries include:
- timestamp (ISO 8601)
- level (DEBUG/INFO/WARNING/ERROR/CRITICAL)
- logger name
- message
- Context fields (service, cycle, watermark, etc.)

Usage:
    from indexer.core.logging import get_logger, LogContext

    logger = get_logger(__name__)

    with LogContext(cycle=12):
        logger.info("Fetching delegations")
        # All logs in this block include cycle=12
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator

# =============================================================================
# Context Variables for Correlation
# =============================================================================

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

# Fields copied from ``extra={...}`` onto the JSON payload when present.
EXTRA_KEYS = (
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "cycle",
    "watermark",
    "fetched",
    "inserted",
    "duplicates",
    "skipped",
    "delay_s",
    "consecutive_failures",
    "record_timestamp",
    "delegator",
    "error_type",
    "exception_type",
)


def get_current_context() -> Dict[str, Any]:
    """Get current logging context."""
    return _log_context.get().copy()


def set_context(**kwargs: Any) -> None:
    """Set context values for current async context."""
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def clear_context() -> None:
    """Clear all context values."""
    _log_context.set({})


# =============================================================================
# JSON Formatter
# =============================================================================


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2025-12-07T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "indexer.workers.ingest_worker",
        "message": "Ingestion cycle completed",
        "service": "xtz-indexer",
        "cycle": 3,
        "inserted": 42,
        ...
    }
    """

    def __init__(self, include_traceback: bool = True):
        super().__init__()
        self.include_traceback = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        log_dict: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_current_context()
        if context:
            log_dict.update(context)

        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_dict[key] = value

        if record.exc_info and self.include_traceback:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Plain timestamp | level | name | message format for local runs."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = get_current_context()
        context.pop("service", None)
        if context:
            fields = ", ".join(f"{key}={value}" for key, value in context.items())
            line = f"{line} [{fields}]"
        return line


# =============================================================================
# Split-Stream Handler (stdout for INFO/DEBUG, stderr for WARNING+)
# =============================================================================


class _MaxLevelFilter(logging.Filter):
    """Filter that passes records at or below a maximum level."""

    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _create_split_handlers(
    formatter: logging.Formatter,
    level: int = logging.DEBUG,
) -> list[logging.Handler]:
    """
    Create handlers that route logs to stdout/stderr based on level.

    - DEBUG, INFO -> stdout
    - WARNING, ERROR, CRITICAL -> stderr
    """
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(max(level, logging.WARNING))
    stderr_handler.setFormatter(formatter)

    return [stdout_handler, stderr_handler]


def _resolve_level(level_name: str) -> int:
    return getattr(logging, level_name.upper(), logging.INFO)


# =============================================================================
# Logger Configuration
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    service_name: str = "xtz-indexer",
) -> None:
    """
    Configure root logging for the service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, use JSON format; else use the console format
        service_name: Service name attached to every record
    """
    numeric_level = _resolve_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter
    if json_output:
        formatter = StructuredJsonFormatter()
    else:
        formatter = ConsoleFormatter()

    for handler in _create_split_handlers(formatter, numeric_level):
        root_logger.addHandler(handler)

    # uvicorn installs its own handlers; route them through ours instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    clear_context()
    set_context(service=service_name)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance with structured logging support.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


# =============================================================================
# Context Manager
# =============================================================================


@contextmanager
def LogContext(**kwargs: Any) -> Generator[None, None, None]:
    """
    Context manager for adding fields to all logs within the block.

    Usage:
        with LogContext(cycle=7):
            logger.info("Upserting batch")  # Includes cycle=7
    """
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)
