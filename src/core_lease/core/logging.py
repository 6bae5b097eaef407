"""Logging helpers for core-lease."""

import atexit
import json
import logging
import os
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core_lease.core.constants import LOG_FILE_BACKUP_COUNT, LOG_FILE_MAX_BYTES, VALID_LOG_LEVELS

LOGGER_NAME = "core_lease"


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with the record's lease context fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "process": record.process,
        }
        entry.update(getattr(record, "context", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """Attaches a fixed ``context`` dict (session id and the like) to every record."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**kwargs.get("extra", {}), "context": self.extra}
        return msg, kwargs


def with_log_context(logger: logging.Logger | logging.LoggerAdapter, **context: object) -> ContextLoggerAdapter:
    """Return ``logger`` wrapped so its records carry ``context``; None values are dropped."""
    merged: dict[str, object] = {}
    if isinstance(logger, ContextLoggerAdapter):
        merged.update(logger.extra)
        logger = logger.logger
    merged.update({k: v for k, v in context.items() if v is not None})
    return ContextLoggerAdapter(logger, merged)


def flush_logging_handlers(logger: logging.Logger | logging.LoggerAdapter | None = None) -> None:
    """Flush every handler a record from ``logger`` would reach.

    Called from signal-driven release paths right before the process
    exits, so the release line is not lost.
    """
    current = logger.logger if isinstance(logger, logging.LoggerAdapter) else logger
    if current is None:
        current = logging.root
    while current is not None:
        for handler in current.handlers:
            handler.flush()
        current = current.parent if current.propagate else None


_atexit_registered = False


def setup_logging(
    log_level: str | None = None, log_format: str = "text", log_file: Path | None = None
) -> logging.Logger:
    """Setup logging to stderr and, optionally, a rotating log file.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format - "text" (default) or "json" for structured logging
        log_file: Optional log file path; its directory is created if needed

    Returns:
        Configured package logger

    Priority: 1) Passed parameter, 2) Environment variable LOG_LEVEL, 3) Default INFO
    """
    global _atexit_registered

    if not _atexit_registered:
        atexit.register(logging.shutdown)
        _atexit_registered = True

    if log_level is None:
        log_level = os.environ.get("LOG_LEVEL", "INFO")

    if log_level.upper() not in VALID_LOG_LEVELS:
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)
        log_level = "INFO"

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    for handler in logging.root.handlers[:]:
        handler.close()
        logging.root.removeHandler(handler)

    # stdout carries command results (core lists), so diagnostics go to stderr
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT)
            )
        except OSError as e:
            print(f"Warning: Cannot open log file {log_file}: {e}. Logging to console only.", file=sys.stderr)

    if log_format.lower() == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(numeric_level)
        logging.root.addHandler(handler)

    logging.root.setLevel(numeric_level)

    logger = logging.getLogger(LOGGER_NAME)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    return logger
