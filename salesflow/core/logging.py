"""Logging configuration for the automation engine."""

import json
import logging
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "urllib3", "uvicorn.access")


class StructuredFormatter(logging.Formatter):
    """Renders each record as one JSON line, run context included."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.lineno}",
        }
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


class RunContextFilter(logging.Filter):
    """Tags records with the request or run being handled on the current thread."""

    def __init__(self):
        super().__init__()
        self._local = threading.local()

    @property
    def fields(self) -> Dict[str, Any]:
        if not hasattr(self._local, "fields"):
            self._local.fields = {}
        return self._local.fields

    def replace(self, fields: Dict[str, Any]) -> None:
        self._local.fields = fields

    def filter(self, record: logging.LogRecord) -> bool:
        merged = dict(self.fields)
        merged.update(getattr(record, "extra_fields", {}))
        record.extra_fields = merged
        return True


_context_filter = RunContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the service, the CLI and the scripts.

    Args:
        level: Logging level name
        log_file: Optional file path; the file is rotated at ``max_size`` bytes
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Rotation size of the log file
        backup_count: Rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


@contextmanager
def logging_context(**fields) -> Iterator[None]:
    """Tag log lines on this thread with ``fields`` until the block exits.

    The enclosing context is restored on exit, so a flow run started from
    inside another run (a move_stage chain) keeps the outer run's tags.
    """
    previous = _context_filter.fields
    _context_filter.replace({**previous, **fields})
    try:
        yield
    finally:
        _context_filter.replace(previous)


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional structured fields."""
    logger.log(level, message, extra={"extra_fields": context})


class RetryLogger:
    """Logs retry attempts of a storage operation."""

    def __init__(self, operation: str):
        self.logger = get_logger("salesflow.retry")
        self.operation = operation

    def attempt_failed(self, error: Exception, attempt: int, max_attempts: int, final: bool = False):
        if final:
            message = f"{self.operation} failed after {attempt} attempts: {error}"
        else:
            message = f"{self.operation} failed (attempt {attempt}/{max_attempts}), retrying: {error}"
        log_with_context(
            self.logger,
            logging.ERROR if final else logging.WARNING,
            message,
            operation=self.operation,
            error_type=type(error).__name__,
            attempt=attempt,
        )
