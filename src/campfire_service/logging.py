"""
Structured JSON logging for the campfire service.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import UTC, datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Any

SERVICE_LOGGER_NAME = "campfire"

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs as JSON.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        timestamp = datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")

        log_data: dict[str, Any] = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra = {key: value for key, value in record.__dict__.items() if key not in _STANDARD_ATTRS}
        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


class DailyRotatingFileHandler(TimedRotatingFileHandler):
    """Rotating file handler that names files as YYYY-MM-DD.log."""

    def __init__(self, directory: str) -> None:
        self._log_directory = directory
        filename = self._make_filename()
        super().__init__(filename, when="midnight", utc=True)

    def _make_filename(self) -> str:
        today = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        return os.path.join(self._log_directory, f"{today}.log")

    def doRollover(self) -> None:  # noqa: N802
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self.baseFilename = os.path.abspath(self._make_filename())
        if not self.delay:
            self.stream = self._open()
        self.rolloverAt = self.computeRollover(int(time.time()))


def setup_logging(level: str, service_name: str, log_directory: str) -> logging.Logger:
    """
    Configure structured JSON logging for the service.

    Logs to both stdout and a daily rotating file in log_directory.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        service_name: Name of the service, recorded on startup
        log_directory: Directory for rotating log files

    Raises:
        ValueError: If level is not a valid log level
    """
    level_upper = level.upper()
    if level_upper not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of {sorted(VALID_LOG_LEVELS)}")

    numeric_level = getattr(logging, level_upper)

    logger = logging.getLogger(SERVICE_LOGGER_NAME)
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    formatter = JSONFormatter()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(numeric_level)
    stdout_handler.setFormatter(formatter)
    logger.addHandler(stdout_handler)

    os.makedirs(log_directory, exist_ok=True)
    file_handler = DailyRotatingFileHandler(directory=log_directory)
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    logger.propagate = False
    logger.debug("Logging configured", extra={"service": service_name})
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger namespaced under the service logger."""
    return logging.getLogger(f"{SERVICE_LOGGER_NAME}.{name}")
