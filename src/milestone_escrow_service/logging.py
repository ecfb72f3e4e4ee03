"""
JSON logging for the milestone escrow service.

Every line is one JSON object. Workflow context passed through
``extra={...}`` is kept: ``job_id`` and ``milestone_index`` are lifted to the
top level so a single job's history can be grepped out of the daily files,
everything else lands under ``"extra"``.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import UTC, datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any

SERVICE_LOGGER_NAME = "milestone_escrow_service"

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

CORRELATION_KEYS: tuple[str, ...] = ("job_id", "milestone_index")

# Attributes every LogRecord carries; anything else came in through extra=.
_RECORD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        log_data: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        for key in CORRELATION_KEYS:
            if key in extra:
                log_data[key] = extra.pop(key)
        if extra:
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DailyRotatingFileHandler(TimedRotatingFileHandler):
    """Writes to ``<directory>/YYYY-MM-DD.log``; a new file is opened at UTC midnight."""

    def __init__(self, directory: str) -> None:
        self._directory = Path(directory)
        super().__init__(self._current_path(), when="midnight", utc=True, encoding="utf-8")

    def _current_path(self) -> str:
        return str(self._directory / f"{datetime.now(tz=UTC):%Y-%m-%d}.log")

    def doRollover(self) -> None:  # noqa: N802
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self.baseFilename = str(Path(self._current_path()).resolve())
        if not self.delay:
            self.stream = self._open()
        self.rolloverAt = self.computeRollover(int(time.time()))


def setup_logging(level: str, service_name: str, log_directory: str) -> logging.Logger:
    """
    Configure the service logger to write JSON lines to stdout and a daily file.

    Module loggers from get_logger() are children of SERVICE_LOGGER_NAME and
    inherit its handlers; nothing propagates to the root logger. Calling this
    again replaces the handlers from the previous call.

    Raises:
        ValueError: If level is not a valid log level
    """
    level_upper = level.upper()
    if level_upper not in VALID_LOG_LEVELS:
        msg = f"Invalid log level: {level}. Must be one of {sorted(VALID_LOG_LEVELS)}"
        raise ValueError(msg)

    logger = logging.getLogger(SERVICE_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level_upper)
    logger.propagate = False

    Path(log_directory).mkdir(parents=True, exist_ok=True)
    formatter = JSONFormatter()
    for handler in (logging.StreamHandler(sys.stdout), DailyRotatingFileHandler(log_directory)):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.debug("Logging configured", extra={"service": service_name})
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the service namespace."""
    if name == SERVICE_LOGGER_NAME or name.startswith(f"{SERVICE_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{SERVICE_LOGGER_NAME}.{name}")
