"""
Structured logging setup.

Provides JSON and text logging formatters for consistent log output.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from config import settings

# Attributes callers may attach via `extra=` that are worth keeping in JSON
_EXTRA_FIELDS = ("provider", "status", "path", "attempt", "elapsed_ms")


class JsonFormatter(logging.Formatter):
    """
    Format log records as JSON for structured logging.

    Produces single-line JSON objects for easy parsing by log aggregators.
    """

    def format(self, record: logging.LogRecord) -> str:
        """
        Format a log record as JSON.

        Args:
            record: The log record to format.

        Returns:
            JSON-formatted log string.
        """
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: Optional[str] = None,
    log_format: Optional[str] = None,
) -> logging.Logger:
    """
    Configure engine logging based on settings.

    Args:
        level: Override for settings.LOG_LEVEL.
        log_format: Override for settings.LOG_FORMAT ('json' or 'text').

    Returns:
        The root logger configured with appropriate handlers.
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, level or settings.LOG_LEVEL))

    # Remove existing handlers
    logger.handlers = []

    handler = logging.StreamHandler()

    if (log_format or settings.LOG_FORMAT) == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
        )

    logger.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return logger
