"""
Logging Utility - Structured Logging

Provides centralized logging configuration for all backend components.
Supports JSON format for production and human-readable format for development.

Usage:
    from utils.logging import get_logger, setup_logging

    setup_logging(level="INFO", format_type="json")
    logger = get_logger(__name__)
    logger.info("Job processed", extra={"job_id": 42, "source_key": "2024/01/a.txt"})
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

import orjson

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes present on every LogRecord; anything else came in through extra=
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line, extra fields included."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return orjson.dumps(payload, default=str).decode("utf-8")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def setup_logging(level: str = "INFO", format_type: str = "text") -> None:
    """Configure application-wide logging on stdout.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format ('json' or 'text')
    """
    handler = logging.StreamHandler(sys.stdout)
    if format_type.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )

    # boto3 is chatty at DEBUG
    for noisy in ("botocore", "boto3", "s3transfer", "aiormq"):
        logging.getLogger(noisy).setLevel(max(logging.INFO, logging.getLogger().level))
