"""Logging setup for applications using recordkit.

The library only creates module loggers (``recordkit.session`` logs every
statement at DEBUG); nothing is configured on import.

Example:
    >>> from recordkit.log import configure_logging
    >>> configure_logging("DEBUG")                   # show SQL
    >>> configure_logging("INFO", json_logs=True)    # structured output
"""

from __future__ import annotations

import json
import logging
import logging.config
from typing import Any

_RESERVED = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Values passed through ``extra=`` become top-level keys
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO", json_logs: bool = False, logger_name: str = "recordkit") -> None:
    """Attach a stream handler to the ``recordkit`` logger.

    Args:
        level: Logging level name (e.g. "DEBUG", "INFO", "WARNING")
        json_logs: Emit JSON lines instead of the human-readable format
        logger_name: Logger to configure; pass "" for the root logger
    """
    formatter_name = "json" if json_logs else "console"
    logger_config = {"handlers": ["default"], "level": level.upper()}

    config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "json": {
                "()": JsonFormatter,
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": formatter_name,
                "level": level.upper(),
            }
        },
    }
    if logger_name:
        config["loggers"] = {logger_name: {**logger_config, "propagate": False}}
    else:
        config["root"] = logger_config
    logging.config.dictConfig(config)


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["JsonFormatter", "configure_logging", "get_logger"]
