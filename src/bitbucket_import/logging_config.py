"""Structured logging configuration for the Bitbucket Server importer.

All importer loggers live under the ``bitbucket_import`` namespace and emit
snake_case event names with context passed through ``extra={...}``.

Environment:
    BITBUCKET_IMPORT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR. Default: INFO
    BITBUCKET_IMPORT_LOG_FORMAT: json or text. Default: json
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER_NAME = "bitbucket_import"

# Context keys whose values never reach log output (Bitbucket credentials)
SENSITIVE_KEYS = frozenset(
    {"password", "token", "secret", "api_key", "apikey", "authorization", "auth", "credential", "bearer"}
)

# Attributes every LogRecord carries; anything else came from extra={...}
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _context(record: logging.LogRecord) -> dict:
    context = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRIBUTES or key.startswith("_"):
            continue
        context[key] = "[REDACTED]" if key.lower() in SENSITIVE_KEYS else value
    return context


class StructuredFormatter(logging.Formatter):
    """One JSON object per line.

    Keys: timestamp (UTC, Z suffix), level, logger, message, plus context
    (the record's extras) and exception when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = _context(record)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Plain single-line format for local runs."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a single stream handler to the bitbucket_import logger.

    Safe to call repeatedly; the handler is only added once. Propagation is
    disabled so host applications do not log importer events twice.

    Args:
        level: Level name override; defaults to BITBUCKET_IMPORT_LOG_LEVEL
    """
    level_name = (level or os.getenv("BITBUCKET_IMPORT_LOG_LEVEL", "INFO")).upper()
    use_text = os.getenv("BITBUCKET_IMPORT_LOG_FORMAT", "json").lower() == "text"

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.propagate = False

    if root.handlers:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(TextFormatter() if use_text else StructuredFormatter())
    root.addHandler(handler)
