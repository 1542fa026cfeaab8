"""Structured JSON logging with correlation ID support.

One JSON object per line on stdout. Callers pass context through
`extra={"extra_fields": safe_log_context(...)}`; raw payload values never
go into the message string.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

SERVICE_NAME = "wabridge"


class JsonFormatter(logging.Formatter):
    """Render a record as JSON, stamped with service and correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": os.environ.get("SERVICE_NAME", SERVICE_NAME),
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.exc_info:
            log_obj["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            log_obj["exception"] = self.formatException(record.exc_info)

        # The bound correlation ID wins over a (redacted) copy in extra_fields
        for key, value in (getattr(record, "extra_fields", None) or {}).items():
            log_obj.setdefault(key, value)

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """Logger writing JSON lines to stdout, level from LOG_LEVEL (default INFO)."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
        # Uvicorn's root handlers would print every line twice
        logger.propagate = False

    return logger
