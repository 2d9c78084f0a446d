"""JSON-lines logging with correlation id and alert tagging.

Call sites pass structured fields as
``extra={"extra_fields": safe_log_context(...)}``; the formatter merges them
into the emitted object. Records that need a human to look at them carry
``alert=True`` (see log_alert()).
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_obj.update(record.extra_fields)

        if getattr(record, "alert", False):
            log_obj["alert"] = True

        return json.dumps(log_obj, default=str)


def _configured_level() -> int:
    name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Logger writing JSON to stdout; handlers are attached once per name."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(_configured_level())
        logger.propagate = False

    return logger


def log_alert(
    logger: logging.Logger,
    message: str,
    fields: dict[str, str],
    *,
    exc_info: bool = True,
) -> None:
    """Emit an ERROR record flagged for operational alerting.

    Used where a failure is deliberately not propagated (webhook handler
    boundaries, per-booking repairs) so it still reaches on-call.
    """
    logger.error(
        message,
        exc_info=exc_info,
        extra={"extra_fields": fields, "alert": True},
    )
