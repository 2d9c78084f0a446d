"""Redaction helpers for log output.

Anything that came from a customer, the gateway or an operator goes through
safe_log_context() before it reaches a log record. Gateway object ids are
logged as short prefixes only (id_prefix()).
"""

import re
from decimal import Decimal
from typing import Any

_CARD_PATTERN = re.compile(r"\b(?:\d[ -]?){13,19}\b")
_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"

ID_PREFIX_LEN = 8


def redact_string(value: str) -> str:
    """Mask card numbers, phone numbers and email addresses."""
    result = _CARD_PATTERN.sub(_REDACTED, value)
    result = _PHONE_PATTERN.sub(_REDACTED, result)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """String form of a value that is safe to log."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # structure only
        return f"dict(keys={list(value.keys())})"
    if isinstance(value, (list, tuple)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build an extra_fields dict with every value redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}


def id_prefix(value: str | None) -> str | None:
    """First characters of an external id, enough to correlate in logs."""
    if not value:
        return None
    return value[:ID_PREFIX_LEN]
