"""Redaction helpers for safe logging.

Requester names, emails and phone numbers live inside reservation payloads.
Anything derived from a request body must pass through these before it
reaches a log line.
"""

import re
from typing import Any

_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")

_REDACTED = "[REDACTED]"


def mask_email(value: str) -> str:
    """Keep only the domain of an email address: ``***@example.org``."""
    return _EMAIL_PATTERN.sub(lambda m: f"***@{m.group(1)}", value)


def redact_string(value: str) -> str:
    """Redact phone numbers and mask email local parts."""
    result = _PHONE_PATTERN.sub(_REDACTED, value)
    return mask_email(result)


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # structure only, never values
        return f"dict(keys={sorted(value.keys())})"
    if isinstance(value, (list, tuple, set, frozenset)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging. All values are redacted."""
    return {k: redact_value(v) for k, v in kwargs.items()}
