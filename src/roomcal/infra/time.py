"""Time utilities for consistent timestamp handling."""

import time
from datetime import datetime, timezone
from typing import Callable

# Monotonic-ish wall clock in seconds; injectable where expiry must be testable.
Clock = Callable[[], float]


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def system_clock() -> float:
    """Default clock for TTL caches."""
    return time.time()
