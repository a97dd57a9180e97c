"""System-wide settings stored in the database.

Email settings live in ``system_settings`` under the key "email-settings"
and override environment defaults. Reads go through a small TTL cache with
an injected clock so expiry is deterministic in tests.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Generic, TypeVar

import psycopg2

from roomcal.infra.time import Clock, system_clock
from roomcal.observability.logging import get_logger

from .db import fetchone, txn

logger = get_logger(__name__)

EMAIL_SETTINGS_KEY = "email-settings"
EMAIL_SETTINGS_TTL_SECONDS = 30.0

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Single-value cache: ``{value, fetched_at}`` plus a clock.

    get() returns the cached value while ``clock() - fetched_at < ttl``,
    otherwise calls the loader. A loader returning None is not cached.
    """

    def __init__(self, loader: Callable[[], T | None], ttl_seconds: float,
                 clock: Clock = system_clock) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: T | None = None
        self._fetched_at: float | None = None
        self._lock = threading.Lock()

    def get(self) -> T | None:
        with self._lock:
            now = self._clock()
            if self._fetched_at is not None and (now - self._fetched_at) < self._ttl:
                return self._value

            value = self._loader()
            if value is not None:
                self._value = value
                self._fetched_at = now
            return value

    def clear(self) -> None:
        with self._lock:
            self._value = None
            self._fetched_at = None


@dataclass(frozen=True)
class EmailSettings:
    """Effective email settings.

    Attributes:
        enabled: Master switch for outgoing mail.
        redirect_to: If set, every email goes to this address instead
                     (test/staging safety valve).
        cc_to: Optional address copied on every email.
    """

    enabled: bool = False
    redirect_to: str | None = None
    cc_to: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _env_settings() -> EmailSettings:
    return EmailSettings(
        enabled=os.environ.get("EMAIL_ENABLED", "").lower() == "true",
        redirect_to=os.environ.get("EMAIL_REDIRECT_TO") or None,
        cc_to=None,
    )


def _merge_with_env(db_config: dict[str, Any]) -> EmailSettings:
    env = _env_settings()
    return EmailSettings(
        enabled=db_config["enabled"] if "enabled" in db_config else env.enabled,
        redirect_to=db_config["redirect_to"] if "redirect_to" in db_config else env.redirect_to,
        cc_to=db_config.get("cc_to") or None,
    )


def _load_from_db() -> dict[str, Any] | None:
    with txn() as cur:
        row = fetchone(
            cur,
            "SELECT value FROM system_settings WHERE key = %s",
            (EMAIL_SETTINGS_KEY,),
        )
    if row is None or not row[0]:
        return None
    return row[0] if isinstance(row[0], dict) else json.loads(row[0])


def _load_email_settings() -> EmailSettings | None:
    try:
        db_config = _load_from_db()
    except (psycopg2.Error, RuntimeError) as exc:
        logger.warning(
            "could not load email settings from database, using environment",
            extra={"extra_fields": {"error_type": type(exc).__name__}},
        )
        return None
    if db_config is None:
        return None
    return _merge_with_env(db_config)


_email_settings_cache: TTLCache[EmailSettings] = TTLCache(
    _load_email_settings, EMAIL_SETTINGS_TTL_SECONDS
)


def get_email_settings() -> EmailSettings:
    """Effective email settings (database overrides environment).

    Database failures and a missing row both fall back to environment
    values; fallbacks are not cached.
    """
    return _email_settings_cache.get() or _env_settings()


def update_email_settings(
    *,
    enabled: bool,
    redirect_to: str | None = None,
    cc_to: str | None = None,
) -> EmailSettings:
    """Persist email settings and clear the cache."""
    value = {"enabled": enabled, "redirect_to": redirect_to, "cc_to": cc_to}
    with txn() as cur:
        cur.execute(
            """
            INSERT INTO system_settings (key, value, updated_at)
            VALUES (%s, %s::jsonb, now())
            ON CONFLICT (key) DO UPDATE
            SET value = EXCLUDED.value, updated_at = now()
            """,
            (EMAIL_SETTINGS_KEY, json.dumps(value)),
        )
    clear_settings_cache()
    return _merge_with_env(value)


def clear_settings_cache() -> None:
    _email_settings_cache.clear()
