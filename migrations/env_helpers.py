"""Database URL helpers for Alembic migrations.

Kept apart from env.py so they can be tested without an Alembic context.
DATABASE_URL may be a URL (postgres://, postgresql://) or a libpq key=value
DSN, the same forms roomcal.infra.db accepts at runtime.
"""

from __future__ import annotations

import os

from psycopg2.extensions import parse_dsn
from sqlalchemy.engine import URL, make_url

DRIVERNAME = "postgresql+psycopg2"


def _db_password() -> str | None:
    return os.environ.get("DB_PASSWORD") or None


def _url_from_dsn(dsn: str) -> URL:
    """libpq key=value DSN -> SQLAlchemy URL.

    Unix-socket hosts (leading "/") travel as the ``host`` query parameter.
    """
    params = parse_dsn(dsn)
    host = params.get("host")
    query = {}
    if host and host.startswith("/"):
        query["host"] = host
        host = None
    elif host is None:
        host = "localhost"

    return URL.create(
        DRIVERNAME,
        username=params.get("user"),
        password=params.get("password") or _db_password(),
        host=host,
        port=int(params["port"]) if params.get("port") else 5432 if host else None,
        database=params.get("dbname"),
        query=query,
    )


def get_database_url() -> URL:
    """Resolve DATABASE_URL (plus DB_PASSWORD fallback) for SQLAlchemy.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    raw = os.environ.get("DATABASE_URL")
    if not raw:
        raise RuntimeError("DATABASE_URL is required to run migrations")

    if "://" not in raw:
        return _url_from_dsn(raw)

    url = make_url(raw)
    if url.drivername in ("postgres", "postgresql"):
        url = url.set(drivername=DRIVERNAME)
    if not url.password and _db_password():
        url = url.set(password=_db_password())
    return url


def render_database_url() -> str:
    """String form for engine_from_config (password included)."""
    return get_database_url().render_as_string(hide_password=False)
