"""Outbound email via Microsoft Graph (shared mailbox, app-only auth).

Security: recipient addresses are never logged in clear; only counts and
masked domains.

Required env vars:
- GRAPH_TENANT_ID, GRAPH_CLIENT_ID, GRAPH_CLIENT_SECRET
- EMAIL_FROM_ADDRESS: mailbox the app sends as
"""

from __future__ import annotations

import os
import threading
import time
from typing import Any

import requests

from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

logger = get_logger(__name__)

HTTP_TIMEOUT = 10
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Refresh the app token this many seconds before it expires
_TOKEN_REFRESH_MARGIN = 60

# (tenant_id, client_id) -> {"access_token", "expires_at"}
_token_cache: dict[tuple[str, str], dict[str, Any]] = {}
_token_lock = threading.Lock()

_CONFIG_ENV = {
    "tenant_id": "GRAPH_TENANT_ID",
    "client_id": "GRAPH_CLIENT_ID",
    "client_secret": "GRAPH_CLIENT_SECRET",
    "from_address": "EMAIL_FROM_ADDRESS",
}


class GraphMailError(Exception):
    """Raised when Graph cannot be reached or rejects the request."""


def _get_config() -> dict[str, str]:
    config = {key: os.environ.get(env, "") for key, env in _CONFIG_ENV.items()}
    missing = [_CONFIG_ENV[k] for k, v in config.items() if not v]
    if missing:
        raise GraphMailError(f"Missing Graph mail config: {', '.join(missing)}")
    return config


def _fetch_app_token(config: dict[str, str]) -> dict[str, Any]:
    """Client-credentials grant against the Microsoft identity platform."""
    url = f"https://login.microsoftonline.com/{config['tenant_id']}/oauth2/v2.0/token"
    resp = requests.post(
        url,
        data={
            "grant_type": "client_credentials",
            "client_id": config["client_id"],
            "client_secret": config["client_secret"],
            "scope": GRAPH_SCOPE,
        },
        timeout=HTTP_TIMEOUT,
    )
    resp.raise_for_status()
    return resp.json()


def get_app_token(config: dict[str, str], *, force_refresh: bool = False) -> str:
    """App-only Graph access token, cached until shortly before expiry."""
    cache_key = (config["tenant_id"], config["client_id"])

    with _token_lock:
        now = time.time()
        cached = _token_cache.get(cache_key)
        if (
            not force_refresh
            and cached is not None
            and now < cached["expires_at"] - _TOKEN_REFRESH_MARGIN
        ):
            return cached["access_token"]

        try:
            payload = _fetch_app_token(config)
        except requests.RequestException as exc:
            raise GraphMailError(f"Token request failed: {type(exc).__name__}") from exc

        token = payload.get("access_token")
        if not token:
            raise GraphMailError("Token response missing access_token")
        _token_cache[cache_key] = {
            "access_token": token,
            "expires_at": now + int(payload.get("expires_in", 3600)),
        }
        return token


def _recipients(addresses: list[str]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": a}} for a in addresses]


def send_mail(
    *,
    to: list[str],
    subject: str,
    html: str,
    cc: list[str] | None = None,
    correlation_id: str | None = None,
) -> None:
    """Send an HTML email from the configured mailbox.

    Args:
        to: Recipient addresses. NEVER logged.
        subject: Subject line.
        html: HTML body.
        cc: Optional CC addresses.
        correlation_id: Optional correlation ID for tracing.

    Raises:
        GraphMailError: On missing config, auth failure or non-2xx response.
    """
    if not to:
        raise GraphMailError("No recipients")

    config = _get_config()
    token = get_app_token(config)

    message: dict[str, Any] = {
        "subject": subject,
        "body": {"contentType": "HTML", "content": html},
        "toRecipients": _recipients(to),
    }
    if cc:
        message["ccRecipients"] = _recipients(cc)

    url = f"{GRAPH_BASE_URL}/users/{config['from_address']}/sendMail"
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }
    if correlation_id:
        headers["client-request-id"] = correlation_id

    try:
        resp = requests.post(
            url,
            json={"message": message, "saveToSentItems": True},
            headers=headers,
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise GraphMailError(f"sendMail request failed: {type(exc).__name__}") from exc

    if resp.status_code >= 300:
        logger.error(
            "graph sendMail rejected",
            extra={
                "extra_fields": safe_log_context(
                    status_code=resp.status_code,
                    recipients=to,
                    correlation_id=correlation_id,
                )
            },
        )
        raise GraphMailError(f"sendMail returned {resp.status_code}")

    logger.info(
        "graph sendMail accepted",
        extra={"extra_fields": safe_log_context(recipients=to, cc=cc or [])},
    )
