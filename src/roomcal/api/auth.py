"""OIDC JWT authentication for the Microsoft identity platform.

Provides:
- verify_token(): Validates JWT and returns its claims
- get_current_user(): FastAPI dependency for authenticated user context,
  including the effective role resolved from the users row
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any

import jwt
import requests
from fastapi import HTTPException, Request
from starlette.concurrency import run_in_threadpool

from roomcal.domain.roles import Role, get_effective_role, legacy_shapes_from_row
from roomcal.observability.correlation import set_actor

# JWKS cache with TTL
_jwks_cache: dict[str, Any] | None = None
_jwks_cache_time: float = 0
_jwks_cache_lock = threading.Lock()
_JWKS_CACHE_TTL = 600  # 10 minutes


@dataclass
class CurrentUser:
    """Authenticated user context."""

    id: str
    external_subject: str
    email: str | None
    name: str | None
    role: Role = Role.viewer
    department: str | None = None


def _get_settings() -> dict[str, str | list[str] | None]:
    """Load OIDC settings from environment."""
    authorized_parties_raw = os.environ.get("OIDC_AUTHORIZED_PARTIES", "")
    authorized_parties: list[str] | None = None
    if authorized_parties_raw:
        authorized_parties = [p.strip() for p in authorized_parties_raw.split(",") if p.strip()]

    return {
        "issuer": os.environ.get("OIDC_ISSUER"),
        "audience": os.environ.get("OIDC_AUDIENCE"),
        "jwks_url": os.environ.get("OIDC_JWKS_URL"),
        "authorized_parties": authorized_parties,
    }


def _fetch_jwks(jwks_url: str) -> dict[str, Any]:
    resp = requests.get(jwks_url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _get_jwks(jwks_url: str, force_refresh: bool = False) -> dict[str, Any]:
    """Get JWKS with caching."""
    global _jwks_cache, _jwks_cache_time

    with _jwks_cache_lock:
        now = time.time()
        if not force_refresh and _jwks_cache is not None and (now - _jwks_cache_time) < _JWKS_CACHE_TTL:
            return _jwks_cache

        try:
            _jwks_cache = _fetch_jwks(jwks_url)
        except requests.RequestException:
            raise HTTPException(status_code=503, detail="Auth temporarily unavailable")
        _jwks_cache_time = now
        return _jwks_cache


def _find_key(jwks: dict[str, Any], kid: str) -> dict[str, Any] | None:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None


def verify_token(token: str) -> dict[str, Any]:
    """Verify JWT and return its claims.

    Args:
        token: JWT token string.

    Returns:
        Verified claims (always containing ``sub``).

    Raises:
        HTTPException: 401 if token is invalid, 503 if JWKS is unreachable.
    """
    settings = _get_settings()

    issuer = settings.get("issuer")
    audience = settings.get("audience")
    jwks_url = settings.get("jwks_url")

    if not issuer or not audience or not jwks_url:
        raise HTTPException(status_code=401, detail="OIDC not configured")

    try:
        unverified_header = jwt.get_unverified_header(token)
    except jwt.exceptions.DecodeError:
        raise HTTPException(status_code=401, detail="Invalid token")

    kid = unverified_header.get("kid")
    if not kid:
        raise HTTPException(status_code=401, detail="Invalid token")

    jwks = _get_jwks(jwks_url)
    key_data = _find_key(jwks, kid)

    # Signing keys rotate; refresh once on an unknown kid
    if key_data is None:
        jwks = _get_jwks(jwks_url, force_refresh=True)
        key_data = _find_key(jwks, kid)

    if key_data is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    def _try_verify(jwk_data: dict[str, Any]) -> dict[str, Any]:
        try:
            public_key = jwt.algorithms.RSAAlgorithm.from_jwk(jwk_data)
        except (ValueError, TypeError, jwt.exceptions.InvalidKeyError):
            raise HTTPException(status_code=401, detail="Invalid token")

        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            issuer=issuer,
            audience=audience,
            options={"require": ["exp", "iss", "aud", "sub"]},
        )

    try:
        payload = _try_verify(key_data)
    except jwt.InvalidSignatureError:
        jwks = _get_jwks(jwks_url, force_refresh=True)
        key_data = _find_key(jwks, kid)
        if key_data is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        try:
            payload = _try_verify(key_data)
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=401, detail="Invalid token")
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    authorized_parties = settings.get("authorized_parties")
    if authorized_parties and "azp" in payload:
        if payload["azp"] not in authorized_parties:
            raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")

    return payload


def _extract_bearer_token(request: Request) -> str:
    """Extract Bearer token from Authorization header.

    Raises:
        HTTPException: 401 if header missing or malformed.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    return parts[1]


def _subject_from_claims(claims: dict[str, Any]) -> str:
    # Entra ID: oid is stable across applications, sub is per-app
    return claims.get("oid") or claims["sub"]


def _email_from_claims(claims: dict[str, Any]) -> str | None:
    return claims.get("email") or claims.get("preferred_username") or claims.get("upn")


def _get_user_from_db(external_subject: str) -> dict[str, Any] | None:
    from roomcal.infra.db import txn
    from roomcal.infra.repositories.users_repository import get_user_by_subject

    with txn() as cur:
        return get_user_by_subject(cur, external_subject)


def build_current_user(row: dict[str, Any], token_email: str | None = None) -> CurrentUser:
    """Resolve a users row (plus the token's email) into a CurrentUser."""
    email = row.get("email") or token_email
    return CurrentUser(
        id=row["id"],
        external_subject=row["external_subject"],
        email=email,
        name=row.get("name"),
        role=get_effective_role(legacy_shapes_from_row(row), email),
        department=row.get("department"),
    )


def authenticate(token: str) -> CurrentUser:
    """Verify a bearer token and resolve the user it belongs to.

    Raises:
        HTTPException: 401 if token invalid, 403 if user not found.
    """
    claims = verify_token(token)

    row = _get_user_from_db(_subject_from_claims(claims))
    if row is None:
        raise HTTPException(status_code=403, detail="User not found")

    return build_current_user(row, _email_from_claims(claims))


async def get_current_user(request: Request) -> CurrentUser:
    """FastAPI dependency: get authenticated user.

    Token verification and the user lookup block, so they run in the
    threadpool; the actor is bound here so it reaches the endpoint.
    """
    token = _extract_bearer_token(request)
    user = await run_in_threadpool(authenticate, token)
    set_actor(user.id)
    return user

