"""Shared test helper functions for Roomcal tests.

This module contains helper functions that can be imported by both conftest.py
and individual test files. These are NOT fixtures - they are regular functions
and classes.
"""

from __future__ import annotations

import base64
import copy
import threading
import time
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping
from unittest.mock import MagicMock, patch
from uuid import uuid4

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa

OIDC_ISSUER = "https://login.microsoftonline.com/tenant-1/v2.0"
OIDC_AUDIENCE = "api://roomcal"
OIDC_JWKS_URL = "https://login.microsoftonline.com/tenant-1/discovery/v2.0/keys"


def _generate_rsa_keypair():
    """Generate RSA key pair for test JWT signing."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )
    public_key = private_key.public_key()
    return private_key, public_key


def _create_jwks(public_key, kid: str = "test-key-1") -> dict:
    """Create JWKS from public key."""
    public_numbers = public_key.public_numbers()

    def int_to_base64(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return (
            base64.urlsafe_b64encode(n.to_bytes(byte_length, "big"))
            .rstrip(b"=")
            .decode()
        )

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": kid,
                "n": int_to_base64(public_numbers.n),
                "e": int_to_base64(public_numbers.e),
            }
        ]
    }


def _create_token(
    private_key,
    kid: str = "test-key-1",
    sub: str = "user-123",
    iss: str = OIDC_ISSUER,
    aud: str = OIDC_AUDIENCE,
    exp: int | None = None,
    azp: str | None = None,
    **claims: Any,
) -> str:
    """Create signed JWT for testing."""
    now = int(time.time())
    payload = {
        "sub": sub,
        "iss": iss,
        "aud": aud,
        "exp": exp if exp is not None else now + 3600,
        "iat": now,
        **claims,
    }
    if azp:
        payload["azp"] = azp

    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def make_user(role: str = "approver", *, department: str | None = None, email: str | None = None):
    """CurrentUser with a given effective role."""
    from roomcal.api.auth import CurrentUser
    from roomcal.domain.roles import Role

    return CurrentUser(
        id=str(uuid4()),
        external_subject=f"subject-{role}",
        email=email or f"{role}@example.org",
        name=f"Test {role.title()}",
        role=Role(role),
        department=department,
    )


def sample_fields(**overrides: Any) -> dict[str, Any]:
    """Business fields for a typical request."""
    fields = {
        "event_title": "Board Meeting",
        "start_date_time": "2026-02-18T10:00",
        "end_date_time": "2026-02-18T12:00",
        "attendee_count": 50,
        "locations": ["loc-1"],
        "setup_time": "09:30",
        "requester": {"name": "Rita Requester", "email": "rita@example.org"},
    }
    fields.update(overrides)
    return fields


class FakeReservationStore:
    """In-memory stand-in for reservations_repository.

    Implements the repository functions with the same signatures and the same
    conditional-update semantics. Each function runs under one lock, so a
    conditional update is atomic exactly like a single SQL statement.
    """

    _PATCHED = (
        "get_reservation",
        "list_reservations",
        "insert_reservation",
        "acquire_review_hold",
        "get_review_hold",
        "clear_review_hold",
        "update_if_current",
        "insert_revision",
        "get_revision_snapshot",
        "insert_communication",
        "list_communications",
        "insert_status_history",
        "list_status_history",
    )

    _TXN_TARGETS = (
        "roomcal.domain.review_hold.txn",
        "roomcal.domain.reservation_update.txn",
        "roomcal.domain.lifecycle.txn",
        "roomcal.domain.notifications.txn",
        "roomcal.infra.db.txn",
    )

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.revisions: dict[tuple[str, str], dict[str, Any]] = {}
        self.communications: list[dict[str, Any]] = []
        self.status_history: list[dict[str, Any]] = []
        self.lock = threading.Lock()
        self.fail_with: BaseException | None = None

    # -- setup helpers -------------------------------------------------

    def seed(
        self,
        *,
        change_key: str = "ck-1",
        status: str = "pending",
        created_by: str = "requester-1",
        **fields: Any,
    ) -> dict[str, Any]:
        """Insert a reservation row (and its revision) directly."""
        from roomcal.infra.repositories.reservations_repository import business_snapshot

        row = self._new_row(
            fields=sample_fields(**fields),
            change_key=change_key,
            created_by=created_by,
            status=status,
        )
        self.rows[row["id"]] = row
        self.revisions[(row["id"], change_key)] = business_snapshot(row)
        return copy.deepcopy(row)

    def set(self, reservation_id: str, **values: Any) -> None:
        self.rows[reservation_id].update(values)

    # -- repository functions ------------------------------------------

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _new_row(self, *, fields, change_key, created_by, status="pending",
                 current_revision=1, parent_reservation_id=None) -> dict[str, Any]:
        from roomcal.infra.repositories.reservations_repository import RESERVATION_COLUMNS

        now = datetime.now(timezone.utc)
        row: dict[str, Any] = {c: None for c in RESERVATION_COLUMNS}
        row.update(copy.deepcopy(dict(fields)))
        row.update(
            id=str(uuid4()),
            change_key=change_key,
            status=status,
            resubmission_allowed=True,
            current_revision=current_revision,
            parent_reservation_id=parent_reservation_id,
            created_by=created_by,
            created_at=now,
            last_modified_by=created_by,
            last_modified_at=now,
        )
        return row

    def get_reservation(self, cur, reservation_id: str):
        with self.lock:
            self._check()
            row = self.rows.get(reservation_id)
            return copy.deepcopy(row) if row is not None else None

    def list_reservations(self, cur, *, created_by=None, status=None, limit=100):
        with self.lock:
            self._check()
            rows = [
                r for r in self.rows.values()
                if (created_by is None or r["created_by"] == created_by)
                and (status is None or r["status"] == status)
            ]
            return copy.deepcopy(rows[:limit])

    def insert_reservation(self, cur, *, fields, change_key, created_by, status="pending",
                           current_revision=1, parent_reservation_id=None):
        from roomcal.infra.repositories.reservations_repository import apply_cleared_values

        fields = apply_cleared_values(fields)
        with self.lock:
            self._check()
            row = self._new_row(
                fields=fields,
                change_key=change_key,
                created_by=created_by,
                status=status,
                current_revision=current_revision,
                parent_reservation_id=parent_reservation_id,
            )
            self.rows[row["id"]] = row
            return copy.deepcopy(row)

    def acquire_review_hold(self, cur, *, reservation_id, reviewer, expires_at, now):
        with self.lock:
            self._check()
            row = self.rows.get(reservation_id)
            if row is None:
                return None
            held_by, held_until = row["reviewing_by"], row["review_expires_at"]
            if held_by is None or held_by == reviewer or held_until is None or held_until <= now:
                row["reviewing_by"] = reviewer
                row["review_expires_at"] = expires_at
                return expires_at, row["change_key"]
            return None

    def get_review_hold(self, cur, reservation_id):
        with self.lock:
            self._check()
            row = self.rows.get(reservation_id)
            if row is None:
                return None
            return row["reviewing_by"], row["review_expires_at"]

    def clear_review_hold(self, cur, reservation_id, reviewer, now):
        with self.lock:
            self._check()
            row = self.rows.get(reservation_id)
            if row is None or row["reviewing_by"] is None:
                return
            if row["reviewing_by"] == reviewer or row["review_expires_at"] <= now:
                row["reviewing_by"] = None
                row["review_expires_at"] = None

    def update_if_current(self, cur, *, reservation_id, expected_change_key, new_change_key,
                          fields, modified_by, expected_statuses=None, clear_hold=False):
        from roomcal.infra.repositories.reservations_repository import (
            BUSINESS_FIELDS,
            REVIEW_FIELDS,
            apply_cleared_values,
        )

        unknown = set(fields) - set(BUSINESS_FIELDS) - set(REVIEW_FIELDS)
        if unknown:
            raise ValueError(f"Non-writable fields: {sorted(unknown)}")

        with self.lock:
            self._check()
            row = self.rows.get(reservation_id)
            if row is None or row["change_key"] != expected_change_key:
                return None
            if expected_statuses is not None and row["status"] not in tuple(expected_statuses):
                return None
            row.update(copy.deepcopy(apply_cleared_values(fields)))
            row["change_key"] = new_change_key
            row["last_modified_by"] = modified_by
            row["last_modified_at"] = datetime.now(timezone.utc)
            if clear_hold:
                row["reviewing_by"] = None
                row["review_expires_at"] = None
            return copy.deepcopy(row)

    def insert_revision(self, cur, *, reservation_id, change_key, snapshot, created_by):
        with self.lock:
            self._check()
            self.revisions.setdefault((reservation_id, change_key), copy.deepcopy(dict(snapshot)))

    def get_revision_snapshot(self, cur, *, reservation_id, change_key):
        with self.lock:
            self._check()
            snapshot = self.revisions.get((reservation_id, change_key))
            return copy.deepcopy(snapshot) if snapshot is not None else None

    def insert_communication(self, cur, *, reservation_id, entry_type, email_type, success,
                             recipients, subject, correlation_id=None, error=None):
        with self.lock:
            self._check()
            self.communications.append({
                "reservation_id": reservation_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "type": entry_type,
                "email_type": email_type,
                "success": success,
                "recipients": list(recipients),
                "subject": subject,
                "correlation_id": correlation_id,
                "error": error,
            })

    def list_communications(self, cur, reservation_id):
        with self.lock:
            return [
                {k: v for k, v in c.items() if k != "reservation_id"}
                for c in self.communications
                if c["reservation_id"] == reservation_id
            ]

    def insert_status_history(self, cur, *, reservation_id, status, action, change_key,
                              changed_by, reason=None):
        with self.lock:
            self._check()
            self.status_history.append({
                "reservation_id": reservation_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "status": status,
                "action": action,
                "change_key": change_key,
                "changed_by": changed_by,
                "reason": reason,
            })

    def list_status_history(self, cur, reservation_id):
        with self.lock:
            return [
                {k: v for k, v in h.items() if k != "reservation_id"}
                for h in self.status_history
                if h["reservation_id"] == reservation_id
            ]

    # -- patching ------------------------------------------------------

    @contextmanager
    def fake_txn(self, conn=None):
        yield MagicMock(name="cursor")

    @contextmanager
    def installed(self, extra_txn_targets: Iterable[str] = ()):
        """Patch repository functions and every txn() the domain uses."""
        repo_module = "roomcal.infra.repositories.reservations_repository"
        with ExitStack() as stack:
            for name in self._PATCHED:
                stack.enter_context(patch(f"{repo_module}.{name}", getattr(self, name)))
            for target in (*self._TXN_TARGETS, *extra_txn_targets):
                stack.enter_context(patch(target, self.fake_txn))
            yield self


def location_map(mapping: Mapping[str, str] | None = None) -> dict[str, str]:
    return dict(mapping or {"loc-1": "Main Sanctuary", "loc-2": "Chapel"})
