"""Optimistic concurrency primitives for reservation writes.

Every reservation row carries an opaque ``change_key``. Writers present the
key they last read; the write is a single UPDATE keyed on that value, so a
stale key matches zero rows and the write is rejected as a VersionConflict.
Token equality is authoritative: identical field values under a different
key still conflict.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from psycopg2.extensions import cursor as PgCursor

from roomcal.domain.change_detection import CONFLICT_FIELDS, Change, detect_changes
from roomcal.infra.repositories import reservations_repository as repo


class ReservationNotFound(Exception):
    """Raised when the reservation id does not exist."""

    def __init__(self, reservation_id: str) -> None:
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} not found")


@dataclass(frozen=True)
class VersionConflict:
    """Returned when the presented change_key is no longer current."""

    current_change_key: str
    current_status: str
    last_modified_by: str | None
    last_modified_at: datetime | None
    changes: list[Change] = field(default_factory=list)

    def to_detail(self) -> dict[str, Any]:
        return {
            "code": "VERSION_CONFLICT",
            "message": "This reservation was modified by another user. "
                       "Please refresh and try again.",
            "current_change_key": self.current_change_key,
            "current_status": self.current_status,
            "last_modified_by": self.last_modified_by,
            "last_modified_at": self.last_modified_at.isoformat() if self.last_modified_at else None,
            "changes": [c.to_dict() for c in self.changes],
        }


def new_change_key() -> str:
    """Fresh opaque version token (time prefix + 96 random bits)."""
    return f"{int(time.time() * 1000):x}-{secrets.token_urlsafe(12)}"


def build_version_conflict(
    cur: PgCursor,
    *,
    reservation_id: str,
    presented_change_key: str,
    submitted: Mapping[str, Any] | None = None,
) -> VersionConflict:
    """Explain why a compare-and-swap matched no row.

    The diff runs from the caller's base version to the current version. The
    base is the revision snapshot stored under the presented key; when that
    key is unknown, the caller's own submitted values stand in for it.

    Raises:
        ReservationNotFound: If the reservation no longer exists.
    """
    current = repo.get_reservation(cur, reservation_id)
    if current is None:
        raise ReservationNotFound(reservation_id)

    current_snapshot = repo.business_snapshot(current)
    base = repo.get_revision_snapshot(
        cur, reservation_id=reservation_id, change_key=presented_change_key
    )
    if base is not None:
        changes = detect_changes(base, current_snapshot, CONFLICT_FIELDS)
    else:
        stale = {k: v for k, v in (submitted or {}).items() if k in CONFLICT_FIELDS}
        changes = [
            Change(c.field, c.new_value, c.old_value, c.display_name)
            for c in detect_changes(current_snapshot, stale, CONFLICT_FIELDS)
        ]

    return VersionConflict(
        current_change_key=current["change_key"],
        current_status=current["status"],
        last_modified_by=current.get("last_modified_by"),
        last_modified_at=current.get("last_modified_at"),
        changes=changes,
    )
