"""Reservations repository - persistence for reservations, revisions and
communication history.

Uses raw SQL with psycopg2 (no ORM). Every mutation of a reservation row is a
single conditional UPDATE so that concurrent writers cannot both succeed:
- review holds: UPDATE ... WHERE hold is free, expired or already ours
- field updates and status changes: UPDATE ... WHERE change_key = expected
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Mapping

from psycopg2.extensions import cursor as PgCursor

# Business fields an approver may change through the update path.
BUSINESS_FIELDS: tuple[str, ...] = (
    "event_title",
    "event_description",
    "start_date_time",
    "end_date_time",
    "attendee_count",
    "locations",
    "location_display_names",
    "setup_time",
    "teardown_time",
    "door_open_time",
    "door_close_time",
    "setup_notes",
    "door_notes",
    "event_notes",
    "special_requirements",
    "assigned_to",
    "categories",
    "services",
    "is_offsite",
    "offsite_name",
    "offsite_address",
    "requester",
    "contact_person",
)

# Review/lifecycle columns written by status transitions.
REVIEW_FIELDS: tuple[str, ...] = (
    "status",
    "reviewed_by",
    "reviewed_at",
    "review_notes",
    "rejection_reason",
    "resubmission_allowed",
    "cancel_reason",
)

JSON_FIELDS = frozenset({"locations", "categories", "services", "requester", "contact_person"})

_WRITABLE_FIELDS = frozenset(BUSINESS_FIELDS) | frozenset(REVIEW_FIELDS)

# Stored value for an explicit clear of a NOT NULL column.
CLEARED_VALUES: dict[str, Any] = {
    "locations": [],
    "categories": [],
    "services": [],
    "is_offsite": False,
}

RESERVATION_COLUMNS: tuple[str, ...] = (
    "id",
    "change_key",
    "status",
    "reviewing_by",
    "review_expires_at",
    *BUSINESS_FIELDS,
    *REVIEW_FIELDS[1:],
    "current_revision",
    "parent_reservation_id",
    "created_by",
    "created_at",
    "last_modified_by",
    "last_modified_at",
)

_SELECT_COLUMNS = ", ".join(RESERVATION_COLUMNS)


def _row_to_dict(row: tuple[Any, ...]) -> dict[str, Any]:
    data = dict(zip(RESERVATION_COLUMNS, row))
    data["id"] = str(data["id"])
    if data.get("parent_reservation_id") is not None:
        data["parent_reservation_id"] = str(data["parent_reservation_id"])
    for field in JSON_FIELDS:
        value = data.get(field)
        if isinstance(value, str):
            data[field] = json.loads(value)
    return data


def apply_cleared_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Replace None with the column's empty value where NULL is not stored."""
    return {
        field: CLEARED_VALUES[field] if value is None and field in CLEARED_VALUES else value
        for field, value in fields.items()
    }


def _param(field: str, value: Any) -> tuple[str, Any]:
    """Placeholder and adapted value for one column."""
    if field in JSON_FIELDS:
        return "%s::jsonb", json.dumps(value, default=str) if value is not None else None
    return "%s", value


def business_snapshot(reservation: Mapping[str, Any]) -> dict[str, Any]:
    """Business fields + status, JSON-safe, as stored per revision."""
    snapshot = {field: reservation.get(field) for field in BUSINESS_FIELDS}
    snapshot["status"] = reservation.get("status")
    return json.loads(json.dumps(snapshot, default=str))


def get_reservation(cur: PgCursor, reservation_id: str) -> dict[str, Any] | None:
    """Fetch a reservation row as a dict (None if not found)."""
    cur.execute(
        f"SELECT {_SELECT_COLUMNS} FROM reservations WHERE id = %s",
        (reservation_id,),
    )
    row = cur.fetchone()
    return _row_to_dict(row) if row is not None else None


def list_reservations(
    cur: PgCursor,
    *,
    created_by: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """List reservations, newest first, optionally filtered by owner/status."""
    conditions = ["TRUE"]
    params: list[Any] = []

    if created_by:
        conditions.append("created_by = %s")
        params.append(created_by)

    if status:
        conditions.append("status = %s")
        params.append(status)

    params.append(limit)
    where_clause = " AND ".join(conditions)

    cur.execute(
        f"""
        SELECT {_SELECT_COLUMNS}
        FROM reservations
        WHERE {where_clause}
        ORDER BY start_date_time DESC NULLS LAST, created_at DESC
        LIMIT %s
        """,
        params,
    )
    return [_row_to_dict(row) for row in cur.fetchall()]


def insert_reservation(
    cur: PgCursor,
    *,
    fields: Mapping[str, Any],
    change_key: str,
    created_by: str,
    status: str = "pending",
    current_revision: int = 1,
    parent_reservation_id: str | None = None,
) -> dict[str, Any]:
    """Insert a reservation and return the stored row."""
    columns = ["change_key", "status", "current_revision", "parent_reservation_id",
               "created_by", "last_modified_by"]
    placeholders = ["%s"] * len(columns)
    fields = apply_cleared_values(fields)
    params: list[Any] = [change_key, status, current_revision, parent_reservation_id,
                         created_by, created_by]

    for field in BUSINESS_FIELDS:
        if field in fields:
            placeholder, value = _param(field, fields[field])
            columns.append(field)
            placeholders.append(placeholder)
            params.append(value)

    cur.execute(
        f"""
        INSERT INTO reservations ({", ".join(columns)})
        VALUES ({", ".join(placeholders)})
        RETURNING {_SELECT_COLUMNS}
        """,
        params,
    )
    return _row_to_dict(cur.fetchone())


def acquire_review_hold(
    cur: PgCursor,
    *,
    reservation_id: str,
    reviewer: str,
    expires_at: datetime,
    now: datetime,
) -> tuple[datetime, str] | None:
    """Take or refresh the review hold in one conditional UPDATE.

    Succeeds when there is no hold, the hold has expired, or the hold already
    belongs to ``reviewer``.

    Returns:
        (review_expires_at, change_key) on success, None otherwise
        (reservation missing or held by someone else). The change_key is the
        version the reviewer edits against.
    """
    cur.execute(
        """
        UPDATE reservations
        SET reviewing_by = %s, review_expires_at = %s
        WHERE id = %s
          AND (
            reviewing_by IS NULL
            OR reviewing_by = %s
            OR review_expires_at IS NULL
            OR review_expires_at <= %s
          )
        RETURNING review_expires_at, change_key
        """,
        (reviewer, expires_at, reservation_id, reviewer, now),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return row[0], row[1]


def get_review_hold(cur: PgCursor, reservation_id: str) -> tuple[str | None, datetime | None] | None:
    """Return (reviewing_by, review_expires_at), or None if not found."""
    cur.execute(
        "SELECT reviewing_by, review_expires_at FROM reservations WHERE id = %s",
        (reservation_id,),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return row[0], row[1]


def clear_review_hold(cur: PgCursor, reservation_id: str, reviewer: str, now: datetime) -> None:
    """Clear the hold if ``reviewer`` owns it or it has expired.

    A live hold owned by someone else is left in place.
    """
    cur.execute(
        """
        UPDATE reservations
        SET reviewing_by = NULL, review_expires_at = NULL
        WHERE id = %s
          AND reviewing_by IS NOT NULL
          AND (reviewing_by = %s OR review_expires_at <= %s)
        """,
        (reservation_id, reviewer, now),
    )


def update_if_current(
    cur: PgCursor,
    *,
    reservation_id: str,
    expected_change_key: str,
    new_change_key: str,
    fields: Mapping[str, Any],
    modified_by: str,
    expected_statuses: Iterable[str] | None = None,
    clear_hold: bool = False,
) -> dict[str, Any] | None:
    """Compare-and-swap update keyed on the current change_key.

    Args:
        cur: Database cursor (within transaction).
        reservation_id: Reservation UUID.
        expected_change_key: Token the caller last read.
        new_change_key: Token to store on success.
        fields: Columns to set (business or review columns only).
        modified_by: User id recorded as last_modified_by.
        expected_statuses: If set, status must also be one of these.
        clear_hold: Also clear the review hold.

    Returns:
        Updated row, or None if no row matched (missing, stale token or
        unexpected status).

    Raises:
        ValueError: If fields contains a non-writable column.
    """
    unknown = set(fields) - _WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Non-writable fields: {sorted(unknown)}")

    assignments = ["change_key = %s", "last_modified_by = %s", "last_modified_at = now()"]
    params: list[Any] = [new_change_key, modified_by]

    for field, value in apply_cleared_values(fields).items():
        placeholder, adapted = _param(field, value)
        assignments.append(f"{field} = {placeholder}")
        params.append(adapted)

    if clear_hold:
        assignments.append("reviewing_by = NULL")
        assignments.append("review_expires_at = NULL")

    conditions = ["id = %s", "change_key = %s"]
    params.extend([reservation_id, expected_change_key])

    if expected_statuses is not None:
        conditions.append("status = ANY(%s)")
        params.append(list(expected_statuses))

    cur.execute(
        f"""
        UPDATE reservations
        SET {", ".join(assignments)}
        WHERE {" AND ".join(conditions)}
        RETURNING {_SELECT_COLUMNS}
        """,
        params,
    )
    row = cur.fetchone()
    return _row_to_dict(row) if row is not None else None


def insert_revision(
    cur: PgCursor,
    *,
    reservation_id: str,
    change_key: str,
    snapshot: Mapping[str, Any],
    created_by: str,
) -> None:
    """Record the business snapshot stored under ``change_key``."""
    cur.execute(
        """
        INSERT INTO reservation_revisions (reservation_id, change_key, snapshot, created_by)
        VALUES (%s, %s, %s::jsonb, %s)
        ON CONFLICT (reservation_id, change_key) DO NOTHING
        """,
        (reservation_id, change_key, json.dumps(snapshot, default=str), created_by),
    )


def get_revision_snapshot(
    cur: PgCursor,
    *,
    reservation_id: str,
    change_key: str,
) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT snapshot FROM reservation_revisions
        WHERE reservation_id = %s AND change_key = %s
        """,
        (reservation_id, change_key),
    )
    row = cur.fetchone()
    if row is None:
        return None
    snapshot = row[0]
    return json.loads(snapshot) if isinstance(snapshot, str) else snapshot


def insert_communication(
    cur: PgCursor,
    *,
    reservation_id: str,
    entry_type: str,
    email_type: str,
    success: bool,
    recipients: list[str],
    subject: str,
    correlation_id: str | None = None,
    error: str | None = None,
) -> None:
    """Append one entry to a reservation's communication history.

    History rows are never updated or deleted.
    """
    cur.execute(
        """
        INSERT INTO reservation_communications (
            reservation_id, type, email_type, success, recipients,
            subject, correlation_id, error
        )
        VALUES (%s, %s, %s, %s, %s::jsonb, %s, %s, %s)
        """,
        (
            reservation_id,
            entry_type,
            email_type,
            success,
            json.dumps(recipients),
            subject,
            correlation_id,
            error,
        ),
    )


def list_communications(cur: PgCursor, reservation_id: str) -> list[dict[str, Any]]:
    """Communication history in append order."""
    cur.execute(
        """
        SELECT created_at, type, email_type, success, recipients, subject,
               correlation_id, error
        FROM reservation_communications
        WHERE reservation_id = %s
        ORDER BY created_at ASC, id ASC
        """,
        (reservation_id,),
    )
    return [
        {
            "timestamp": row[0].isoformat() if row[0] is not None else None,
            "type": row[1],
            "email_type": row[2],
            "success": row[3],
            "recipients": json.loads(row[4]) if isinstance(row[4], str) else (row[4] or []),
            "subject": row[5],
            "correlation_id": row[6],
            "error": row[7],
        }
        for row in cur.fetchall()
    ]


def insert_status_history(
    cur: PgCursor,
    *,
    reservation_id: str,
    status: str,
    action: str,
    change_key: str | None,
    changed_by: str,
    reason: str | None = None,
) -> None:
    """Append one status history entry. Entries are never updated or deleted."""
    cur.execute(
        """
        INSERT INTO reservation_status_history (
            reservation_id, status, action, change_key, changed_by, reason
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        """,
        (reservation_id, status, action, change_key, changed_by, reason),
    )


def list_status_history(cur: PgCursor, reservation_id: str) -> list[dict[str, Any]]:
    """Status history in append order."""
    cur.execute(
        """
        SELECT created_at, status, action, change_key, changed_by, reason
        FROM reservation_status_history
        WHERE reservation_id = %s
        ORDER BY created_at ASC, id ASC
        """,
        (reservation_id,),
    )
    return [
        {
            "timestamp": row[0].isoformat() if row[0] is not None else None,
            "status": row[1],
            "action": row[2],
            "change_key": row[3],
            "changed_by": row[4],
            "reason": row[5],
        }
        for row in cur.fetchall()
    ]
