"""Version-checked reservation update.

The only code path that mutates business fields of an existing reservation.
The pre-update row is read for change detection, then a single
compare-and-swap UPDATE applies the fields and releases any review hold; a
stale change_key yields a VersionConflict carrying the diff the caller missed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from psycopg2.extensions import cursor as PgCursor

from roomcal.domain.change_detection import NOTIFIABLE_FIELDS, Change, detect_changes
from roomcal.domain.concurrency import (
    ReservationNotFound,
    VersionConflict,
    build_version_conflict,
    new_change_key,
)
from roomcal.infra.db import txn
from roomcal.infra.repositories import reservations_repository as repo
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

logger = get_logger(__name__)

EDITABLE_STATUSES = ("pending", "approved")


class UnknownFieldError(ValueError):
    """Raised when an update names fields outside the editable set."""

    def __init__(self, fields: list[str]) -> None:
        self.fields = fields
        super().__init__(f"Unknown or read-only fields: {', '.join(fields)}")


class NotEditableError(Exception):
    """Raised when the reservation's status does not allow edits."""

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(f"Reservations in status '{status}' cannot be edited")


@dataclass(frozen=True)
class UpdateResult:
    reservation: dict[str, Any]
    change_key: str
    changes: list[Change] = field(default_factory=list)


def update_reservation(
    reservation_id: str,
    presented_change_key: str,
    field_changes: Mapping[str, Any],
    *,
    modified_by: str,
    cur: PgCursor | None = None,
) -> UpdateResult | VersionConflict:
    """Apply field changes if the presented change_key is still current.

    Args:
        reservation_id: Reservation UUID.
        presented_change_key: Token the caller last observed.
        field_changes: Business fields to set.
        modified_by: User id of the editor.
        cur: Optional cursor to run inside an existing transaction.

    Returns:
        UpdateResult with the new row, new change_key and the detected
        notifiable changes; or VersionConflict if the token is stale.

    Raises:
        UnknownFieldError: If field_changes names a non-editable field.
        ReservationNotFound: If the reservation does not exist.
        NotEditableError: If the token matches but the status forbids edits.
        psycopg2.Error: On storage failure (nothing is written).
    """
    unknown = sorted(set(field_changes) - set(repo.BUSINESS_FIELDS))
    if unknown:
        raise UnknownFieldError(unknown)

    def _do(c: PgCursor) -> UpdateResult | VersionConflict:
        original = repo.get_reservation(c, reservation_id)
        if original is None:
            raise ReservationNotFound(reservation_id)

        next_key = new_change_key()
        updated = repo.update_if_current(
            c,
            reservation_id=reservation_id,
            expected_change_key=presented_change_key,
            new_change_key=next_key,
            fields=dict(field_changes),
            modified_by=modified_by,
            expected_statuses=EDITABLE_STATUSES,
            clear_hold=True,
        )

        if updated is None:
            if original["change_key"] == presented_change_key:
                # Token was current; only the status guard can have failed.
                current = repo.get_reservation(c, reservation_id)
                if current is not None and current["change_key"] == presented_change_key:
                    raise NotEditableError(current["status"])
            return build_version_conflict(
                c,
                reservation_id=reservation_id,
                presented_change_key=presented_change_key,
                submitted=field_changes,
            )

        repo.insert_revision(
            c,
            reservation_id=reservation_id,
            change_key=next_key,
            snapshot=repo.business_snapshot(updated),
            created_by=modified_by,
        )
        changes = detect_changes(original, field_changes, NOTIFIABLE_FIELDS)
        return UpdateResult(reservation=updated, change_key=next_key, changes=changes)

    if cur is not None:
        result = _do(cur)
    else:
        with txn() as c:
            result = _do(c)

    if isinstance(result, VersionConflict):
        logger.info(
            "reservation update rejected: stale change_key",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    changed_fields=len(result.changes),
                )
            },
        )
    else:
        logger.info(
            "reservation updated",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    fields=len(field_changes),
                    notifiable_changes=len(result.changes),
                )
            },
        )
    return result
