"""Reservation lifecycle transitions.

    submit -> pending
    pending -> approved | rejected | cancelled
    approved -> cancelled
    rejected -> (resubmit) new pending revision

Every transition is a status-guarded compare-and-swap on change_key, so a
transition racing with an edit or another transition fails cleanly with a
VersionConflict. Transitions also clear any review hold.
Each successful transition appends one reservation_status_history entry.
"""

from __future__ import annotations

from typing import Any, Mapping

from psycopg2.extensions import cursor as PgCursor

from roomcal.domain.concurrency import (
    ReservationNotFound,
    VersionConflict,
    build_version_conflict,
    new_change_key,
)
from roomcal.infra.db import txn
from roomcal.infra.repositories import reservations_repository as repo
from roomcal.infra.time import utc_now
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

logger = get_logger(__name__)

STATUSES = ("pending", "approved", "rejected", "cancelled")

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "approved": ("pending",),
    "rejected": ("pending",),
    "cancelled": ("pending", "approved"),
}


class InvalidTransition(Exception):
    """Raised when the current status does not allow the requested action."""

    def __init__(self, action: str, status: str) -> None:
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} a reservation in status '{status}'")


class NotOwnerError(Exception):
    """Raised when a requester acts on someone else's reservation."""


class ResubmissionNotAllowed(Exception):
    """Raised when an approver disabled resubmission on rejection."""


def _validate_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(repo.BUSINESS_FIELDS))
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(unknown)}")
    return dict(fields)


def submit_reservation(
    fields: Mapping[str, Any],
    *,
    requester_id: str,
    cur: PgCursor | None = None,
) -> dict[str, Any]:
    """Create a new pending reservation.

    Args:
        fields: Business fields of the request.
        requester_id: User id of the submitter (becomes created_by).

    Returns:
        The stored reservation row.
    """
    data = _validate_fields(fields)

    def _do(c: PgCursor) -> dict[str, Any]:
        change_key = new_change_key()
        reservation = repo.insert_reservation(
            c,
            fields=data,
            change_key=change_key,
            created_by=requester_id,
        )
        repo.insert_revision(
            c,
            reservation_id=reservation["id"],
            change_key=change_key,
            snapshot=repo.business_snapshot(reservation),
            created_by=requester_id,
        )
        repo.insert_status_history(
            c,
            reservation_id=reservation["id"],
            status="pending",
            action="submitted",
            change_key=change_key,
            changed_by=requester_id,
        )
        return reservation

    if cur is not None:
        reservation = _do(cur)
    else:
        with txn() as c:
            reservation = _do(c)

    logger.info(
        "reservation submitted",
        extra={"extra_fields": safe_log_context(reservation_id=reservation["id"])},
    )
    return reservation


def _transition(
    action: str,
    target_status: str,
    reservation_id: str,
    change_key: str,
    *,
    actor_id: str,
    extra_fields: Mapping[str, Any],
    reason: str | None = None,
    cur: PgCursor | None,
) -> dict[str, Any] | VersionConflict:
    allowed_from = ALLOWED_TRANSITIONS[target_status]

    def _do(c: PgCursor) -> dict[str, Any] | VersionConflict:
        next_key = new_change_key()
        updated = repo.update_if_current(
            c,
            reservation_id=reservation_id,
            expected_change_key=change_key,
            new_change_key=next_key,
            fields={"status": target_status, **extra_fields},
            modified_by=actor_id,
            expected_statuses=allowed_from,
            clear_hold=True,
        )
        if updated is not None:
            repo.insert_revision(
                c,
                reservation_id=reservation_id,
                change_key=next_key,
                snapshot=repo.business_snapshot(updated),
                created_by=actor_id,
            )
            repo.insert_status_history(
                c,
                reservation_id=reservation_id,
                status=target_status,
                action=target_status,
                change_key=next_key,
                changed_by=actor_id,
                reason=reason,
            )
            return updated

        current = repo.get_reservation(c, reservation_id)
        if current is None:
            raise ReservationNotFound(reservation_id)
        if current["change_key"] == change_key:
            raise InvalidTransition(action, current["status"])
        return build_version_conflict(
            c, reservation_id=reservation_id, presented_change_key=change_key
        )

    if cur is not None:
        result = _do(cur)
    else:
        with txn() as c:
            result = _do(c)

    logger.info(
        f"reservation {action}",
        extra={
            "extra_fields": safe_log_context(
                reservation_id=reservation_id,
                conflict=isinstance(result, VersionConflict),
            )
        },
    )
    return result


def approve_reservation(
    reservation_id: str,
    change_key: str,
    *,
    approver_id: str,
    notes: str | None = None,
    cur: PgCursor | None = None,
) -> dict[str, Any] | VersionConflict:
    return _transition(
        "approve",
        "approved",
        reservation_id,
        change_key,
        actor_id=approver_id,
        extra_fields={"reviewed_by": approver_id, "reviewed_at": utc_now(), "review_notes": notes},
        reason=notes,
        cur=cur,
    )


def reject_reservation(
    reservation_id: str,
    change_key: str,
    *,
    approver_id: str,
    reason: str,
    allow_resubmission: bool = True,
    cur: PgCursor | None = None,
) -> dict[str, Any] | VersionConflict:
    """Reject a pending reservation. A reason is mandatory."""
    if not reason or not reason.strip():
        raise ValueError("A rejection reason is required")
    return _transition(
        "reject",
        "rejected",
        reservation_id,
        change_key,
        actor_id=approver_id,
        extra_fields={
            "reviewed_by": approver_id,
            "reviewed_at": utc_now(),
            "rejection_reason": reason.strip(),
            "resubmission_allowed": allow_resubmission,
        },
        reason=reason.strip(),
        cur=cur,
    )


def cancel_reservation(
    reservation_id: str,
    change_key: str,
    *,
    actor_id: str,
    reason: str | None = None,
    cur: PgCursor | None = None,
) -> dict[str, Any] | VersionConflict:
    return _transition(
        "cancel",
        "cancelled",
        reservation_id,
        change_key,
        actor_id=actor_id,
        extra_fields={"cancel_reason": reason},
        reason=reason,
        cur=cur,
    )


def resubmit_reservation(
    reservation_id: str,
    change_key: str,
    fields: Mapping[str, Any],
    *,
    requester_id: str,
    cur: PgCursor | None = None,
) -> dict[str, Any] | VersionConflict:
    """Clone a rejected reservation into a new pending revision.

    The new row starts from the rejected row's business fields, overlaid
    with ``fields``, and links back through parent_reservation_id. The
    rejected row stays rejected, with resubmission_allowed switched off.

    Raises:
        ReservationNotFound: If the reservation does not exist.
        NotOwnerError: If requester_id did not create the reservation.
        InvalidTransition: If the reservation is not rejected.
        ResubmissionNotAllowed: If resubmission was disabled on rejection.
    """
    overrides = _validate_fields(fields)

    def _do(c: PgCursor) -> dict[str, Any] | VersionConflict:
        original = repo.get_reservation(c, reservation_id)
        if original is None:
            raise ReservationNotFound(reservation_id)
        if original["created_by"] != requester_id:
            raise NotOwnerError("Only the original requester can resubmit")
        if original["change_key"] != change_key:
            return build_version_conflict(
                c,
                reservation_id=reservation_id,
                presented_change_key=change_key,
                submitted=overrides,
            )
        if original["status"] != "rejected":
            raise InvalidTransition("resubmit", original["status"])
        if original.get("resubmission_allowed") is False:
            raise ResubmissionNotAllowed("Resubmission is not allowed for this reservation")

        # Claim the rejected row so it cannot be resubmitted twice.
        claim_key = new_change_key()
        claimed = repo.update_if_current(
            c,
            reservation_id=reservation_id,
            expected_change_key=change_key,
            new_change_key=claim_key,
            fields={"resubmission_allowed": False},
            modified_by=requester_id,
            expected_statuses=("rejected",),
        )
        if claimed is None:
            return build_version_conflict(
                c,
                reservation_id=reservation_id,
                presented_change_key=change_key,
                submitted=overrides,
            )

        merged = {f: original.get(f) for f in repo.BUSINESS_FIELDS}
        merged.update(overrides)

        new_key = new_change_key()
        reservation = repo.insert_reservation(
            c,
            fields=merged,
            change_key=new_key,
            created_by=requester_id,
            current_revision=(original.get("current_revision") or 1) + 1,
            parent_reservation_id=reservation_id,
        )
        repo.insert_revision(
            c,
            reservation_id=reservation["id"],
            change_key=new_key,
            snapshot=repo.business_snapshot(reservation),
            created_by=requester_id,
        )
        repo.insert_status_history(
            c,
            reservation_id=reservation_id,
            status="rejected",
            action="resubmitted",
            change_key=claim_key,
            changed_by=requester_id,
        )
        repo.insert_status_history(
            c,
            reservation_id=reservation["id"],
            status="pending",
            action="resubmitted",
            change_key=new_key,
            changed_by=requester_id,
        )
        return reservation

    if cur is not None:
        result = _do(cur)
    else:
        with txn() as c:
            result = _do(c)

    if not isinstance(result, VersionConflict):
        logger.info(
            "reservation resubmitted",
            extra={
                "extra_fields": safe_log_context(
                    parent_reservation_id=reservation_id,
                    reservation_id=result["id"],
                )
            },
        )
    return result
