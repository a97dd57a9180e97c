"""Reservations endpoints.

Every write carries the change_key the caller last saw (If-Match header or
``change_key`` body field, header wins). A stale key yields 409 with the
fields that changed since; a foreign review hold on start-review yields 423.
Notifications are enqueued to the worker after the write commits.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Response
from pydantic import BaseModel, ConfigDict, field_validator

from roomcal.api.auth import CurrentUser, get_current_user
from roomcal.api.rbac import can_access_reservation, is_owner, require_role
from roomcal.domain import lifecycle, notifications, review_hold
from roomcal.domain.concurrency import ReservationNotFound, VersionConflict
from roomcal.domain.reservation_update import (
    NotEditableError,
    UnknownFieldError,
    update_reservation,
)
from roomcal.domain.roles import Role, can_edit_field, has_role
from roomcal.observability.correlation import get_correlation_id
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

router = APIRouter(prefix="/reservations", tags=["reservations"])

logger = get_logger(__name__)


class Person(BaseModel):
    name: str | None = None
    email: str | None = None
    department: str | None = None
    phone: str | None = None


class ReservationFields(BaseModel):
    """Business fields. Only fields present in the request are applied."""

    model_config = ConfigDict(extra="forbid")

    event_title: str | None = None
    event_description: str | None = None
    start_date_time: str | None = None
    end_date_time: str | None = None
    attendee_count: int | None = None
    locations: list[str] | None = None
    location_display_names: str | None = None
    setup_time: str | None = None
    teardown_time: str | None = None
    door_open_time: str | None = None
    door_close_time: str | None = None
    setup_notes: str | None = None
    door_notes: str | None = None
    event_notes: str | None = None
    special_requirements: str | None = None
    assigned_to: str | None = None
    categories: list[str] | None = None
    services: list[Any] | None = None
    is_offsite: bool | None = None
    offsite_name: str | None = None
    offsite_address: str | None = None
    requester: Person | None = None
    contact_person: Person | None = None

    @field_validator("event_title")
    @classmethod
    def event_title_not_cleared(cls, v: str | None) -> str | None:
        """event_title may be omitted but never set to null."""
        if v is None:
            raise ValueError("event_title cannot be null")
        return v

    def set_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude={"change_key"})


class CreateReservationRequest(ReservationFields):
    event_title: str
    start_date_time: str
    end_date_time: str


class UpdateReservationRequest(ReservationFields):
    change_key: str | None = None


class ResubmitRequest(ReservationFields):
    change_key: str | None = None


class ChangeKeyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    change_key: str | None = None


class ApproveRequest(ChangeKeyRequest):
    notes: str | None = None


class RejectRequest(ChangeKeyRequest):
    reason: str
    allow_resubmission: bool = True


class CancelRequest(ChangeKeyRequest):
    reason: str | None = None


def _validate_reservation_id(reservation_id: str) -> str:
    """Malformed ids are indistinguishable from unknown ones."""
    try:
        return str(UUID(reservation_id))
    except ValueError:
        raise HTTPException(status_code=404, detail="Reservation not found")


def _presented_change_key(if_match: str | None, body_key: str | None) -> str:
    """Header wins over body. 428 when neither is present."""
    if if_match:
        key = if_match.strip()
        if key.startswith("W/"):
            key = key[2:]
        key = key.strip('"')
        if key:
            return key
    if body_key:
        return body_key
    raise HTTPException(status_code=428, detail="change_key required (If-Match header or body)")


def _load_reservation(reservation_id: str) -> dict[str, Any] | None:
    from roomcal.infra.db import txn
    from roomcal.infra.repositories.reservations_repository import get_reservation

    with txn() as cur:
        return get_reservation(cur, reservation_id)


def _load_accessible(reservation_id: str, user: CurrentUser) -> dict[str, Any]:
    reservation = _load_reservation(reservation_id)
    # Hide existence from users who may not see it
    if reservation is None or not can_access_reservation(user, reservation):
        raise HTTPException(status_code=404, detail="Reservation not found")
    return reservation


def _conflict(result: VersionConflict) -> HTTPException:
    return HTTPException(status_code=409, detail=result.to_detail())


def _notify(reservation: dict[str, Any], kind: str, changes=None) -> None:
    correlation_id = get_correlation_id()
    enqueued = notifications.enqueue_notification(
        reservation["id"],
        kind,
        change_key=reservation["change_key"],
        changes=changes,
        correlation_id=correlation_id,
    )
    if not enqueued:
        logger.warning(
            "notification not enqueued",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    reservation_id=reservation["id"],
                    kind=kind,
                )
            },
        )


def _with_etag(response: Response, reservation: dict[str, Any]) -> dict[str, Any]:
    response.headers["ETag"] = f'"{reservation["change_key"]}"'
    return reservation


@router.get("")
def list_reservations(
    status: str | None = Query(None, description="Filter by status"),
    mine: bool = Query(False, description="Only reservations I created"),
    limit: int = Query(100, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
) -> list[dict]:
    """Approvers list everything; other roles only their own requests."""
    from roomcal.infra.db import txn
    from roomcal.infra.repositories.reservations_repository import (
        list_reservations as repo_list,
    )

    if status is not None and status not in lifecycle.STATUSES:
        raise HTTPException(status_code=400, detail="invalid status")

    created_by = None if (has_role(user.role, Role.approver) and not mine) else user.id
    with txn() as cur:
        return repo_list(cur, created_by=created_by, status=status, limit=limit)


@router.get("/{reservation_id}")
def get_reservation(
    response: Response,
    reservation_id: str = Path(..., description="Reservation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    reservation_id = _validate_reservation_id(reservation_id)
    return _with_etag(response, _load_accessible(reservation_id, user))


@router.post("", status_code=201)
def submit_reservation(
    body: CreateReservationRequest,
    response: Response,
    user: CurrentUser = Depends(require_role("requester")),
) -> dict:
    fields = body.set_fields()
    if not fields.get("requester"):
        fields["requester"] = {"name": user.name, "email": user.email}

    try:
        reservation = lifecycle.submit_reservation(fields, requester_id=user.id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    _notify(reservation, "submitted")
    return _with_etag(response, reservation)


@router.put("/{reservation_id}")
def update(
    body: UpdateReservationRequest,
    response: Response,
    reservation_id: str = Path(..., description="Reservation UUID"),
    if_match: str | None = Header(None, alias="If-Match"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Version-checked edit.

    Approvers may edit any field; department users only their department's
    fields.
    """
    reservation_id = _validate_reservation_id(reservation_id)
    fields = body.set_fields()
    if not fields:
        raise HTTPException(status_code=400, detail="no fields to update")

    if not all(can_edit_field(user.role, user.department, f) for f in fields):
        raise HTTPException(status_code=403, detail="Insufficient role")

    change_key = _presented_change_key(if_match, body.change_key)

    try:
        result = update_reservation(reservation_id, change_key, fields, modified_by=user.id)
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except UnknownFieldError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except NotEditableError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if isinstance(result, VersionConflict):
        raise _conflict(result)

    if result.changes:
        _notify(result.reservation, "updated", result.changes)

    _with_etag(response, result.reservation)
    return {
        "reservation": result.reservation,
        "change_key": result.change_key,
        "changes": [c.to_dict() for c in result.changes],
    }


@router.post("/{reservation_id}/start-review")
def start_review(
    reservation_id: str = Path(..., description="Reservation UUID"),
    user: CurrentUser = Depends(require_role("approver")),
) -> dict:
    reservation_id = _validate_reservation_id(reservation_id)
    try:
        result = review_hold.acquire_hold(reservation_id, user.email or user.id)
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="Reservation not found")

    if isinstance(result, review_hold.HoldConflict):
        raise HTTPException(status_code=423, detail=result.to_detail())
    return result.to_dict()


@router.post("/{reservation_id}/release-review", status_code=204)
def release_review(
    reservation_id: str = Path(..., description="Reservation UUID"),
    user: CurrentUser = Depends(require_role("approver")),
) -> Response:
    try:
        reservation_id = str(UUID(reservation_id))
    except ValueError:
        return Response(status_code=204)
    review_hold.release_hold(reservation_id, user.email or user.id)
    return Response(status_code=204)


def _transition_result(result: dict[str, Any] | VersionConflict, kind: str) -> dict[str, Any]:
    if isinstance(result, VersionConflict):
        raise _conflict(result)
    _notify(result, kind)
    return result


@router.post("/{reservation_id}/approve")
def approve(
    body: ApproveRequest,
    reservation_id: str = Path(..., description="Reservation UUID"),
    if_match: str | None = Header(None, alias="If-Match"),
    user: CurrentUser = Depends(require_role("approver")),
) -> dict:
    reservation_id = _validate_reservation_id(reservation_id)
    change_key = _presented_change_key(if_match, body.change_key)
    try:
        result = lifecycle.approve_reservation(
            reservation_id, change_key, approver_id=user.id, notes=body.notes
        )
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except lifecycle.InvalidTransition as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _transition_result(result, "approved")


@router.post("/{reservation_id}/reject")
def reject(
    body: RejectRequest,
    reservation_id: str = Path(..., description="Reservation UUID"),
    if_match: str | None = Header(None, alias="If-Match"),
    user: CurrentUser = Depends(require_role("approver")),
) -> dict:
    reservation_id = _validate_reservation_id(reservation_id)
    change_key = _presented_change_key(if_match, body.change_key)
    try:
        result = lifecycle.reject_reservation(
            reservation_id,
            change_key,
            approver_id=user.id,
            reason=body.reason,
            allow_resubmission=body.allow_resubmission,
        )
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except (lifecycle.InvalidTransition, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _transition_result(result, "rejected")


@router.post("/{reservation_id}/cancel")
def cancel(
    body: CancelRequest,
    reservation_id: str = Path(..., description="Reservation UUID"),
    if_match: str | None = Header(None, alias="If-Match"),
    user: CurrentUser = Depends(get_current_user),
) -> dict:
    """Owners cancel their own requests; approvers cancel any."""
    reservation_id = _validate_reservation_id(reservation_id)
    reservation = _load_accessible(reservation_id, user)
    if not (is_owner(user, reservation) and has_role(user.role, Role.requester)) and not has_role(
        user.role, Role.approver
    ):
        raise HTTPException(status_code=403, detail="Insufficient role")

    change_key = _presented_change_key(if_match, body.change_key)
    try:
        result = lifecycle.cancel_reservation(
            reservation_id, change_key, actor_id=user.id, reason=body.reason
        )
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except lifecycle.InvalidTransition as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return _transition_result(result, "cancelled")


@router.post("/{reservation_id}/resubmit", status_code=201)
def resubmit(
    body: ResubmitRequest,
    response: Response,
    reservation_id: str = Path(..., description="Reservation UUID"),
    if_match: str | None = Header(None, alias="If-Match"),
    user: CurrentUser = Depends(require_role("requester")),
) -> dict:
    reservation_id = _validate_reservation_id(reservation_id)
    change_key = _presented_change_key(if_match, body.change_key)
    try:
        result = lifecycle.resubmit_reservation(
            reservation_id, change_key, body.set_fields(), requester_id=user.id
        )
    except ReservationNotFound:
        raise HTTPException(status_code=404, detail="Reservation not found")
    except lifecycle.NotOwnerError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except (lifecycle.InvalidTransition, lifecycle.ResubmissionNotAllowed, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return _with_etag(response, _transition_result(result, "resubmitted"))


@router.get("/{reservation_id}/communications")
def list_communications(
    reservation_id: str = Path(..., description="Reservation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> list[dict]:
    """Notification history, oldest first."""
    from roomcal.infra.db import txn
    from roomcal.infra.repositories.reservations_repository import (
        list_communications as repo_list_communications,
    )

    reservation_id = _validate_reservation_id(reservation_id)
    _load_accessible(reservation_id, user)
    with txn() as cur:
        return repo_list_communications(cur, reservation_id)


@router.get("/{reservation_id}/history")
def list_status_history(
    reservation_id: str = Path(..., description="Reservation UUID"),
    user: CurrentUser = Depends(get_current_user),
) -> list[dict]:
    """Status history, oldest first."""
    from roomcal.infra.db import txn
    from roomcal.infra.repositories.reservations_repository import (
        list_status_history as repo_list_status_history,
    )

    reservation_id = _validate_reservation_id(reservation_id)
    _load_accessible(reservation_id, user)
    with txn() as cur:
        return repo_list_status_history(cur, reservation_id)
