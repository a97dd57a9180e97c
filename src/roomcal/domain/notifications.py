"""Reservation notification emails.

Routes never send mail inline. They enqueue a ``send-notification`` task
(payload: reservation id, kind, raw change list; no addresses). The worker
reloads the reservation, builds the email and dispatches it; every attempt,
including skipped and failed ones, is appended to the reservation's
communication history.
"""

from __future__ import annotations

import hashlib
import html
import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from roomcal.domain.change_detection import (
    Change,
    format_change_value,
    format_changes_for_email,
    format_date_time,
)
from roomcal.graph.mail import GraphMailError, send_mail
from roomcal.infra.db import txn
from roomcal.infra.repositories import locations_repository
from roomcal.infra.repositories import reservations_repository as repo
from roomcal.infra.system_settings import get_email_settings
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context
from roomcal.tasks.client import TasksClient

logger = get_logger(__name__)

NOTIFICATION_KINDS = ("submitted", "updated", "approved", "rejected", "cancelled", "resubmitted")

TASK_URL_PATH = "/tasks/notifications/send"

_SUBJECTS = {
    "submitted": "Reservation request received: {title}",
    "updated": "Your reservation was updated: {title}",
    "approved": "Reservation approved: {title}",
    "rejected": "Reservation not approved: {title}",
    "cancelled": "Reservation cancelled: {title}",
    "resubmitted": "Revised reservation request received: {title}",
}

_INTROS = {
    "submitted": "We received your reservation request. An approver will review it shortly.",
    "updated": "An approver made the following changes to your reservation.",
    "approved": "Your reservation has been approved.",
    "rejected": "Your reservation request was not approved.",
    "cancelled": "Your reservation has been cancelled.",
    "resubmitted": "We received your revised reservation request.",
}

_tasks_client = TasksClient()


def _get_tasks_client() -> TasksClient:
    """Get tasks client (allows override in tests)."""
    return _tasks_client


@dataclass(frozen=True)
class Notification:
    email_type: str
    recipients: list[str]
    subject: str
    html: str
    changes: list[dict[str, str]] = field(default_factory=list)


def requester_addresses(reservation: Mapping[str, Any]) -> list[str]:
    """Requester email, plus the contact person's when different."""
    addresses: list[str] = []
    for key in ("requester", "contact_person"):
        person = reservation.get(key) or {}
        email = person.get("email") if isinstance(person, Mapping) else None
        if email and email.lower() not in {a.lower() for a in addresses}:
            addresses.append(email)
    return addresses


def _changes_table(rows: list[dict[str, str]]) -> str:
    if not rows:
        return ""
    body = "".join(
        "<tr>"
        f"<td>{html.escape(r['displayName'])}</td>"
        f"<td>{html.escape(r['oldValue'])}</td>"
        f"<td>{html.escape(r['newValue'])}</td>"
        "</tr>"
        for r in rows
    )
    return (
        '<table class="changes">'
        "<thead><tr><th>Field</th><th>Previous</th><th>New</th></tr></thead>"
        f"<tbody>{body}</tbody></table>"
    )


def _details_block(reservation: Mapping[str, Any], location_map: Mapping[str, str]) -> str:
    locations = ""
    if reservation.get("locations"):
        locations = format_change_value(
            "locations", reservation["locations"], location_map=location_map
        )
    rows = [
        ("Event", reservation.get("event_title") or ""),
        ("Start", format_date_time(reservation["start_date_time"]) if reservation.get("start_date_time") else ""),
        ("End", format_date_time(reservation["end_date_time"]) if reservation.get("end_date_time") else ""),
        ("Room(s)", locations),
        ("Attendees", str(reservation.get("attendee_count") or "")),
    ]
    items = "".join(
        f"<li><strong>{html.escape(label)}:</strong> {html.escape(value)}</li>"
        for label, value in rows
        if value
    )
    return f"<ul>{items}</ul>"


def build_notification(
    kind: str,
    reservation: Mapping[str, Any],
    *,
    changes: list[Change] | None = None,
    location_map: Mapping[str, str] | None = None,
) -> Notification:
    """Build the requester-facing email for a lifecycle event.

    Raises:
        ValueError: On an unknown kind.
    """
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"Unknown notification kind: {kind}")

    location_map = location_map or {}
    title = reservation.get("event_title") or "Untitled event"
    rows = format_changes_for_email(changes or [], location_map=location_map)

    parts = [f"<p>{html.escape(_INTROS[kind])}</p>"]
    if kind == "updated":
        parts.append(_changes_table(rows))
    if kind == "rejected" and reservation.get("rejection_reason"):
        parts.append(f"<p><strong>Reason:</strong> {html.escape(reservation['rejection_reason'])}</p>")
        if reservation.get("resubmission_allowed") is not False:
            parts.append("<p>You may revise and resubmit this request.</p>")
    if kind == "cancelled" and reservation.get("cancel_reason"):
        parts.append(f"<p><strong>Reason:</strong> {html.escape(reservation['cancel_reason'])}</p>")
    parts.append(_details_block(reservation, location_map))

    return Notification(
        email_type=kind,
        recipients=requester_addresses(reservation),
        subject=_SUBJECTS[kind].format(title=title),
        html="\n".join(p for p in parts if p),
        changes=rows,
    )


def build_update_notification(
    reservation: Mapping[str, Any],
    changes: list[Change],
    *,
    location_map: Mapping[str, str] | None = None,
) -> Notification:
    """Changes-table email sent when an approver edits a reservation."""
    return build_notification("updated", reservation, changes=changes, location_map=location_map)


def build_submitted_notification(reservation, *, location_map=None) -> Notification:
    return build_notification("submitted", reservation, location_map=location_map)


def build_approved_notification(reservation, *, location_map=None) -> Notification:
    return build_notification("approved", reservation, location_map=location_map)


def build_rejected_notification(reservation, *, location_map=None) -> Notification:
    return build_notification("rejected", reservation, location_map=location_map)


def build_cancelled_notification(reservation, *, location_map=None) -> Notification:
    return build_notification("cancelled", reservation, location_map=location_map)


def build_resubmitted_notification(reservation, *, location_map=None) -> Notification:
    return build_notification("resubmitted", reservation, location_map=location_map)


_BUILDERS = {
    "submitted": build_submitted_notification,
    "approved": build_approved_notification,
    "rejected": build_rejected_notification,
    "cancelled": build_cancelled_notification,
    "resubmitted": build_resubmitted_notification,
}


def _record(
    reservation_id: str,
    *,
    entry_type: str,
    notification: Notification,
    recipients: list[str],
    success: bool,
    correlation_id: str | None,
    error: str | None = None,
) -> None:
    """Append to communication history. Failures are logged, never raised."""
    try:
        with txn() as cur:
            repo.insert_communication(
                cur,
                reservation_id=reservation_id,
                entry_type=entry_type,
                email_type=notification.email_type,
                success=success,
                recipients=recipients,
                subject=notification.subject,
                correlation_id=correlation_id,
                error=error,
            )
    except Exception as exc:
        logger.error(
            "failed to record communication history",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    error_type=type(exc).__name__,
                )
            },
        )


def dispatch_notification(
    reservation_id: str,
    notification: Notification,
    *,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Send a notification honouring email settings, and record the attempt.

    Returns:
        {"status": "sent" | "skipped" | "failed", ...}
    """
    settings = get_email_settings()

    if not notification.recipients:
        _record(reservation_id, entry_type="email_skipped", notification=notification,
                recipients=[], success=False, correlation_id=correlation_id,
                error="No recipient email")
        return {"status": "skipped", "reason": "no_recipients"}

    if not settings.enabled:
        _record(reservation_id, entry_type="email_skipped", notification=notification,
                recipients=notification.recipients, success=False,
                correlation_id=correlation_id, error="Email disabled")
        return {"status": "skipped", "reason": "disabled"}

    recipients = [settings.redirect_to] if settings.redirect_to else notification.recipients
    cc = [settings.cc_to] if settings.cc_to else None

    try:
        send_mail(
            to=recipients,
            subject=notification.subject,
            html=notification.html,
            cc=cc,
            correlation_id=correlation_id,
        )
    except GraphMailError as exc:
        logger.error(
            "notification send failed",
            extra={
                "extra_fields": safe_log_context(
                    reservation_id=reservation_id,
                    email_type=notification.email_type,
                    error=str(exc),
                )
            },
        )
        _record(reservation_id, entry_type="email_failed", notification=notification,
                recipients=recipients, success=False, correlation_id=correlation_id,
                error=str(exc))
        return {"status": "failed", "error": str(exc)}

    _record(reservation_id, entry_type="email_sent", notification=notification,
            recipients=recipients, success=True, correlation_id=correlation_id)
    return {"status": "sent", "recipients": len(recipients)}


def send_reservation_notification(
    reservation_id: str,
    kind: str,
    *,
    changes: list[dict[str, Any]] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Worker entry point: reload, build and dispatch.

    Args:
        reservation_id: Reservation UUID.
        kind: One of NOTIFICATION_KINDS.
        changes: Raw change dicts ({field, display_name, old_value, new_value}).
        correlation_id: Correlation ID from the originating request.
    """
    with txn() as cur:
        reservation = repo.get_reservation(cur, reservation_id)
        if reservation is None:
            return {"status": "noop", "reason": "not_found"}
        change_objs = [
            Change(c["field"], c.get("old_value"), c.get("new_value"), c["display_name"])
            for c in (changes or [])
        ]
        location_ids: set[str] = {str(i) for i in reservation.get("locations") or []}
        for c in change_objs:
            if c.field == "locations":
                for value in (c.old_value or [], c.new_value or []):
                    location_ids.update(str(i) for i in value)
        location_map = locations_repository.get_location_display_map(cur, location_ids)

    if kind == "updated":
        notification = build_update_notification(reservation, change_objs, location_map=location_map)
    else:
        builder = _BUILDERS.get(kind)
        if builder is None:
            raise ValueError(f"Unknown notification kind: {kind}")
        notification = builder(reservation, location_map=location_map)
    return dispatch_notification(reservation_id, notification, correlation_id=correlation_id)


def enqueue_notification(
    reservation_id: str,
    kind: str,
    *,
    change_key: str,
    changes: list[Change] | None = None,
    correlation_id: str | None = None,
) -> bool:
    """Enqueue a send-notification task, idempotent per reservation version."""
    change_dicts = [c.to_dict() for c in changes or []]
    payload = {
        "reservation_id": reservation_id,
        "kind": kind,
        "changes": json.loads(json.dumps(change_dicts, default=str)),
        "correlation_id": correlation_id,
    }
    content_hash = hashlib.sha256(f"{reservation_id}:{kind}:{change_key}".encode()).hexdigest()[:16]
    task_id = f"notify:{kind}:{reservation_id}:{content_hash}"

    return _get_tasks_client().enqueue_http(
        task_id=task_id,
        url_path=TASK_URL_PATH,
        payload=payload,
        correlation_id=correlation_id,
    )
