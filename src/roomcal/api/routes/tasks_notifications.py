"""Worker routes for notification tasks."""

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from roomcal.api.task_auth import verify_task_auth
from roomcal.domain.notifications import NOTIFICATION_KINDS, send_reservation_notification
from roomcal.observability.correlation import get_correlation_id
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/notifications", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/send")
async def handle_send(request: Request) -> JSONResponse:
    """Build and send a reservation notification, recording the attempt.

    Sending failures are recorded in communication history and answered
    with 200 so the task is not retried into duplicate emails.

    Expected payload:
    - reservation_id: Reservation UUID (required)
    - kind: Notification kind (required)
    - changes: Change dicts for "updated" (optional)
    - correlation_id: Optional correlation ID
    """
    correlation_id = get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        payload: dict[str, Any] = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid json"})

    reservation_id = payload.get("reservation_id", "")
    kind = payload.get("kind", "")
    changes = payload.get("changes") or []
    req_correlation_id = payload.get("correlation_id") or correlation_id

    if not reservation_id or kind not in NOTIFICATION_KINDS or not isinstance(changes, list):
        logger.warning(
            "invalid notification task payload",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    has_reservation_id=bool(reservation_id),
                    kind=kind,
                )
            },
        )
        return JSONResponse(status_code=400, content={"ok": False, "error": "invalid payload"})

    try:
        result = send_reservation_notification(
            reservation_id,
            kind,
            changes=changes,
            correlation_id=req_correlation_id,
        )
    except Exception:
        logger.exception(
            "notification task failed",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    reservation_id=reservation_id,
                )
            },
        )
        return JSONResponse(status_code=500, content={"ok": False, "error": "processing failed"})

    logger.info(
        "notification task completed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                reservation_id=reservation_id,
                status=result.get("status"),
            )
        },
    )
    return JSONResponse(status_code=200, content={"ok": True, **result})
