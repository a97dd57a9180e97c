"""HTTP backend for tasks - sends tasks to worker via HTTP POST.

Used where api and worker run as separate services. The worker authenticates
calls with the shared X-Internal-Task-Secret header.
"""

import os
from datetime import datetime

import requests

from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

logger = get_logger(__name__)

TASK_SECRET_HEADER = "X-Internal-Task-Secret"


def _settings() -> tuple[str, str, int]:
    return (
        os.environ.get("WORKER_BASE_URL", "http://worker:8000"),
        os.environ.get("INTERNAL_TASK_SECRET", ""),
        int(os.environ.get("TASKS_HTTP_TIMEOUT", "30")),
    )


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
) -> bool:
    """Enqueue task via HTTP POST to worker.

    Args:
        task_id: Unique task identifier (for logging/tracing).
        url_path: Worker endpoint path.
        payload: Task payload.
        correlation_id: Optional correlation ID for tracing.
        schedule_time: Not supported; logged and sent immediately.

    Returns:
        True if request succeeded (2xx), False otherwise.
    """
    base_url, secret, timeout = _settings()

    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks, sending now",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )

    if not secret:
        logger.error(
            "HTTP task enqueue aborted: INTERNAL_TASK_SECRET not configured",
            extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
        )
        return False

    url = f"{base_url}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-Id": correlation_id or "",
        "X-Task-Id": task_id,
        TASK_SECRET_HEADER: secret,
    }

    try:
        response = requests.post(url, json=payload, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path, error=str(e))},
        )
        return False

    logger.info(
        "HTTP task enqueued successfully",
        extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
    )
    return True
