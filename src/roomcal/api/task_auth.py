"""Shared authentication for worker task handlers.

The api service calls the worker with the X-Internal-Task-Secret header; the
worker compares it against INTERNAL_TASK_SECRET. Fail closed when the secret
is not configured.
"""

from __future__ import annotations

import hmac
import os

from fastapi import Request

from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context
from roomcal.tasks.http_backend import TASK_SECRET_HEADER

logger = get_logger(__name__)


def verify_task_auth(request: Request) -> bool:
    """Verify the internal task secret.

    Args:
        request: FastAPI request object.

    Returns:
        True if authenticated, False otherwise.
    """
    expected = os.environ.get("INTERNAL_TASK_SECRET", "")
    if not expected:
        logger.error(
            "INTERNAL_TASK_SECRET not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_secret_env")},
        )
        return False

    presented = request.headers.get(TASK_SECRET_HEADER, "")
    if not presented:
        logger.warning(
            "task auth failed: missing secret header",
            extra={"extra_fields": safe_log_context(reason="missing_header")},
        )
        return False

    return hmac.compare_digest(presented.encode(), expected.encode())
