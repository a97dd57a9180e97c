"""Request-scoped context for log correlation.

Two context variables travel with each request (and into any task payload
built from it):
- correlation_id: echoed in the X-Correlation-ID response header
- actor: the authenticated user id performing the request
"""

import uuid
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
actor_var: ContextVar[str] = ContextVar("actor", default="")

CORRELATION_ID_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())


def get_correlation_id() -> str:
    return correlation_id_var.get()


def set_correlation_id(cid: str) -> Token[str]:
    return correlation_id_var.set(cid)


def reset_correlation_id(token: Token[str]) -> None:
    correlation_id_var.reset(token)


def get_actor() -> str:
    """User id bound to the current request, or "" outside a request."""
    return actor_var.get()


def set_actor(user_id: str) -> Token[str]:
    return actor_var.set(user_id)
