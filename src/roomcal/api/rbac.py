"""RBAC (Role-Based Access Control).

Provides:
- Role hierarchy: viewer < requester < approver < admin (see domain.roles)
- require_role(): FastAPI dependency enforcing a minimum effective role
- can_access_reservation(): owner-or-approver check for a single reservation
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from fastapi import Depends, HTTPException

from roomcal.api.auth import CurrentUser, get_current_user
from roomcal.domain.roles import Role, has_role, parse_role


def require_role(min_role: str) -> Callable[..., CurrentUser]:
    """Create a dependency that requires a minimum effective role.

    Args:
        min_role: Minimum required role (viewer, requester, approver, admin).

    Returns:
        FastAPI dependency function.

    Usage:
        @router.post("/something")
        def endpoint(user: CurrentUser = Depends(require_role("approver"))):
            ...
    """
    required = parse_role(min_role)
    if required is None:
        raise ValueError(f"Invalid role: {min_role}")

    def dependency(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not has_role(user.role, required):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user

    return dependency


def is_owner(user: CurrentUser, reservation: Mapping[str, Any]) -> bool:
    return reservation.get("created_by") == user.id


def can_access_reservation(user: CurrentUser, reservation: Mapping[str, Any]) -> bool:
    """Approvers see every reservation; everyone else only their own."""
    return has_role(user.role, Role.approver) or is_owner(user, reservation)
