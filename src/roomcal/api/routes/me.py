"""User identity and permissions endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from roomcal.api.auth import CurrentUser, get_current_user
from roomcal.domain.roles import get_permissions

router = APIRouter(tags=["me"])


@router.get("/me")
def get_me(user: CurrentUser = Depends(get_current_user)) -> dict:
    """Return authenticated user info with effective role and permissions."""
    return {
        "id": user.id,
        "external_subject": user.external_subject,
        "email": user.email,
        "name": user.name,
        "permissions": get_permissions(user.role, user.department),
    }
