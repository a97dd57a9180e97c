"""Admin endpoints - email settings and user role management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Path
from pydantic import BaseModel, ConfigDict

from roomcal.api.auth import CurrentUser
from roomcal.api.rbac import require_role
from roomcal.domain.roles import (
    DEPARTMENT_EDITABLE_FIELDS,
    get_effective_role,
    legacy_shapes_from_row,
    parse_role,
)
from roomcal.infra.system_settings import get_email_settings, update_email_settings
from roomcal.observability.logging import get_logger
from roomcal.observability.redaction import safe_log_context

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class EmailSettingsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool
    redirect_to: str | None = None
    cc_to: str | None = None


class SetRoleRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str
    department: str | None = None


@router.get("/email-settings")
def read_email_settings(user: CurrentUser = Depends(require_role("admin"))) -> dict:
    return get_email_settings().to_dict()


@router.put("/email-settings")
def write_email_settings(
    body: EmailSettingsRequest,
    user: CurrentUser = Depends(require_role("admin")),
) -> dict:
    settings = update_email_settings(
        enabled=body.enabled,
        redirect_to=body.redirect_to or None,
        cc_to=body.cc_to or None,
    )
    logger.info(
        "email settings updated",
        extra={
            "extra_fields": safe_log_context(
                enabled=settings.enabled,
                redirected=settings.redirect_to is not None,
            )
        },
    )
    return settings.to_dict()


def _user_view(row: dict) -> dict:
    return {
        "id": row["id"],
        "email": row.get("email"),
        "name": row.get("name"),
        "role": row.get("role"),
        "department": row.get("department"),
        "effective_role": get_effective_role(legacy_shapes_from_row(row), row.get("email")).value,
    }


@router.get("/users")
def list_users(user: CurrentUser = Depends(require_role("admin"))) -> list[dict]:
    from roomcal.infra.db import txn
    from roomcal.infra.repositories.users_repository import list_users as repo_list

    with txn() as cur:
        return [_user_view(row) for row in repo_list(cur)]


@router.put("/users/{user_id}/role")
def set_role(
    body: SetRoleRequest,
    user_id: str = Path(..., description="User UUID"),
    user: CurrentUser = Depends(require_role("admin")),
) -> dict:
    from uuid import UUID

    from roomcal.infra.db import txn
    from roomcal.infra.repositories.users_repository import set_user_role

    role = parse_role(body.role)
    if role is None:
        raise HTTPException(status_code=400, detail="invalid role")
    if body.department is not None and body.department not in DEPARTMENT_EDITABLE_FIELDS:
        raise HTTPException(status_code=400, detail="invalid department")
    try:
        user_id = str(UUID(user_id))
    except ValueError:
        raise HTTPException(status_code=404, detail="User not found")

    with txn() as cur:
        row = set_user_role(cur, user_id=user_id, role=role.value, department=body.department)
    if row is None:
        raise HTTPException(status_code=404, detail="User not found")

    logger.info(
        "user role updated",
        extra={"extra_fields": safe_log_context(user_id=user_id, role=role.value)},
    )
    return _user_view(row)
