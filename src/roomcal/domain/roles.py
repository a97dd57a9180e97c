"""Role and permission derivation.

Role hierarchy (lowest to highest):
- viewer: view the calendar
- requester: viewer + submit and manage own reservation requests
- approver: requester + review, edit, approve and reject any reservation
- admin: approver + user, location and email-settings administration

User rows still carry fields from older permission models. They are read
into a closed set of shapes and resolved by one precedence-ordered function,
get_effective_role(). Nothing else in the codebase inspects legacy fields.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

DEFAULT_ADMIN_DOMAIN = "@emanuelnyc.org"


class Role(str, enum.Enum):
    viewer = "viewer"
    requester = "requester"
    approver = "approver"
    admin = "admin"

    @property
    def level(self) -> int:
        return ROLE_HIERARCHY.index(self)


ROLE_HIERARCHY: list[Role] = [Role.viewer, Role.requester, Role.approver, Role.admin]


@dataclass(frozen=True)
class ExplicitRole:
    """The current ``users.role`` column. Unknown strings are ignored."""

    role: str | None


@dataclass(frozen=True)
class LegacyAdminFlag:
    """Pre-role ``users.is_admin`` boolean."""

    is_admin: bool


@dataclass(frozen=True)
class LegacyPermissions:
    """Pre-role granular permission flags."""

    can_view_all_reservations: bool = False
    can_generate_reservation_tokens: bool = False


RoleSource = Union[ExplicitRole, LegacyAdminFlag, LegacyPermissions]


ROLE_PERMISSIONS: dict[Role, dict[str, bool]] = {
    Role.viewer: {
        "can_view_calendar": True,
        "can_submit_reservation": False,
        "can_edit_events": False,
        "can_approve_reservations": False,
        "can_view_all_reservations": False,
        "is_admin": False,
    },
    Role.requester: {
        "can_view_calendar": True,
        "can_submit_reservation": True,
        "can_edit_events": False,
        "can_approve_reservations": False,
        "can_view_all_reservations": False,
        "is_admin": False,
    },
    Role.approver: {
        "can_view_calendar": True,
        "can_submit_reservation": True,
        "can_edit_events": True,
        "can_approve_reservations": True,
        "can_view_all_reservations": True,
        "is_admin": False,
    },
    Role.admin: {
        "can_view_calendar": True,
        "can_submit_reservation": True,
        "can_edit_events": True,
        "can_approve_reservations": True,
        "can_view_all_reservations": True,
        "is_admin": True,
    },
}

# Department users may edit these fields without being approvers.
DEPARTMENT_EDITABLE_FIELDS: dict[str, tuple[str, ...]] = {
    "security": ("door_open_time", "door_close_time", "door_notes"),
    "maintenance": ("setup_time", "teardown_time", "setup_notes", "event_notes"),
}


def parse_role(value: Any) -> Role | None:
    """Return the Role for a string, or None if it is not a valid role."""
    try:
        return Role(value)
    except ValueError:
        return None


def legacy_shapes_from_row(row: Mapping[str, Any] | None) -> tuple[RoleSource, ...]:
    """Read a users row into role sources, in no particular order.

    Args:
        row: Mapping with any of ``role``, ``is_admin``, ``permissions``
             (a dict of legacy flags). None for an unknown user.
    """
    if not row:
        return ()

    shapes: list[RoleSource] = [ExplicitRole(row.get("role"))]
    if row.get("is_admin") is not None:
        shapes.append(LegacyAdminFlag(row.get("is_admin") is True))

    permissions = row.get("permissions") or {}
    if isinstance(permissions, Mapping) and permissions:
        shapes.append(
            LegacyPermissions(
                can_view_all_reservations=permissions.get("can_view_all_reservations") is True,
                can_generate_reservation_tokens=permissions.get("can_generate_reservation_tokens") is True,
            )
        )
    return tuple(shapes)


def _admin_domain(admin_domain: str | None) -> str:
    return (admin_domain or os.environ.get("ADMIN_DOMAIN") or DEFAULT_ADMIN_DOMAIN).lower()


def get_effective_role(
    sources: Iterable[RoleSource],
    email: str | None,
    *,
    admin_domain: str | None = None,
) -> Role:
    """Resolve a user's effective role.

    Precedence:
    1. A valid explicit role
    2. Email in the admin domain -> admin
    3. Legacy is_admin flag -> admin
    4. Legacy granular permissions -> approver
    5. viewer

    Args:
        sources: Role sources read from the users row.
        email: User email from the identity token.
        admin_domain: Override for ADMIN_DOMAIN (e.g. "@example.org").

    Returns:
        The effective Role.
    """
    sources = tuple(sources)

    for source in sources:
        if isinstance(source, ExplicitRole):
            role = parse_role(source.role)
            if role is not None:
                return role

    if email and email.lower().endswith(_admin_domain(admin_domain)):
        return Role.admin

    for source in sources:
        if isinstance(source, LegacyAdminFlag) and source.is_admin:
            return Role.admin

    for source in sources:
        if isinstance(source, LegacyPermissions) and (
            source.can_view_all_reservations or source.can_generate_reservation_tokens
        ):
            return Role.approver

    return Role.viewer


def has_role(role: Role, required: Role) -> bool:
    return role.level >= required.level


def get_department_editable_fields(department: str | None) -> tuple[str, ...]:
    if not department:
        return ()
    return DEPARTMENT_EDITABLE_FIELDS.get(department, ())


def can_edit_field(role: Role, department: str | None, field: str) -> bool:
    """Approvers edit everything; department users only their own fields."""
    if has_role(role, Role.approver):
        return True
    return field in get_department_editable_fields(department)


def get_permissions(role: Role, department: str | None = None) -> dict[str, Any]:
    """Flatten role + department into the permission payload used by /me."""
    editable = list(get_department_editable_fields(department))
    return {
        "role": role.value,
        "department": department,
        "department_editable_fields": editable,
        "can_edit_department_fields": bool(editable),
        **ROLE_PERMISSIONS[role],
    }
