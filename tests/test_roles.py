"""Tests for role derivation and permissions."""

from __future__ import annotations

import pytest

from roomcal.domain.roles import (
    ExplicitRole,
    LegacyAdminFlag,
    LegacyPermissions,
    Role,
    can_edit_field,
    get_effective_role,
    get_permissions,
    has_role,
    legacy_shapes_from_row,
    parse_role,
)

ADMIN_DOMAIN = "@example.org"


def _role(row, email="someone@elsewhere.com"):
    return get_effective_role(legacy_shapes_from_row(row), email, admin_domain=ADMIN_DOMAIN)


class TestPrecedence:
    def test_explicit_role_wins_over_everything(self):
        row = {"role": "requester", "is_admin": True,
               "permissions": {"can_view_all_reservations": True}}
        assert _role(row, email="boss@example.org") == Role.requester

    def test_invalid_explicit_role_is_ignored(self):
        assert _role({"role": "superuser", "is_admin": True}) == Role.admin

    def test_admin_domain_beats_legacy_flags(self):
        row = {"role": None, "is_admin": False,
               "permissions": {"can_view_all_reservations": True}}
        assert _role(row, email="Staff@Example.org") == Role.admin

    def test_legacy_is_admin(self):
        assert _role({"role": None, "is_admin": True}) == Role.admin

    def test_legacy_granular_permissions_map_to_approver(self):
        assert _role({"permissions": {"can_view_all_reservations": True}}) == Role.approver
        assert _role({"permissions": {"can_generate_reservation_tokens": True}}) == Role.approver

    def test_legacy_permissions_all_false(self):
        row = {"permissions": {"can_view_all_reservations": False}}
        assert _role(row) == Role.viewer

    def test_default_viewer(self):
        assert _role({}) == Role.viewer
        assert _role(None) == Role.viewer

    def test_no_email(self):
        assert get_effective_role((), None, admin_domain=ADMIN_DOMAIN) == Role.viewer

    def test_admin_domain_from_env(self, monkeypatch):
        monkeypatch.setenv("ADMIN_DOMAIN", "@corp.test")
        assert get_effective_role((), "a@corp.test") == Role.admin

    def test_shapes_can_be_passed_directly(self):
        shapes = (LegacyPermissions(can_view_all_reservations=True), ExplicitRole(None),
                  LegacyAdminFlag(False))
        assert get_effective_role(shapes, None, admin_domain=ADMIN_DOMAIN) == Role.approver


class TestLegacyShapes:
    def test_row_with_every_shape(self):
        shapes = legacy_shapes_from_row(
            {"role": "viewer", "is_admin": False, "permissions": {"can_view_all_reservations": True}}
        )
        assert ExplicitRole("viewer") in shapes
        assert LegacyAdminFlag(False) in shapes
        assert LegacyPermissions(can_view_all_reservations=True) in shapes

    def test_non_boolean_flags_are_false(self):
        shapes = legacy_shapes_from_row({"is_admin": "yes"})
        assert LegacyAdminFlag(False) in shapes


class TestHierarchy:
    @pytest.mark.parametrize(
        "role,required,expected",
        [
            (Role.admin, Role.approver, True),
            (Role.approver, Role.approver, True),
            (Role.requester, Role.approver, False),
            (Role.viewer, Role.requester, False),
        ],
    )
    def test_has_role(self, role, required, expected):
        assert has_role(role, required) is expected

    def test_parse_role(self):
        assert parse_role("approver") == Role.approver
        assert parse_role("owner") is None
        assert parse_role(None) is None


class TestPermissions:
    def test_approver_edits_any_field(self):
        assert can_edit_field(Role.approver, None, "event_title") is True

    def test_department_user_edits_department_fields_only(self):
        assert can_edit_field(Role.requester, "security", "door_open_time") is True
        assert can_edit_field(Role.requester, "security", "event_title") is False
        assert can_edit_field(Role.viewer, "maintenance", "setup_time") is True

    def test_no_department(self):
        assert can_edit_field(Role.requester, None, "setup_time") is False

    def test_permission_payload(self):
        perms = get_permissions(Role.requester, "maintenance")
        assert perms["role"] == "requester"
        assert perms["can_submit_reservation"] is True
        assert perms["can_approve_reservations"] is False
        assert "setup_time" in perms["department_editable_fields"]
        assert perms["can_edit_department_fields"] is True

    def test_admin_payload(self):
        perms = get_permissions(Role.admin)
        assert perms["is_admin"] is True
        assert perms["department_editable_fields"] == []
