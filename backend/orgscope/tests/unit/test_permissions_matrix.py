"""
Tests for the role/permission matrix.
"""

import pytest

from orgscope.constants.permissions import (
    ROLE_PERMISSIONS,
    MembershipRole,
    Permission,
    get_permissions_for_role,
    is_owner_role,
    parse_role,
    role_has_permission,
)


class TestRoleMatrix:

    def test_every_role_has_permissions(self):
        for role in MembershipRole:
            assert role in ROLE_PERMISSIONS
            assert ROLE_PERMISSIONS[role]

    def test_owner_has_everything(self):
        assert get_permissions_for_role(MembershipRole.OWNER) == frozenset(Permission)

    def test_member_cannot_write_records(self):
        assert role_has_permission(MembershipRole.MEMBER, Permission.RECORDS_VIEW)
        assert not role_has_permission(MembershipRole.MEMBER, Permission.RECORDS_WRITE)

    def test_billing_admin_cannot_read_records(self):
        assert not role_has_permission(MembershipRole.BILLING_ADMIN, Permission.RECORDS_VIEW)

    def test_is_owner_role(self):
        assert is_owner_role(MembershipRole.OWNER)
        assert not is_owner_role(MembershipRole.ADMIN)


class TestParseRole:

    @pytest.mark.parametrize("raw,expected", [
        ("owner", MembershipRole.OWNER),
        ("org:admin", MembershipRole.ADMIN),
        ("MEMBER", MembershipRole.MEMBER),
        ("billing_admin", MembershipRole.BILLING_ADMIN),
    ])
    def test_known_roles(self, raw, expected):
        assert parse_role(raw) == expected

    @pytest.mark.security
    @pytest.mark.parametrize("raw", [None, "", "superuser", "org:root"])
    def test_unknown_roles_rejected(self, raw):
        assert parse_role(raw) is None
